"""
Strategy Engine: registry of strategies -> signals, consolidation, backtests.

Responsibilities:
    - Registration, unregistration, enable/disable
    - Running one or all active strategies on a market-data window
    - Per-symbol consolidation of several strategies' opinions
    - Backtesting a registered strategy
    - Signal history (retention window) and the signal channel

Strategy failures are isolated: they are logged and degrade to an empty
result, never aborting a multi-strategy run.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections import Counter
from datetime import timedelta
from typing import Any, Callable, Iterable, Mapping, Sequence

from backtest.runner import BacktestResult
from trading_core.contracts import (
    ConsolidatedSignal,
    PriceBar,
    RiskManagement,
    Signal,
    SignalType,
    StrategyConfig,
)
from trading_core.errors import NotFoundError, ValidationError
from trading_core.events import EventChannel, Unsubscribe
from trading_core.strategies import Strategy

logger = logging.getLogger("tradedesk.strategy")

MarketData = Sequence[PriceBar] | Mapping[str, Sequence[PriceBar]]

CONSOLIDATED = "consolidated"


def _dominant_type(signals: Sequence[Signal]) -> SignalType:
    """Strict majority among buy/sell/hold counts; ties resolve to hold."""
    counts = Counter(s.type for s in signals)
    buys, sells, holds = counts[SignalType.BUY], counts[SignalType.SELL], counts[SignalType.HOLD]
    if buys > sells and buys > holds:
        return SignalType.BUY
    if sells > buys and sells > holds:
        return SignalType.SELL
    return SignalType.HOLD


def consolidate_signals(signals: Sequence[Signal]) -> list[Signal]:
    """Merge signals per symbol.

    A lone signal passes through unchanged. Several signals become one
    ConsolidatedSignal with strength-weighted confidence
    ``sum(confidence * strength) / sum(strength)``, majority direction,
    mean strength (capped at 100) and the first contributor's price.
    """
    by_symbol: dict[str, list[Signal]] = {}
    for signal in signals:
        by_symbol.setdefault(signal.symbol, []).append(signal)

    merged: list[Signal] = []
    for symbol, group in by_symbol.items():
        if len(group) == 1:
            merged.append(group[0])
            continue

        total_strength = sum(s.strength for s in group)
        if total_strength > 0:
            confidence = sum(s.confidence * s.strength for s in group) / total_strength
        else:
            confidence = sum(s.confidence for s in group) / len(group)
        names = [s.strategy for s in group]

        merged.append(
            ConsolidatedSignal(
                symbol=symbol,
                type=_dominant_type(group),
                strength=min(100.0, total_strength / len(group)),
                confidence=min(1.0, confidence),
                price=group[0].price,
                timestamp=max(s.timestamp for s in group),
                strategy=CONSOLIDATED,
                reason=f"Consolidated from {len(group)} strategies: {', '.join(names)}",
                contributors=tuple(names),
            )
        )
    return merged


class StrategyEngine:
    """Registry and runner for trading strategies."""

    def __init__(
        self,
        strategies: Iterable[Strategy] = (),
        *,
        signal_retention: timedelta = timedelta(hours=24),
        history_limit: int = 1000,
    ) -> None:
        self._strategies: dict[str, Strategy] = {}
        self._active: dict[str, None] = {}  # ordered set
        self._history: list[Signal] = []
        self._retention = signal_retention
        self._history_limit = history_limit
        self._lock = threading.RLock()
        self.signals: EventChannel[Signal] = EventChannel("signals")
        for strategy in strategies:
            self.register_strategy(strategy)

    # -- registry ---------------------------------------------------------

    def _get(self, name: str) -> Strategy:
        strategy = self._strategies.get(name)
        if strategy is None:
            raise NotFoundError("Strategy", name)
        return strategy

    def register_strategy(self, strategy: Strategy) -> None:
        """Register (or replace) a strategy; it is active when its config is enabled."""
        with self._lock:
            self._strategies[strategy.name] = strategy
            if strategy.config.enabled:
                self._active[strategy.name] = None
            else:
                self._active.pop(strategy.name, None)
        logger.info("Strategy registered: %s", strategy.name)

    def unregister_strategy(self, name: str) -> None:
        with self._lock:
            self._get(name)
            del self._strategies[name]
            self._active.pop(name, None)
        logger.info("Strategy unregistered: %s", name)

    def enable_strategy(self, name: str) -> None:
        with self._lock:
            strategy = self._get(name)
            strategy.config = dataclasses.replace(strategy.config, enabled=True)
            self._active[name] = None

    def disable_strategy(self, name: str) -> None:
        with self._lock:
            strategy = self._get(name)
            strategy.config = dataclasses.replace(strategy.config, enabled=False)
            self._active.pop(name, None)

    def is_active(self, name: str) -> bool:
        return name in self._active

    def available_strategies(self) -> list[Strategy]:
        with self._lock:
            return list(self._strategies.values())

    def active_strategies(self) -> list[str]:
        with self._lock:
            return list(self._active)

    def update_strategy_config(
        self,
        name: str,
        *,
        parameters: Mapping[str, Any] | None = None,
        enabled: bool | None = None,
        risk_management: RiskManagement | Mapping[str, float] | None = None,
    ) -> StrategyConfig:
        """Merge changes into the strategy's config, validate, then swap it in.

        Raises NotFoundError for an unknown strategy and ValidationError when
        the owning strategy rejects the merged config (the old config stays).
        """
        with self._lock:
            strategy = self._get(name)
            current = strategy.config
            rm = current.risk_management
            if isinstance(risk_management, RiskManagement):
                rm = risk_management
            elif risk_management:
                rm = dataclasses.replace(rm, **risk_management)

            candidate = StrategyConfig(
                name=current.name,
                parameters={**current.parameters, **(parameters or {})},
                enabled=current.enabled if enabled is None else enabled,
                risk_management=rm,
            )
            if not strategy.validate(candidate):
                raise ValidationError(f"Invalid configuration for strategy {name}")

            strategy.config = candidate
            if candidate.enabled:
                self._active[name] = None
            else:
                self._active.pop(name, None)
        logger.info("Strategy config updated: %s %s", name, candidate.parameters)
        return candidate

    # -- running ----------------------------------------------------------

    def run_strategy(self, name: str, bars: Sequence[PriceBar]) -> list[Signal]:
        """Run one strategy on a single-symbol window.

        Unknown strategy -> NotFoundError. Registered but disabled -> [].
        A strategy that raises is logged and yields [].
        """
        with self._lock:
            strategy = self._get(name)
            if name not in self._active:
                return []

        try:
            signals = strategy.execute(bars)
        except Exception:
            logger.exception("Error executing strategy %s", name)
            return []

        for signal in signals:
            self._record(signal)
            self.signals.publish(signal)
        return signals

    def run_all_active_strategies(self, market_data: MarketData) -> list[Signal]:
        """Run every active strategy and consolidate the signals per symbol.

        *market_data* is either one bar series or a mapping of symbol to series.
        """
        if isinstance(market_data, Mapping):
            series = list(market_data.values())
        else:
            series = [market_data]

        collected: list[Signal] = []
        for name in self.active_strategies():
            for bars in series:
                collected.extend(self.run_strategy(name, bars))
        return consolidate_signals(collected)

    def consolidate_signals(self, signals: Sequence[Signal]) -> list[Signal]:
        return consolidate_signals(signals)

    def backtest_strategy(
        self,
        name: str,
        bars: Sequence[PriceBar],
        initial_balance: float = 10_000.0,
    ) -> BacktestResult:
        """Backtest a registered strategy; failures degrade to an empty result."""
        strategy = self._get(name)
        try:
            return strategy.backtest(bars, initial_balance)
        except Exception:
            logger.exception("Backtest failed for strategy %s", name)
            symbol = bars[0].symbol if bars else ""
            return BacktestResult.empty(name, symbol, initial_balance)

    # -- history / subscriptions -----------------------------------------

    def _record(self, signal: Signal) -> None:
        with self._lock:
            self._history.append(signal)
            newest = max(s.timestamp for s in self._history)
            cutoff = newest - self._retention
            self._history = [s for s in self._history if s.timestamp >= cutoff]
            if len(self._history) > self._history_limit:
                self._history = self._history[-self._history_limit :]

    def signal_history(self, limit: int = 100) -> list[Signal]:
        with self._lock:
            return self._history[-limit:] if limit > 0 else []

    def subscribe_to_signals(self, callback: Callable[[Signal], None]) -> Unsubscribe:
        return self.signals.subscribe(callback)
