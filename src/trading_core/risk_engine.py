"""
Risk Engine: order + portfolio + account snapshot -> accept/reject, metrics, alerts.

Responsibilities:
    - Position sizing from a risk budget and stop distance
    - Pre-trade checks: open-position ceiling, position size, leverage,
      margin, correlation (first violation wins)
    - Value at Risk (historical / parametric) from the portfolio value history
    - Risk monitoring: metrics set plus threshold alerts (each pass replaces
      the previous alert set)
    - Close recommendations for individual positions

Limits are an immutable RiskLimits value swapped atomically on update.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from trading_core import risk_metrics
from trading_core.contracts import (
    Account,
    AlertLevel,
    AlertSeverity,
    Portfolio,
    Position,
    RiskAlert,
    RiskLimits,
    Side,
    utc_now,
)
from trading_core.errors import InvariantViolation, RiskRejection, ValidationError
from trading_core.events import EventChannel, Unsubscribe

logger = logging.getLogger("tradedesk.risk")

VAR_METHODS = ("historical", "parametric")


@dataclass(frozen=True)
class RiskOrder:
    """Proposed order as seen by the pre-trade check."""

    symbol: str
    side: Side
    quantity: float
    price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    # Value already promised to open buy orders: this symbol, and all symbols.
    committed: float = 0.0
    committed_total: float = 0.0

    @property
    def notional(self) -> float:
        return self.quantity * (self.price or 0.0)


@dataclass(frozen=True)
class RiskCheck:
    valid: bool
    reason: str | None = None
    limit: str | None = None


@dataclass(frozen=True)
class VaRResult:
    confidence: float
    horizon_days: float
    method: str
    value: float
    currency: str = "USD"


@dataclass(frozen=True)
class RiskMetrics:
    total_exposure: float
    leverage: float
    margin_utilization: float
    value_at_risk: float
    max_drawdown: float
    sharpe_ratio: float
    correlation: dict[str, float]
    diversification_ratio: float
    risk_score: float
    alerts: list[RiskAlert] = field(default_factory=list)


@dataclass(frozen=True)
class StopLevels:
    stop_loss: float
    take_profit: float


@dataclass(frozen=True)
class PositionRisk:
    risk_amount: float
    risk_percent: float
    margin_required: float
    unrealized_pnl_percent: float


@dataclass(frozen=True)
class CloseRecommendation:
    should_close: bool
    urgency: AlertLevel
    reason: str | None = None


def _reject(reason: str, limit: str) -> RiskCheck:
    return RiskCheck(valid=False, reason=reason, limit=limit)


def _exposure(portfolio: Portfolio) -> float:
    return sum(abs(p.quantity * p.current_price) for p in portfolio.positions.values())


class RiskEngine:
    """Risk limits, pre-trade validation, metrics and alerts."""

    def __init__(
        self,
        limits: RiskLimits | None = None,
        *,
        margin_rate: float = 0.1,
        risk_free_rate: float = 0.02,
        price_history_size: int = 250,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._limits = limits or RiskLimits()
        self.margin_rate = margin_rate
        self.risk_free_rate = risk_free_rate
        self._price_history_size = price_history_size
        self._prices: dict[str, deque[float]] = {}
        self._alerts: list[RiskAlert] = []
        self._clock = clock
        self._lock = threading.RLock()
        self.alerts: EventChannel[RiskAlert] = EventChannel("risk_alerts")

    # -- limits -------------------------------------------------------------

    @property
    def limits(self) -> RiskLimits:
        return self._limits

    def update_limits(self, **changes: float) -> RiskLimits:
        """Swap in a new limit set. Unknown keys or non-positive values raise ValidationError."""
        known = {f.name for f in dataclasses.fields(RiskLimits)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ValidationError(f"Unknown risk limit(s): {', '.join(unknown)}")
        bad = sorted(k for k, v in changes.items() if not isinstance(v, (int, float)) or v <= 0)
        if bad:
            raise ValidationError(f"Risk limits must be positive numbers: {', '.join(bad)}")
        with self._lock:
            self._limits = dataclasses.replace(self._limits, **changes)
        logger.info("Risk limits updated: %s", changes)
        return self._limits

    # -- sizing and pre-trade checks ---------------------------------------

    def calculate_position_size(
        self,
        account: Account,
        risk_percent: float,
        entry_price: float,
        stop_price: float,
    ) -> float:
        """size = balance * risk% / |entry - stop|, capped at balance * maxPositionSize% / entry."""
        distance = abs(entry_price - stop_price)
        if distance == 0:
            raise InvariantViolation("Stop loss distance cannot be zero")
        if entry_price <= 0:
            raise InvariantViolation("Entry price must be positive")
        risk_amount = account.balance * risk_percent / 100
        cap = account.balance * self._limits.max_position_size / 100 / entry_price
        return min(risk_amount / distance, cap)

    def validate_order(self, order: RiskOrder, portfolio: Portfolio, account: Account) -> RiskCheck:
        """Run the pre-trade checks in order and return the first violation.

        A sell against an existing long only reduces exposure and skips the
        exposure checks. The position count ceiling applies to new symbols.
        Open buy orders the caller reports in ``committed`` count toward the
        size, leverage and margin limits.
        """
        limits = self._limits
        held = portfolio.positions.get(order.symbol)
        if order.side is Side.SELL and held is not None:
            return RiskCheck(valid=True)

        if held is None and len(portfolio.positions) >= limits.max_open_positions:
            return _reject(
                f"Maximum number of positions ({limits.max_open_positions}) would be exceeded",
                "max_open_positions",
            )

        if portfolio.total_value <= 0:
            return _reject("Portfolio value must be positive", "max_position_size")

        notional = order.notional
        resulting = notional + order.committed + (held.market_value if held else 0.0)
        size_pct = resulting / portfolio.total_value * 100
        if size_pct > limits.max_position_size:
            return _reject(
                f"Position size {size_pct:.2f}% exceeds maximum {limits.max_position_size}%",
                "max_position_size",
            )

        leverage = (_exposure(portfolio) + notional + order.committed_total) / portfolio.total_value
        if leverage > limits.max_leverage:
            return _reject(
                f"Leverage {leverage:.2f}x exceeds maximum {limits.max_leverage}x",
                "max_leverage",
            )

        required_margin = (notional + order.committed_total) * self.margin_rate
        if account.free_margin < required_margin:
            return _reject(
                f"Insufficient margin: {required_margin:.2f} required, {account.free_margin:.2f} available",
                "margin",
            )

        correlation = self.order_correlation(order.symbol, portfolio)
        if correlation > limits.max_correlation:
            return _reject(
                f"Correlation {correlation:.2f} exceeds maximum {limits.max_correlation}",
                "max_correlation",
            )

        return RiskCheck(valid=True)

    def check_order(self, order: RiskOrder, portfolio: Portfolio, account: Account) -> None:
        """Like validate_order, but raises RiskRejection on a violation."""
        result = self.validate_order(order, portfolio, account)
        if not result.valid:
            raise RiskRejection(result.reason or "Order rejected by risk limits", limit=result.limit)

    # -- correlation --------------------------------------------------------

    def record_price(self, symbol: str, price: float) -> None:
        with self._lock:
            history = self._prices.setdefault(symbol, deque(maxlen=self._price_history_size))
            history.append(price)

    def _returns(self, symbol: str) -> list[float]:
        return risk_metrics.returns_from_values(list(self._prices.get(symbol, ())))

    def order_correlation(self, symbol: str, portfolio: Portfolio) -> float:
        """Correlation of *symbol* with current holdings.

        Symbol overlap (shared base or quote asset, e.g. BTC/USD vs BTC/EUR)
        counts as 0.5; measured return correlation is used when higher.
        """
        parts = [p for p in symbol.split("/") if p]
        overlap = any(
            any(part in held for part in parts) for held in portfolio.positions
        )
        heuristic = 0.5 if overlap else 0.0

        measured = 0.0
        own = self._returns(symbol)
        for held in portfolio.positions:
            if held == symbol:
                continue
            measured = max(measured, abs(risk_metrics.pearson(own, self._returns(held))))
        return max(heuristic, measured)

    def correlation_matrix(self, portfolio: Portfolio) -> dict[str, float]:
        """Mean absolute return correlation of each holding with the others."""
        symbols = list(portfolio.positions)
        matrix: dict[str, float] = {}
        for symbol in symbols:
            others = [
                abs(risk_metrics.pearson(self._returns(symbol), self._returns(other)))
                for other in symbols
                if other != symbol
            ]
            matrix[symbol] = risk_metrics.mean(others)
        return matrix

    # -- VaR and monitoring ------------------------------------------------

    def calculate_var(
        self,
        portfolio: Portfolio,
        confidence: float = 0.95,
        horizon_days: float = 1,
        method: str = "historical",
    ) -> VaRResult:
        if method not in VAR_METHODS:
            raise ValidationError(f"Unsupported VaR method: {method}")
        returns = risk_metrics.returns_from_values(portfolio.value_history)
        if method == "historical":
            value = risk_metrics.historical_var(returns, confidence, horizon_days, portfolio.total_value)
        else:
            value = risk_metrics.parametric_var(returns, confidence, horizon_days, portfolio.total_value)
        return VaRResult(confidence=confidence, horizon_days=horizon_days, method=method, value=value)

    def _risk_score(self, leverage: float, margin_utilization: float, drawdown: float, avg_correlation: float) -> float:
        limits = self._limits
        score = min(30.0, leverage / limits.max_leverage * 30)
        score += min(25.0, margin_utilization / 100 * 25)
        score += min(25.0, drawdown / limits.max_drawdown * 25)
        score += min(20.0, avg_correlation * 20)
        return min(100.0, score)

    def monitor_risk(self, portfolio: Portfolio, account: Account) -> RiskMetrics:
        """Recompute the metrics set and regenerate the alert list."""
        exposure = _exposure(portfolio)
        leverage = exposure / portfolio.total_value if portfolio.total_value > 0 else 0.0
        margin_utilization = account.margin_used / account.equity * 100 if account.equity > 0 else 0.0
        returns = risk_metrics.returns_from_values(portfolio.value_history)
        drawdown = risk_metrics.max_drawdown_pct(portfolio.value_history)
        correlation = self.correlation_matrix(portfolio)

        metrics = RiskMetrics(
            total_exposure=exposure,
            leverage=leverage,
            margin_utilization=margin_utilization,
            value_at_risk=self.calculate_var(portfolio).value,
            max_drawdown=drawdown,
            sharpe_ratio=risk_metrics.sharpe_ratio(returns, self.risk_free_rate / 252),
            correlation=correlation,
            diversification_ratio=max(0.1, min(1.0, len(portfolio.positions) / 10)),
            risk_score=self._risk_score(
                leverage, margin_utilization, drawdown, risk_metrics.mean(list(correlation.values()))
            ),
        )

        alerts = self._generate_alerts(metrics, portfolio)
        with self._lock:
            self._alerts = alerts
        for alert in alerts:
            logger.warning("Risk alert [%s] %s", alert.severity.value, alert.message)
            self.alerts.publish(alert)
        return dataclasses.replace(metrics, alerts=list(alerts))

    def _alert(
        self,
        kind: str,
        critical: bool,
        message: str,
        *,
        value: float,
        threshold: float,
        symbol: str | None = None,
    ) -> RiskAlert:
        return RiskAlert(
            id=f"{kind}_{uuid.uuid4().hex[:12]}",
            severity=AlertSeverity.CRITICAL if critical else AlertSeverity.WARNING,
            level=AlertLevel.HIGH if critical else AlertLevel.MEDIUM,
            message=message,
            timestamp=self._clock(),
            symbol=symbol,
            value=value,
            threshold=threshold,
        )

    def _generate_alerts(self, metrics: RiskMetrics, portfolio: Portfolio) -> list[RiskAlert]:
        limits = self._limits
        alerts: list[RiskAlert] = []

        if metrics.leverage > limits.max_leverage * 0.8:
            alerts.append(self._alert(
                "leverage", metrics.leverage > limits.max_leverage,
                f"High leverage detected: {metrics.leverage:.2f}x",
                value=metrics.leverage, threshold=limits.max_leverage,
            ))

        if metrics.margin_utilization > 80:
            alerts.append(self._alert(
                "margin", metrics.margin_utilization > 90,
                f"High margin utilization: {metrics.margin_utilization:.2f}%",
                value=metrics.margin_utilization, threshold=90,
            ))

        if metrics.max_drawdown > limits.max_drawdown * 0.7:
            alerts.append(self._alert(
                "drawdown", metrics.max_drawdown > limits.max_drawdown,
                f"High drawdown detected: {metrics.max_drawdown:.2f}%",
                value=metrics.max_drawdown, threshold=limits.max_drawdown,
            ))

        if portfolio.total_value > 0:
            for position in portfolio.positions.values():
                pct = abs(position.quantity * position.current_price) / portfolio.total_value * 100
                if pct > limits.max_position_size * 0.8:
                    alerts.append(self._alert(
                        "position", pct > limits.max_position_size,
                        f"Large position in {position.symbol}: {pct:.2f}%",
                        value=pct, threshold=limits.max_position_size, symbol=position.symbol,
                    ))
        return alerts

    # -- per-position helpers ----------------------------------------------

    def calculate_stop_loss_levels(
        self,
        entry_price: float,
        side: Side | str,
        risk_reward: float = 2.0,
    ) -> StopLevels:
        stop_pct = self._limits.stop_loss_percent / 100
        if Side(side) is Side.BUY:
            return StopLevels(
                stop_loss=entry_price * (1 - stop_pct),
                take_profit=entry_price * (1 + stop_pct * risk_reward),
            )
        return StopLevels(
            stop_loss=entry_price * (1 + stop_pct),
            take_profit=entry_price * (1 - stop_pct * risk_reward),
        )

    def calculate_position_risk(self, position: Position, account: Account) -> PositionRisk:
        cost = abs(position.quantity * position.avg_price)
        risk_amount = (
            abs(position.quantity * (position.avg_price - position.stop_loss))
            if position.stop_loss is not None
            else 0.0
        )
        return PositionRisk(
            risk_amount=risk_amount,
            risk_percent=risk_amount / account.balance * 100 if account.balance > 0 else 0.0,
            margin_required=cost * self.margin_rate,
            unrealized_pnl_percent=position.unrealized_pnl / cost * 100 if cost > 0 else 0.0,
        )

    def should_close_position(
        self,
        position: Position,
        portfolio: Portfolio,
        account: Account,
    ) -> CloseRecommendation:
        limits = self._limits
        risk = self.calculate_position_risk(position, account)

        if risk.risk_percent > limits.max_risk_per_trade * 2:
            return CloseRecommendation(
                True, AlertLevel.HIGH,
                f"Position risk {risk.risk_percent:.2f}% exceeds maximum allowed",
            )
        if account.margin_level < limits.minimum_margin_level:
            return CloseRecommendation(
                True, AlertLevel.HIGH,
                f"Margin level {account.margin_level:.2f}% below minimum {limits.minimum_margin_level}%",
            )
        if risk.unrealized_pnl_percent < -limits.max_daily_loss:
            return CloseRecommendation(
                True, AlertLevel.MEDIUM,
                f"Unrealized loss {risk.unrealized_pnl_percent:.2f}% exceeds daily limit",
            )
        return CloseRecommendation(False, AlertLevel.LOW)

    # -- alerts -------------------------------------------------------------

    def risk_alerts(self) -> list[RiskAlert]:
        with self._lock:
            return list(self._alerts)

    def clear_risk_alerts(self) -> None:
        with self._lock:
            self._alerts = []

    def add_risk_alert(
        self,
        severity: AlertSeverity,
        level: AlertLevel,
        message: str,
        *,
        symbol: str | None = None,
        value: float | None = None,
        threshold: float | None = None,
    ) -> RiskAlert:
        alert = RiskAlert(
            id=f"custom_{uuid.uuid4().hex[:12]}",
            severity=severity,
            level=level,
            message=message,
            timestamp=self._clock(),
            symbol=symbol,
            value=value,
            threshold=threshold,
        )
        with self._lock:
            self._alerts.append(alert)
        self.alerts.publish(alert)
        return alert

    def subscribe_to_alerts(self, callback: Callable[[RiskAlert], None]) -> Unsubscribe:
        return self.alerts.subscribe(callback)
