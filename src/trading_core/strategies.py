"""
Built-in trading strategies.

Each strategy is an independent class satisfying the ``Strategy`` protocol:
``execute`` turns a price window into signals, ``backtest`` replays a
series through the shared runner and ``validate`` checks a candidate
config. Strategies are pure over the window they are given.
"""

from __future__ import annotations

from typing import Any, Protocol, Sequence, runtime_checkable

from backtest.runner import BacktestResult, run_backtest
from trading_core import indicators
from trading_core.contracts import (
    PriceBar,
    RiskManagement,
    Signal,
    SignalType,
    StrategyConfig,
)


@runtime_checkable
class Strategy(Protocol):
    name: str
    description: str
    timeframe: str
    config: StrategyConfig

    @property
    def min_lookback(self) -> int:
        """First bar index at which ``execute`` can produce a signal."""
        ...

    def execute(self, bars: Sequence[PriceBar]) -> list[Signal]: ...

    def backtest(self, bars: Sequence[PriceBar], initial_balance: float = 10_000.0) -> BacktestResult: ...

    def validate(self, config: StrategyConfig) -> bool: ...


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _num(config: StrategyConfig, key: str) -> float | None:
    value = config.parameters.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _bracket(close: float, signal_type: SignalType, rm: RiskManagement) -> tuple[float, float]:
    """Stop-loss and take-profit prices from the strategy's risk block."""
    if signal_type is SignalType.BUY:
        return close * (1 - rm.stop_loss / 100), close * (1 + rm.take_profit / 100)
    return close * (1 + rm.stop_loss / 100), close * (1 - rm.take_profit / 100)


def _signal(
    strategy: Strategy,
    bar: PriceBar,
    signal_type: SignalType,
    strength: float,
    reason: str,
    *,
    stop_loss: float | None = None,
    take_profit: float | None = None,
) -> Signal:
    default_stop, default_target = _bracket(bar.close, signal_type, strategy.config.risk_management)
    return Signal(
        symbol=bar.symbol,
        type=signal_type,
        strength=strength,
        confidence=float(strategy.config.param("min_confidence", 0.5)),
        price=bar.close,
        timestamp=bar.timestamp,
        strategy=strategy.name,
        reason=reason,
        stop_loss=default_stop if stop_loss is None else stop_loss,
        take_profit=default_target if take_profit is None else take_profit,
    )


def _backtest(strategy: Strategy, bars: Sequence[PriceBar], initial_balance: float) -> BacktestResult:
    return run_backtest(
        bars,
        strategy.execute,
        start_index=strategy.min_lookback,
        position_size_pct=strategy.config.risk_management.max_position_size,
        initial_balance=initial_balance,
        strategy=strategy.name,
    )


def _closes(bars: Sequence[PriceBar]) -> list[float]:
    return [b.close for b in bars]


# ---------------------------------------------------------------------------
# Moving average crossover
# ---------------------------------------------------------------------------


class MovingAverageCrossover:
    name = "ma_crossover"
    description = "Buy when the fast SMA crosses above the slow SMA, sell when it crosses below"
    timeframe = "1h"

    def __init__(self, config: StrategyConfig | None = None) -> None:
        self.config = config or self.default_config()

    @classmethod
    def default_config(cls) -> StrategyConfig:
        return StrategyConfig(
            name=cls.name,
            parameters={"fast_period": 10, "slow_period": 20, "min_confidence": 0.7},
            risk_management=RiskManagement(max_position_size=10, stop_loss=2, take_profit=4, max_drawdown=10),
        )

    @property
    def min_lookback(self) -> int:
        return int(self.config.param("slow_period"))

    def execute(self, bars: Sequence[PriceBar]) -> list[Signal]:
        fast_period = int(self.config.param("fast_period"))
        slow_period = int(self.config.param("slow_period"))
        if len(bars) < slow_period + 1:
            return []

        closes = _closes(bars)
        fast = indicators.sma(closes, fast_period)
        slow = indicators.sma(closes, slow_period)
        if len(fast) < 2 or len(slow) < 2:
            return []

        latest = bars[-1]
        prev_fast, cur_fast = fast[-2], fast[-1]
        prev_slow, cur_slow = slow[-2], slow[-1]

        if prev_fast <= prev_slow and cur_fast > cur_slow:
            return [_signal(
                self, latest, SignalType.BUY, 75,
                f"Fast MA ({cur_fast:.2f}) crossed above Slow MA ({cur_slow:.2f})",
            )]
        if prev_fast >= prev_slow and cur_fast < cur_slow:
            return [_signal(
                self, latest, SignalType.SELL, 75,
                f"Fast MA ({cur_fast:.2f}) crossed below Slow MA ({cur_slow:.2f})",
            )]
        return []

    def backtest(self, bars: Sequence[PriceBar], initial_balance: float = 10_000.0) -> BacktestResult:
        return _backtest(self, bars, initial_balance)

    def validate(self, config: StrategyConfig) -> bool:
        fast = _num(config, "fast_period")
        slow = _num(config, "slow_period")
        confidence = _num(config, "min_confidence")
        if fast is None or slow is None or confidence is None:
            return False
        return fast > 0 and slow > fast and 0 <= confidence <= 1


# ---------------------------------------------------------------------------
# RSI threshold
# ---------------------------------------------------------------------------


class RSIThreshold:
    name = "rsi"
    description = "Buy when RSI drops into oversold, sell when it rises into overbought"
    timeframe = "1h"

    def __init__(self, config: StrategyConfig | None = None) -> None:
        self.config = config or self.default_config()

    @classmethod
    def default_config(cls) -> StrategyConfig:
        return StrategyConfig(
            name=cls.name,
            parameters={"period": 14, "oversold": 30, "overbought": 70, "min_confidence": 0.6},
            risk_management=RiskManagement(max_position_size=8, stop_loss=3, take_profit=6, max_drawdown=15),
        )

    @property
    def min_lookback(self) -> int:
        # two RSI values need period + 2 bars
        return int(self.config.param("period")) + 1

    def execute(self, bars: Sequence[PriceBar]) -> list[Signal]:
        period = int(self.config.param("period"))
        oversold = float(self.config.param("oversold"))
        overbought = float(self.config.param("overbought"))
        values = indicators.rsi(_closes(bars), period)
        if len(values) < 2:
            return []

        latest = bars[-1]
        prev, current = values[-2], values[-1]

        if current < oversold <= prev:
            return [_signal(
                self, latest, SignalType.BUY, max(20.0, 100 - current * 2),
                f"RSI oversold: {current:.2f}",
            )]
        if current > overbought >= prev:
            return [_signal(
                self, latest, SignalType.SELL, max(20.0, current - 30),
                f"RSI overbought: {current:.2f}",
            )]
        return []

    def backtest(self, bars: Sequence[PriceBar], initial_balance: float = 10_000.0) -> BacktestResult:
        return _backtest(self, bars, initial_balance)

    def validate(self, config: StrategyConfig) -> bool:
        period = _num(config, "period")
        oversold = _num(config, "oversold")
        overbought = _num(config, "overbought")
        if period is None or oversold is None or overbought is None:
            return False
        return period > 0 and oversold > 0 and oversold < overbought < 100


# ---------------------------------------------------------------------------
# MACD crossover
# ---------------------------------------------------------------------------


class MACDCrossover:
    name = "macd"
    description = "Buy when MACD crosses above its signal line, sell when it crosses below"
    timeframe = "1h"

    def __init__(self, config: StrategyConfig | None = None) -> None:
        self.config = config or self.default_config()

    @classmethod
    def default_config(cls) -> StrategyConfig:
        return StrategyConfig(
            name=cls.name,
            parameters={"fast_period": 12, "slow_period": 26, "signal_period": 9, "min_confidence": 0.65},
            risk_management=RiskManagement(max_position_size=9, stop_loss=2.5, take_profit=5, max_drawdown=12),
        )

    @property
    def min_lookback(self) -> int:
        return int(self.config.param("slow_period")) + int(self.config.param("signal_period")) - 1

    def execute(self, bars: Sequence[PriceBar]) -> list[Signal]:
        fast = int(self.config.param("fast_period"))
        slow = int(self.config.param("slow_period"))
        signal_period = int(self.config.param("signal_period"))
        if len(bars) < slow + signal_period:
            return []

        points = indicators.macd(_closes(bars), fast, slow, signal_period)
        if len(points) < 2:
            return []

        latest = bars[-1]
        prev, current = points[-2], points[-1]
        strength = min(100.0, abs(current.histogram) * 1000 + 50)

        if prev.macd <= prev.signal and current.macd > current.signal:
            return [_signal(
                self, latest, SignalType.BUY, strength,
                f"MACD bullish crossover: MACD({current.macd:.4f}) > Signal({current.signal:.4f})",
            )]
        if prev.macd >= prev.signal and current.macd < current.signal:
            return [_signal(
                self, latest, SignalType.SELL, strength,
                f"MACD bearish crossover: MACD({current.macd:.4f}) < Signal({current.signal:.4f})",
            )]
        return []

    def backtest(self, bars: Sequence[PriceBar], initial_balance: float = 10_000.0) -> BacktestResult:
        return _backtest(self, bars, initial_balance)

    def validate(self, config: StrategyConfig) -> bool:
        fast = _num(config, "fast_period")
        slow = _num(config, "slow_period")
        signal_period = _num(config, "signal_period")
        if fast is None or slow is None or signal_period is None:
            return False
        return fast > 0 and slow > fast and signal_period > 0


# ---------------------------------------------------------------------------
# Bollinger band touch
# ---------------------------------------------------------------------------


class BollingerTouch:
    name = "bollinger"
    description = "Buy near the lower Bollinger band, sell near the upper band"
    timeframe = "1h"

    # closes within 1% of a band count as a touch
    TOUCH_TOLERANCE = 0.01

    def __init__(self, config: StrategyConfig | None = None) -> None:
        self.config = config or self.default_config()

    @classmethod
    def default_config(cls) -> StrategyConfig:
        return StrategyConfig(
            name=cls.name,
            parameters={"period": 20, "std_dev": 2, "min_confidence": 0.7},
            risk_management=RiskManagement(max_position_size=10, stop_loss=2, take_profit=4, max_drawdown=10),
        )

    @property
    def min_lookback(self) -> int:
        return int(self.config.param("period")) - 1

    def execute(self, bars: Sequence[PriceBar]) -> list[Signal]:
        period = int(self.config.param("period"))
        bands = indicators.bollinger_bands(_closes(bars), period, float(self.config.param("std_dev")))
        if not bands:
            return []

        latest = bars[-1]
        band = bands[-1]

        if latest.close <= band.lower * (1 + self.TOUCH_TOLERANCE):
            return [_signal(
                self, latest, SignalType.BUY, 70,
                f"Price near lower Bollinger Band: {latest.close:.2f} <= {band.lower:.2f}",
                take_profit=band.middle,
            )]
        if latest.close >= band.upper * (1 - self.TOUCH_TOLERANCE):
            return [_signal(
                self, latest, SignalType.SELL, 70,
                f"Price near upper Bollinger Band: {latest.close:.2f} >= {band.upper:.2f}",
                take_profit=band.middle,
            )]
        return []

    def backtest(self, bars: Sequence[PriceBar], initial_balance: float = 10_000.0) -> BacktestResult:
        return _backtest(self, bars, initial_balance)

    def validate(self, config: StrategyConfig) -> bool:
        period = _num(config, "period")
        std_dev = _num(config, "std_dev")
        if period is None or std_dev is None:
            return False
        return period > 0 and std_dev > 0


# ---------------------------------------------------------------------------
# Ichimoku cloud / cross
# ---------------------------------------------------------------------------


class IchimokuCloud:
    name = "ichimoku"
    description = "Buy on a conversion/base cross above the cloud, sell on the reverse below it"
    timeframe = "4h"

    def __init__(self, config: StrategyConfig | None = None) -> None:
        self.config = config or self.default_config()

    @classmethod
    def default_config(cls) -> StrategyConfig:
        return StrategyConfig(
            name=cls.name,
            parameters={
                "conversion_period": 9,
                "base_period": 26,
                "span_b_period": 52,
                "displacement": 26,
                "min_confidence": 0.8,
            },
            risk_management=RiskManagement(max_position_size=12, stop_loss=3, take_profit=6, max_drawdown=15),
        )

    @property
    def min_lookback(self) -> int:
        return int(self.config.param("span_b_period")) + int(self.config.param("displacement", 26)) - 1

    def execute(self, bars: Sequence[PriceBar]) -> list[Signal]:
        if len(bars) < self.min_lookback + 1:
            return []

        cloud = indicators.ichimoku(
            [b.high for b in bars],
            [b.low for b in bars],
            _closes(bars),
            int(self.config.param("conversion_period")),
            int(self.config.param("base_period")),
            int(self.config.param("span_b_period")),
        )
        if len(cloud.conversion_line) < 2 or len(cloud.base_line) < 2:
            return []

        latest = bars[-1]
        prev_conv, cur_conv = cloud.conversion_line[-2], cloud.conversion_line[-1]
        prev_base, cur_base = cloud.base_line[-2], cloud.base_line[-1]
        span_a = cloud.leading_span_a[-1] if cloud.leading_span_a else 0.0
        span_b = cloud.leading_span_b[-1] if cloud.leading_span_b else 0.0
        cloud_top = max(span_a, span_b)
        cloud_bottom = min(span_a, span_b)

        if prev_conv <= prev_base and cur_conv > cur_base and latest.close > cloud_top:
            return [_signal(
                self, latest, SignalType.BUY, 85,
                "Ichimoku bullish: conversion line crossed above base line, price above cloud",
                stop_loss=cloud_top,
            )]
        if prev_conv >= prev_base and cur_conv < cur_base and latest.close < cloud_bottom:
            return [_signal(
                self, latest, SignalType.SELL, 85,
                "Ichimoku bearish: conversion line crossed below base line, price below cloud",
                stop_loss=cloud_bottom,
            )]
        return []

    def backtest(self, bars: Sequence[PriceBar], initial_balance: float = 10_000.0) -> BacktestResult:
        return _backtest(self, bars, initial_balance)

    def validate(self, config: StrategyConfig) -> bool:
        conversion = _num(config, "conversion_period")
        base = _num(config, "base_period")
        span_b = _num(config, "span_b_period")
        if conversion is None or base is None or span_b is None:
            return False
        return conversion > 0 and base > conversion and span_b > base


STRATEGY_TYPES: dict[str, Any] = {
    cls.name: cls
    for cls in (MovingAverageCrossover, RSIThreshold, MACDCrossover, BollingerTouch, IchimokuCloud)
}


def build_strategies(configs: dict[str, StrategyConfig] | None = None) -> list[Strategy]:
    """Instantiate every built-in strategy, applying *configs* where given."""
    configs = configs or {}
    return [cls(configs.get(name)) for name, cls in STRATEGY_TYPES.items()]
