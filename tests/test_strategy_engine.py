"""Strategy Engine: registry, isolated execution, consolidation, history and channel."""

from datetime import timedelta

import pytest

from backtest.runner import BacktestResult
from conftest import T0, make_bars
from trading_core.contracts import ConsolidatedSignal, Signal, SignalType, StrategyConfig
from trading_core.errors import NotFoundError, ValidationError
from trading_core.strategies import BollingerTouch, MovingAverageCrossover, RSIThreshold, build_strategies
from trading_core.strategy_engine import StrategyEngine, consolidate_signals


class BrokenStrategy:
    name = "broken"
    description = "always raises"
    timeframe = "1h"
    min_lookback = 0

    def __init__(self) -> None:
        self.config = StrategyConfig("broken")

    def execute(self, bars):
        raise RuntimeError("boom")

    def backtest(self, bars, initial_balance=10_000.0):
        raise RuntimeError("boom")

    def validate(self, config):
        return True


def _sig(symbol: str, kind: SignalType, strength: float, confidence: float, strategy: str, minutes: int = 0) -> Signal:
    return Signal(symbol, kind, strength, confidence, 100.0, T0 + timedelta(minutes=minutes), strategy, "test")


CROSS_UP = [100.0] * 20 + [130.0]


class TestRegistry:
    def test_registration_follows_enabled_flag(self) -> None:
        disabled = RSIThreshold(StrategyConfig("rsi", RSIThreshold.default_config().parameters, enabled=False))
        engine = StrategyEngine([MovingAverageCrossover(), disabled])
        assert engine.active_strategies() == ["ma_crossover"]
        assert {s.name for s in engine.available_strategies()} == {"ma_crossover", "rsi"}

    def test_enable_disable(self) -> None:
        engine = StrategyEngine([MovingAverageCrossover()])
        engine.disable_strategy("ma_crossover")
        assert not engine.is_active("ma_crossover")
        assert engine.run_strategy("ma_crossover", make_bars(CROSS_UP)) == []
        engine.enable_strategy("ma_crossover")
        assert engine.is_active("ma_crossover")
        assert len(engine.run_strategy("ma_crossover", make_bars(CROSS_UP))) == 1

    def test_unknown_strategy(self) -> None:
        engine = StrategyEngine()
        with pytest.raises(NotFoundError):
            engine.run_strategy("nope", [])
        with pytest.raises(NotFoundError):
            engine.unregister_strategy("nope")

    def test_unregister(self) -> None:
        engine = StrategyEngine([MovingAverageCrossover()])
        engine.unregister_strategy("ma_crossover")
        assert engine.active_strategies() == []

    def test_update_config_merges_and_validates(self) -> None:
        engine = StrategyEngine([MovingAverageCrossover()])
        updated = engine.update_strategy_config("ma_crossover", parameters={"fast_period": 5}, risk_management={"stop_loss": 1})
        assert updated.parameters["fast_period"] == 5
        assert updated.parameters["slow_period"] == 20
        assert updated.risk_management.stop_loss == 1

        with pytest.raises(ValidationError):
            engine.update_strategy_config("ma_crossover", parameters={"fast_period": 50})
        strategy = engine.available_strategies()[0]
        assert strategy.config.parameters["fast_period"] == 5

    def test_update_config_can_disable(self) -> None:
        engine = StrategyEngine([MovingAverageCrossover()])
        engine.update_strategy_config("ma_crossover", enabled=False)
        assert engine.active_strategies() == []


class TestRunning:
    def test_failing_strategy_is_isolated(self) -> None:
        engine = StrategyEngine([BrokenStrategy(), MovingAverageCrossover()])
        assert engine.run_strategy("broken", make_bars(CROSS_UP)) == []
        signals = engine.run_all_active_strategies(make_bars(CROSS_UP))
        assert [s.strategy for s in signals] == ["ma_crossover"]

    def test_run_all_consolidates_per_symbol(self) -> None:
        engine = StrategyEngine([MovingAverageCrossover(), BollingerTouch()])
        signals = engine.run_all_active_strategies({
            "BTC/USD": make_bars(CROSS_UP, "BTC/USD"),
            "ETH/USD": make_bars([100.0] * 30, "ETH/USD"),
        })
        # ETH: flat window touches the (collapsed) lower band -> one bollinger buy
        by_symbol = {s.symbol: s for s in signals}
        assert set(by_symbol) == {"BTC/USD", "ETH/USD"}
        btc = by_symbol["BTC/USD"]
        # MA crossover buys, bollinger sells at the upper band: tie -> hold
        assert isinstance(btc, ConsolidatedSignal)
        assert btc.type is SignalType.HOLD
        assert btc.strength == pytest.approx(72.5)
        assert set(btc.contributors) == {"ma_crossover", "bollinger"}
        assert by_symbol["ETH/USD"].strategy == "bollinger"

    def test_backtest_failure_degrades_to_empty(self) -> None:
        engine = StrategyEngine([BrokenStrategy()])
        result = engine.backtest_strategy("broken", make_bars([1.0, 2.0]), 5_000)
        assert isinstance(result, BacktestResult)
        assert result.total_trades == 0
        assert result.final_balance == 5_000


class TestConsolidation:
    def test_single_signal_passes_through(self) -> None:
        sig = _sig("X", SignalType.BUY, 60, 0.6, "a")
        assert consolidate_signals([sig]) == [sig]

    def test_weighted_confidence_and_majority(self) -> None:
        merged = consolidate_signals([
            _sig("X", SignalType.BUY, 80, 0.9, "a"),
            _sig("X", SignalType.BUY, 40, 0.3, "b", minutes=5),
            _sig("X", SignalType.SELL, 60, 0.6, "c"),
        ])
        assert len(merged) == 1
        sig = merged[0]
        assert sig.type is SignalType.BUY
        assert sig.confidence == pytest.approx((0.9 * 80 + 0.3 * 40 + 0.6 * 60) / 180)
        assert sig.strength == pytest.approx(60)
        assert sig.timestamp == T0 + timedelta(minutes=5)
        assert sig.strategy == "consolidated"
        assert "3 strategies" in sig.reason

    def test_tie_is_hold(self) -> None:
        merged = consolidate_signals([
            _sig("X", SignalType.BUY, 50, 0.5, "a"),
            _sig("X", SignalType.SELL, 50, 0.5, "b"),
        ])
        assert merged[0].type is SignalType.HOLD

    def test_zero_strength_uses_plain_mean(self) -> None:
        merged = consolidate_signals([
            _sig("X", SignalType.BUY, 0, 0.2, "a"),
            _sig("X", SignalType.BUY, 0, 0.4, "b"),
        ])
        assert merged[0].confidence == pytest.approx(0.3)


class TestHistoryAndChannel:
    def test_history_retention_window(self) -> None:
        engine = StrategyEngine([MovingAverageCrossover()], signal_retention=timedelta(hours=24))
        engine.run_strategy("ma_crossover", make_bars(CROSS_UP, start=T0))
        engine.run_strategy("ma_crossover", make_bars(CROSS_UP, start=T0 + timedelta(days=3)))
        history = engine.signal_history()
        assert len(history) == 1
        assert history[0].timestamp > T0 + timedelta(days=3)

    def test_history_limit(self) -> None:
        engine = StrategyEngine([MovingAverageCrossover()], history_limit=2)
        for i in range(4):
            engine.run_strategy("ma_crossover", make_bars(CROSS_UP, start=T0 + timedelta(minutes=i)))
        assert len(engine.signal_history()) == 2
        assert engine.signal_history(limit=0) == []

    def test_subscriber_failure_does_not_block_others(self) -> None:
        engine = StrategyEngine([MovingAverageCrossover()])
        received: list[Signal] = []

        def bad(signal: Signal) -> None:
            raise RuntimeError("subscriber down")

        engine.subscribe_to_signals(bad)
        unsubscribe = engine.subscribe_to_signals(received.append)
        engine.run_strategy("ma_crossover", make_bars(CROSS_UP))
        assert len(received) == 1

        unsubscribe()
        engine.run_strategy("ma_crossover", make_bars(CROSS_UP))
        assert len(received) == 1


def test_builtins_run_on_realistic_window(uptrend_bars) -> None:
    engine = StrategyEngine(build_strategies())
    signals = engine.run_all_active_strategies(uptrend_bars)
    for signal in signals:
        assert 0 <= signal.strength <= 100
        assert 0 <= signal.confidence <= 1
