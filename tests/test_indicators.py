"""Indicator library: hand-computed values and window edge cases."""

import math

import pytest

from conftest import GOLDEN_CLOSES
from trading_core import indicators
from trading_core.errors import ValidationError


class TestMovingAverages:
    def test_sma_values(self) -> None:
        assert indicators.sma([1, 2, 3, 4, 5], 3) == pytest.approx([2.0, 3.0, 4.0])

    def test_sma_short_series_is_empty(self) -> None:
        assert indicators.sma([1, 2], 3) == []

    def test_sma_non_positive_period_is_empty(self) -> None:
        assert indicators.sma([1, 2, 3], 0) == []

    def test_ema_seeded_with_first_price(self) -> None:
        # multiplier 2 / (3 + 1) = 0.5
        assert indicators.ema([1, 2, 3], 3) == pytest.approx([1.0, 1.5, 2.25])

    def test_ema_empty(self) -> None:
        assert indicators.ema([], 5) == []


class TestOscillators:
    def test_rsi_wilder_smoothing(self) -> None:
        # gains [1, 0, 1], losses [0, 1, 0]
        # first: 0.5 / 0.5 -> 50; then gain (0.5 + 1) / 2 = 0.75, loss 0.25 -> RS 3 -> 75
        assert indicators.rsi([10, 11, 10, 11], 2) == pytest.approx([50.0, 75.0])

    def test_rsi_all_gains_is_100(self) -> None:
        prices = [float(i) for i in range(1, 16)]
        assert indicators.rsi(prices, 14) == [100.0]

    def test_rsi_needs_period_plus_one(self) -> None:
        assert indicators.rsi([1.0] * 14, 14) == []

    def test_rsi_length(self) -> None:
        prices = [100 + math.sin(i) for i in range(40)]
        assert len(indicators.rsi(prices, 14)) == 40 - 14

    def test_stochastic(self) -> None:
        points = indicators.stochastic([10, 12, 14], [8, 9, 10], [9, 11, 13], k_period=3, d_period=1)
        assert len(points) == 1
        assert points[0].k == pytest.approx(500 / 6)
        assert points[0].d == pytest.approx(500 / 6)

    def test_stochastic_flat_window_is_50(self) -> None:
        points = indicators.stochastic([5, 5, 5], [5, 5, 5], [5, 5, 5], k_period=3, d_period=1)
        assert points[0].k == 50.0

    def test_williams_r(self) -> None:
        values = indicators.williams_r([10, 12, 14], [8, 9, 10], [9, 11, 13], period=3)
        assert values == pytest.approx([-100 / 6])

    def test_cci_flat_is_zero(self) -> None:
        assert indicators.cci([5] * 20, [5] * 20, [5] * 20, 20) == [0.0]

    def test_mfi_only_positive_flow_is_100(self) -> None:
        closes = [float(i) for i in range(1, 17)]
        values = indicators.mfi(closes, closes, closes, [100.0] * 16, 14)
        assert values == [100.0, 100.0]

    def test_mismatched_lengths_raise(self) -> None:
        with pytest.raises(ValidationError):
            indicators.stochastic([1, 2], [1], [1, 2])


class TestMACD:
    def test_short_series_is_empty(self) -> None:
        assert indicators.macd([1.0] * 25) == []

    def test_constant_prices_are_zero(self) -> None:
        points = indicators.macd([50.0] * 30)
        assert len(points) == 5
        for point in points:
            assert point.macd == pytest.approx(0.0)
            assert point.signal == pytest.approx(0.0)
            assert point.histogram == pytest.approx(0.0)

    def test_rising_prices_positive_line(self) -> None:
        points = indicators.macd([float(i) for i in range(1, 41)])
        assert points[-1].macd > 0
        assert points[-1].histogram == pytest.approx(points[-1].macd - points[-1].signal)

    def test_invalid_periods(self) -> None:
        assert indicators.macd([1.0] * 50, fast=26, slow=12) == []


class TestGoldenSeries:
    def test_rsi(self) -> None:
        values = indicators.rsi(GOLDEN_CLOSES, 14)
        assert len(values) == 16
        # first window: gains 6.5, losses 3.0 -> RS 13/6
        # then +1.0 and +0.5 moves smoothed over 14
        assert values[:3] == pytest.approx([1300 / 19, 788 / 11, 275700 / 3771])

    def test_bollinger(self) -> None:
        bands = indicators.bollinger_bands(GOLDEN_CLOSES, 20, 2)
        assert len(bands) == 11
        # squared deviations from 46.625 sum to 68.9375
        sd = math.sqrt(68.9375 / 20)
        assert bands[0].middle == pytest.approx(46.625)
        assert bands[0].upper == pytest.approx(46.625 + 2 * sd)
        assert bands[0].lower == pytest.approx(46.625 - 2 * sd)
        assert bands[-1].middle == pytest.approx(48.425)

    def test_macd_starts_at_slow_window(self) -> None:
        assert len(indicators.macd(GOLDEN_CLOSES, 3, 5, 2)) == 30 - 5 + 1

        points = indicators.macd(GOLDEN_CLOSES[:6], 3, 5, 2)
        # EMA(3) at bars 4, 5: 44.59375, 45.046875; EMA(5): 3598/81, 21763/486
        first = 44.59375 - 3598 / 81
        second = 45.046875 - 21763 / 486
        assert [p.macd for p in points] == pytest.approx([first, second])
        assert points[0].signal == pytest.approx(first)
        assert points[1].signal == pytest.approx((2 * second + first) / 3)
        assert points[1].histogram == pytest.approx(second - points[1].signal)


class TestVolatility:
    def test_bollinger_population_stddev(self) -> None:
        bands = indicators.bollinger_bands([1, 2, 3], 3, 2)
        sd = math.sqrt(2 / 3)
        assert len(bands) == 1
        assert bands[0].middle == pytest.approx(2.0)
        assert bands[0].upper == pytest.approx(2 + 2 * sd)
        assert bands[0].lower == pytest.approx(2 - 2 * sd)

    def test_true_range(self) -> None:
        assert indicators.true_range(10, 8, 12) == 4

    def test_atr(self) -> None:
        values = indicators.atr([10, 11, 12], [9, 10, 11], [9.5, 10.5, 11.5], 2)
        assert values == pytest.approx([1.5, 1.5])

    def test_atr_needs_period_plus_one(self) -> None:
        assert indicators.atr([10, 11], [9, 10], [9.5, 10.5], 2) == []

    def test_parabolic_sar_starts_at_first_low_in_uptrend(self) -> None:
        highs = [10, 11, 12, 13, 14]
        lows = [9, 10, 11, 12, 13]
        values = indicators.parabolic_sar(highs, lows)
        assert len(values) == 4
        assert values[0] == 9
        assert all(v <= low for v, low in zip(values[1:], lows[2:]))


class TestVWAP:
    def test_cumulative(self) -> None:
        values = indicators.vwap([3, 6], [1, 2], [2, 4], [10, 30])
        assert values == pytest.approx([2.0, 3.5])

    def test_zero_volume_uses_typical_price(self) -> None:
        assert indicators.vwap([3], [1], [2], [0]) == [2.0]

    def test_length_mismatch_raises(self) -> None:
        with pytest.raises(ValidationError):
            indicators.vwap([1, 2], [1, 2], [1, 2], [1])


class TestIchimokuAndLevels:
    def test_ichimoku_lengths(self) -> None:
        highs = [float(i + 1) for i in range(60)]
        lows = [float(i) for i in range(60)]
        result = indicators.ichimoku(highs, lows, lows)
        assert len(result.conversion_line) == 52
        assert len(result.base_line) == 35
        assert len(result.leading_span_a) == 35
        assert len(result.leading_span_b) == 9
        assert len(result.lagging_span) == 60

    def test_ichimoku_conversion_midpoint(self) -> None:
        highs = [float(i + 1) for i in range(60)]
        lows = [float(i) for i in range(60)]
        result = indicators.ichimoku(highs, lows, lows)
        # last 9 bars: highest 60, lowest 51
        assert result.conversion_line[-1] == pytest.approx(55.5)

    def test_support_resistance_strict_extremes(self) -> None:
        levels = indicators.find_support_resistance([1, 3, 1, 2, 1], [1, 0, 1, 0.5, 1], lookback=1)
        assert levels.resistance == [3, 2]
        assert levels.support == [0, 0.5]
