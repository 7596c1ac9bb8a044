"""
Technical indicators: pure functions over price and volume series.

Every function is stateless and deterministic. A series shorter than the
indicator's required window yields an empty result instead of raising.

Window conventions:
    sma, bollinger_bands, cci, williams_r   first value at index period - 1
    rsi, mfi                                first value at index period
    ema                                     seeded with prices[0], one value per input
    macd                                    first value at index slow - 1
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Sequence

from trading_core.errors import ValidationError


@dataclass(frozen=True)
class MACDPoint:
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class BollingerBand:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class StochasticPoint:
    k: float
    d: float


@dataclass(frozen=True)
class IchimokuResult:
    """Ichimoku components. Spans are aligned to the bar they are computed on."""

    conversion_line: list[float] = field(default_factory=list)
    base_line: list[float] = field(default_factory=list)
    leading_span_a: list[float] = field(default_factory=list)
    leading_span_b: list[float] = field(default_factory=list)
    lagging_span: list[float] = field(default_factory=list)


@dataclass(frozen=True)
class SupportResistance:
    support: list[float] = field(default_factory=list)
    resistance: list[float] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Moving averages
# ---------------------------------------------------------------------------


def sma(prices: Sequence[float], period: int) -> list[float]:
    """Simple moving average, one value per complete trailing window."""
    if period <= 0 or len(prices) < period:
        return []
    return [
        sum(prices[i - period + 1 : i + 1]) / period
        for i in range(period - 1, len(prices))
    ]


def ema(prices: Sequence[float], period: int) -> list[float]:
    """Exponential moving average seeded with the first price.

    multiplier = 2 / (period + 1); output has the same length as the input.
    """
    if period <= 0 or not prices:
        return []
    multiplier = 2 / (period + 1)
    values = [float(prices[0])]
    for price in prices[1:]:
        values.append(price * multiplier + values[-1] * (1 - multiplier))
    return values


# ---------------------------------------------------------------------------
# Oscillators
# ---------------------------------------------------------------------------


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100 - 100 / (1 + rs)


def rsi(prices: Sequence[float], period: int = 14) -> list[float]:
    """Relative Strength Index with Wilder smoothing.

    The first value uses the simple average of the first ``period`` gains and
    losses; later values are smoothed as ``(prev * (period - 1) + x) / period``.
    Returns ``len(prices) - period`` values. A zero average loss yields 100.
    """
    if period <= 0 or len(prices) < period + 1:
        return []

    gains: list[float] = []
    losses: list[float] = []
    for i in range(1, len(prices)):
        change = prices[i] - prices[i - 1]
        gains.append(max(change, 0.0))
        losses.append(max(-change, 0.0))

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    values = [_rsi_value(avg_gain, avg_loss)]

    for i in range(period, len(gains)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        values.append(_rsi_value(avg_gain, avg_loss))

    return values


def macd(
    prices: Sequence[float],
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> list[MACDPoint]:
    """MACD line, signal line and histogram.

    The MACD line is EMA(fast) - EMA(slow) on the same bar, starting once the
    slow EMA covers ``slow`` prices. The signal line is EMA(signal) of the
    MACD line; the output is aligned to the signal series.
    """
    if fast <= 0 or slow <= fast or signal <= 0 or len(prices) < slow:
        return []

    fast_ema = ema(prices, fast)
    slow_ema = ema(prices, slow)
    line = [fast_ema[i] - slow_ema[i] for i in range(slow - 1, len(prices))]
    signal_line = ema(line, signal)

    offset = len(line) - len(signal_line)
    return [
        MACDPoint(
            macd=line[offset + i],
            signal=signal_line[i],
            histogram=line[offset + i] - signal_line[i],
        )
        for i in range(len(signal_line))
    ]


def bollinger_bands(
    prices: Sequence[float],
    period: int = 20,
    std_dev: float = 2.0,
) -> list[BollingerBand]:
    """SMA +/- std_dev * population standard deviation of each trailing window."""
    if period <= 0 or len(prices) < period:
        return []

    bands: list[BollingerBand] = []
    for i in range(period - 1, len(prices)):
        window = prices[i - period + 1 : i + 1]
        middle = sum(window) / period
        deviation = math.sqrt(sum((p - middle) ** 2 for p in window) / period)
        bands.append(
            BollingerBand(
                upper=middle + deviation * std_dev,
                middle=middle,
                lower=middle - deviation * std_dev,
            )
        )
    return bands


def _check_lengths(*series: Sequence[float]) -> None:
    if len({len(s) for s in series}) > 1:
        raise ValidationError("All input series must have the same length")


def stochastic(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    k_period: int = 14,
    d_period: int = 3,
) -> list[StochasticPoint]:
    """%K over ``k_period`` bars and %D = SMA(d_period) of %K.

    A flat window (highest high == lowest low) gives %K = 50.
    """
    _check_lengths(highs, lows, closes)
    if k_period <= 0 or len(closes) < k_period:
        return []

    k_values: list[float] = []
    for i in range(k_period - 1, len(closes)):
        highest = max(highs[i - k_period + 1 : i + 1])
        lowest = min(lows[i - k_period + 1 : i + 1])
        if highest == lowest:
            k_values.append(50.0)
        else:
            k_values.append((closes[i] - lowest) / (highest - lowest) * 100)

    d_values = sma(k_values, d_period)
    offset = len(k_values) - len(d_values)
    return [StochasticPoint(k=k_values[offset + i], d=d) for i, d in enumerate(d_values)]


def williams_r(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = 14,
) -> list[float]:
    """Williams %R on the -100..0 scale. A flat window gives -50."""
    _check_lengths(highs, lows, closes)
    if period <= 0 or len(closes) < period:
        return []

    values: list[float] = []
    for i in range(period - 1, len(closes)):
        highest = max(highs[i - period + 1 : i + 1])
        lowest = min(lows[i - period + 1 : i + 1])
        if highest == lowest:
            values.append(-50.0)
        else:
            values.append((highest - closes[i]) / (highest - lowest) * -100)
    return values


def cci(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = 20,
) -> list[float]:
    """Commodity Channel Index with the 0.015 Lambert constant."""
    _check_lengths(highs, lows, closes)
    if period <= 0 or len(closes) < period:
        return []

    typical = [(h + l + c) / 3 for h, l, c in zip(highs, lows, closes)]
    values: list[float] = []
    for i in range(period - 1, len(typical)):
        window = typical[i - period + 1 : i + 1]
        mean_tp = sum(window) / period
        mean_dev = sum(abs(tp - mean_tp) for tp in window) / period
        if mean_dev == 0:
            values.append(0.0)
        else:
            values.append((typical[i] - mean_tp) / (0.015 * mean_dev))
    return values


def mfi(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    volumes: Sequence[float],
    period: int = 14,
) -> list[float]:
    """Money Flow Index. No negative flow in the window gives 100."""
    _check_lengths(highs, lows, closes, volumes)
    if period <= 0 or len(closes) < period + 1:
        return []

    typical = [(h + l + c) / 3 for h, l, c in zip(highs, lows, closes)]
    values: list[float] = []
    for i in range(period, len(typical)):
        positive = 0.0
        negative = 0.0
        for j in range(i - period + 1, i + 1):
            flow = typical[j] * volumes[j]
            if typical[j] > typical[j - 1]:
                positive += flow
            elif typical[j] < typical[j - 1]:
                negative += flow
        if negative == 0:
            values.append(100.0)
        else:
            values.append(100 - 100 / (1 + positive / negative))
    return values


# ---------------------------------------------------------------------------
# Volatility and trend
# ---------------------------------------------------------------------------


def true_range(high: float, low: float, prev_close: float) -> float:
    """max(high - low, |high - prev_close|, |low - prev_close|)."""
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def atr(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = 14,
) -> list[float]:
    """Average True Range: EMA(period) of the true ranges.

    Requires at least ``period + 1`` bars (``period`` true ranges).
    """
    _check_lengths(highs, lows, closes)
    if period <= 0 or len(closes) < period + 1:
        return []
    ranges = [true_range(highs[i], lows[i], closes[i - 1]) for i in range(1, len(closes))]
    return ema(ranges, period)


def parabolic_sar(
    highs: Sequence[float],
    lows: Sequence[float],
    step: float = 0.02,
    max_step: float = 0.2,
) -> list[float]:
    """Parabolic stop-and-reverse. One value per bar from the second bar on."""
    _check_lengths(highs, lows)
    if len(highs) < 2:
        return []

    up_trend = highs[1] > highs[0]
    sar = lows[0] if up_trend else highs[0]
    extreme = highs[1] if up_trend else lows[1]
    factor = step
    values = [sar]

    for i in range(2, len(highs)):
        sar = sar + factor * (extreme - sar)
        if up_trend:
            if lows[i] <= sar:
                up_trend = False
                sar = extreme
                extreme = lows[i]
                factor = step
            else:
                if highs[i] > extreme:
                    extreme = highs[i]
                    factor = min(factor + step, max_step)
                sar = min(sar, lows[i - 1], lows[i - 2])
        else:
            if highs[i] >= sar:
                up_trend = True
                sar = extreme
                extreme = highs[i]
                factor = step
            else:
                if lows[i] < extreme:
                    extreme = lows[i]
                    factor = min(factor + step, max_step)
                sar = max(sar, highs[i - 1], highs[i - 2])
        values.append(sar)

    return values


def vwap(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    volumes: Sequence[float],
) -> list[float]:
    """Cumulative volume-weighted typical price.

    Raises ValidationError when the series lengths differ. Until any volume
    has traded the value is the bar's typical price.
    """
    _check_lengths(highs, lows, closes, volumes)

    values: list[float] = []
    cum_tpv = 0.0
    cum_volume = 0.0
    for h, l, c, v in zip(highs, lows, closes, volumes):
        typical = (h + l + c) / 3
        cum_tpv += typical * v
        cum_volume += v
        values.append(cum_tpv / cum_volume if cum_volume else typical)
    return values


def _midpoints(highs: Sequence[float], lows: Sequence[float], period: int) -> list[float]:
    if period <= 0 or len(highs) < period:
        return []
    return [
        (max(highs[i - period + 1 : i + 1]) + min(lows[i - period + 1 : i + 1])) / 2
        for i in range(period - 1, len(highs))
    ]


def ichimoku(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    conversion_period: int = 9,
    base_period: int = 26,
    span_b_period: int = 52,
) -> IchimokuResult:
    """Ichimoku cloud components.

    conversion (tenkan) = midpoint of ``conversion_period`` bars
    base (kijun)        = midpoint of ``base_period`` bars
    leading span A      = (conversion + base) / 2 on bars where both exist
    leading span B      = midpoint of ``span_b_period`` bars
    lagging span        = closes
    """
    _check_lengths(highs, lows, closes)
    conversion = _midpoints(highs, lows, conversion_period)
    base = _midpoints(highs, lows, base_period)

    span_a: list[float] = []
    if conversion and base:
        # both lists end on the last bar; align from the end
        overlap = min(len(conversion), len(base))
        conv_tail = conversion[len(conversion) - overlap :]
        base_tail = base[len(base) - overlap :]
        span_a = [(c + b) / 2 for c, b in zip(conv_tail, base_tail)]

    return IchimokuResult(
        conversion_line=conversion,
        base_line=base,
        leading_span_a=span_a,
        leading_span_b=_midpoints(highs, lows, span_b_period),
        lagging_span=[float(c) for c in closes],
    )


def find_support_resistance(
    highs: Sequence[float],
    lows: Sequence[float],
    lookback: int = 20,
) -> SupportResistance:
    """Strict local extremes within +/- ``lookback`` bars.

    A bar is resistance when its high is above every other high in the
    window and support when its low is below every other low.
    """
    _check_lengths(highs, lows)
    result = SupportResistance()
    if lookback <= 0:
        return result

    for i in range(lookback, len(highs) - lookback):
        window = range(i - lookback, i + lookback + 1)
        if all(highs[j] < highs[i] for j in window if j != i):
            result.resistance.append(highs[i])
        if all(lows[j] > lows[i] for j in window if j != i):
            result.support.append(lows[i])
    return result
