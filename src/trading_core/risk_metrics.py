"""
Risk statistics: returns, Value at Risk, drawdown, Sharpe, correlation.

Pure functions shared by the Risk Engine, the backtest runner and the
portfolio performance report. Standard deviations are population (divide by n).
"""

from __future__ import annotations

import math
from typing import Sequence

Z_SCORES: dict[float, float] = {
    0.90: 1.282,
    0.95: 1.645,
    0.99: 2.326,
}

DEFAULT_Z_SCORE = 1.645


def mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def pstdev(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    m = mean(values)
    return math.sqrt(sum((v - m) ** 2 for v in values) / len(values))


def returns_from_values(values: Sequence[float]) -> list[float]:
    """Simple period returns between consecutive values; zero bases are skipped."""
    return [
        (values[i] - values[i - 1]) / values[i - 1]
        for i in range(1, len(values))
        if values[i - 1] != 0
    ]


def z_score(confidence: float) -> float:
    return Z_SCORES.get(round(confidence, 4), DEFAULT_Z_SCORE)


def var_index(n: int, confidence: float) -> int:
    """Index of the (1 - confidence) quantile in an ascending returns array.

    floor((1 - confidence) * n), clamped to the array.
    """
    if n <= 0:
        return 0
    # 1e-9 absorbs float error such as (1 - 0.9) * 10 == 0.9999999999999998
    index = math.floor((1 - confidence) * n + 1e-9)
    return min(max(index, 0), n - 1)


def historical_var(
    returns: Sequence[float],
    confidence: float = 0.95,
    horizon_days: float = 1,
    portfolio_value: float = 1.0,
) -> float:
    if not returns:
        return 0.0
    ordered = sorted(returns)
    worst = ordered[var_index(len(ordered), confidence)]
    return abs(worst * math.sqrt(horizon_days) * portfolio_value)


def parametric_var(
    returns: Sequence[float],
    confidence: float = 0.95,
    horizon_days: float = 1,
    portfolio_value: float = 1.0,
) -> float:
    if not returns:
        return 0.0
    worst = mean(returns) - z_score(confidence) * pstdev(returns)
    return abs(worst * math.sqrt(horizon_days) * portfolio_value)


def max_drawdown_pct(values: Sequence[float]) -> float:
    """Largest peak-to-trough decline, in percent of the peak."""
    peak = 0.0
    worst = 0.0
    for v in values:
        peak = max(peak, v)
        if peak > 0:
            worst = max(worst, (peak - v) / peak * 100)
    return worst


def sharpe_ratio(returns: Sequence[float], risk_free: float = 0.0) -> float:
    sd = pstdev(returns)
    if sd == 0:
        return 0.0
    return (mean(returns) - risk_free) / sd


def pearson(xs: Sequence[float], ys: Sequence[float]) -> float:
    """Pearson correlation of the overlapping tails of two series; 0 when undefined."""
    n = min(len(xs), len(ys))
    if n < 2:
        return 0.0
    a = xs[len(xs) - n :]
    b = ys[len(ys) - n :]
    ma, mb = mean(a), mean(b)
    cov = sum((x - ma) * (y - mb) for x, y in zip(a, b))
    var_a = sum((x - ma) ** 2 for x in a)
    var_b = sum((y - mb) ** 2 for y in b)
    if var_a == 0 or var_b == 0:
        return 0.0
    return cov / math.sqrt(var_a * var_b)
