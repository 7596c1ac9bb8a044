"""
trading-core: indicators, strategies, strategy engine, risk engine.

No I/O, no network. Consumes PriceBar windows and portfolio snapshots,
produces signals, risk checks and alerts. Deterministic and unit-testable.
Engines live in trading_core.strategy_engine and trading_core.risk_engine.
"""

from trading_core.contracts import (
    PriceBar,
    RiskLimits,
    Side,
    Signal,
    SignalType,
    StrategyConfig,
)
from trading_core.errors import (
    AdapterError,
    InvariantViolation,
    NotFoundError,
    RiskRejection,
    TradingError,
    ValidationError,
)

__all__ = [
    "AdapterError",
    "InvariantViolation",
    "NotFoundError",
    "PriceBar",
    "RiskLimits",
    "RiskRejection",
    "Side",
    "Signal",
    "SignalType",
    "StrategyConfig",
    "TradingError",
    "ValidationError",
]
