"""
Data contracts for the trading core: PriceBar, Signal, StrategyConfig,
RiskLimits, RiskAlert, Account, Position, Portfolio, Trade.

The core consumes PriceBar sequences and produces Signals; the ledger owns
Portfolio/Position state. No I/O; these are plain dataclasses.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SignalType(str, Enum):
    """Directional opinion of a strategy."""

    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> Side:
        return Side.SELL if self is Side.BUY else Side.BUY


class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class AlertLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ---------------------------------------------------------------------------
# Market data and signals
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PriceBar:
    """OHLCV bar; timestamps in UTC. Ordered ascending within a series."""

    symbol: str
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3


@dataclass(frozen=True)
class Signal:
    """One strategy's directional opinion on a symbol at a point in time."""

    symbol: str
    type: SignalType
    strength: float  # 0-100
    confidence: float  # 0.0-1.0
    price: float
    timestamp: datetime
    strategy: str
    reason: str
    stop_loss: float | None = None
    take_profit: float | None = None

    @property
    def is_directional(self) -> bool:
        return self.type is not SignalType.HOLD


@dataclass(frozen=True)
class ConsolidatedSignal(Signal):
    """Merged opinion of several strategies on one symbol."""

    contributors: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Strategy configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskManagement:
    """Per-strategy risk block. All values are percentages."""

    max_position_size: float = 10.0
    stop_loss: float = 2.0
    take_profit: float = 4.0
    max_drawdown: float = 10.0


@dataclass(frozen=True)
class StrategyConfig:
    name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    risk_management: RiskManagement = RiskManagement()

    def param(self, key: str, default: Any = None) -> Any:
        return self.parameters.get(key, default)


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskLimits:
    """Process-wide risk limits. Percentages are expressed as 0-100."""

    max_position_size: float = 10.0
    max_leverage: float = 3.0
    max_drawdown: float = 20.0
    max_daily_loss: float = 5.0
    max_correlation: float = 0.7
    stop_loss_percent: float = 2.0
    take_profit_percent: float = 4.0
    max_open_positions: int = 10
    max_risk_per_trade: float = 2.0
    minimum_margin_level: float = 100.0


@dataclass(frozen=True)
class RiskAlert:
    id: str
    severity: AlertSeverity
    level: AlertLevel
    message: str
    timestamp: datetime
    symbol: str | None = None
    value: float | None = None
    threshold: float | None = None


@dataclass(frozen=True)
class Account:
    """Account snapshot for risk calculations."""

    id: str
    balance: float
    equity: float
    margin_used: float = 0.0
    free_margin: float = 0.0
    margin_level: float = math.inf  # equity / margin used, percent

    @classmethod
    def from_portfolio(cls, portfolio: Portfolio) -> Account:
        margin_level = (
            portfolio.total_equity / portfolio.margin_used * 100
            if portfolio.margin_used > 0
            else math.inf
        )
        return cls(
            id=portfolio.owner_id,
            balance=portfolio.cash_balance,
            equity=portfolio.total_equity,
            margin_used=portfolio.margin_used,
            free_margin=portfolio.free_margin,
            margin_level=margin_level,
        )


# ---------------------------------------------------------------------------
# Ledger state
# ---------------------------------------------------------------------------


@dataclass
class Position:
    """Open holding in one symbol. Removed from its portfolio at zero quantity."""

    portfolio_id: str
    symbol: str
    quantity: float
    avg_price: float
    current_price: float
    entry_time: datetime
    updated_at: datetime
    side: PositionSide = PositionSide.LONG
    market_value: float = 0.0
    unrealized_pnl: float = 0.0
    unrealized_pnl_percent: float = 0.0
    stop_loss: float | None = None
    take_profit: float | None = None

    def revalue(self, price: float, at: datetime) -> None:
        self.current_price = price
        self.market_value = self.quantity * price
        cost = self.quantity * self.avg_price
        self.unrealized_pnl = self.market_value - cost
        self.unrealized_pnl_percent = self.unrealized_pnl / cost * 100 if cost else 0.0
        self.updated_at = at


@dataclass
class Portfolio:
    id: str
    owner_id: str
    name: str
    cash_balance: float
    initial_value: float
    created_at: datetime
    updated_at: datetime
    positions: dict[str, Position] = field(default_factory=dict)
    total_value: float = 0.0
    total_equity: float = 0.0
    margin_used: float = 0.0
    free_margin: float = 0.0
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    day_start_value: float = 0.0
    day_change: float = 0.0
    day_change_percent: float = 0.0
    total_return: float = 0.0
    total_return_percent: float = 0.0
    value_history: list[float] = field(default_factory=list)

    @property
    def position_list(self) -> list[Position]:
        return list(self.positions.values())


@dataclass(frozen=True)
class Trade:
    """Executed trade posted to the ledger. ``realized_pnl`` is set on sells."""

    id: str
    portfolio_id: str
    symbol: str
    side: Side
    quantity: float
    price: float
    timestamp: datetime
    commission: float = 0.0
    order_id: str | None = None
    realized_pnl: float | None = None

    @property
    def notional(self) -> float:
        return self.quantity * self.price
