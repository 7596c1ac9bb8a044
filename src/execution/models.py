"""Order, Fill, OrderRequest, validation and execution reports for the order lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from trading_core.contracts import AlertLevel, Side

RiskLevel = AlertLevel


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"

    @property
    def requires_price(self) -> bool:
        return self in (OrderType.LIMIT, OrderType.STOP_LIMIT)

    @property
    def requires_stop_price(self) -> bool:
        return self in (OrderType.STOP, OrderType.STOP_LIMIT)


class OrderStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELED = "canceled"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.REJECTED, OrderStatus.EXPIRED}
)


class TimeInForce(str, Enum):
    GTC = "GTC"
    IOC = "IOC"
    FOK = "FOK"
    DAY = "DAY"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(frozen=True)
class Fill:
    id: str
    order_id: str
    quantity: float
    price: float
    commission: float
    timestamp: datetime

    @property
    def value(self) -> float:
        return self.quantity * self.price


@dataclass(frozen=True)
class Order:
    """
    One version of an order. Never mutated; execution.lifecycle returns a new
    value with ``version`` bumped on every transition.

    Invariant: filled_quantity + remaining_quantity == quantity, and
    avg_fill_price == total_fill_value / filled_quantity once anything filled.
    """

    id: str
    portfolio_id: str
    symbol: str
    side: Side
    type: OrderType
    quantity: float
    created_at: datetime
    updated_at: datetime
    price: float | None = None
    stop_price: float | None = None
    time_in_force: TimeInForce = TimeInForce.GTC
    status: OrderStatus = OrderStatus.PENDING
    filled_quantity: float = 0.0
    remaining_quantity: float = 0.0
    avg_fill_price: float = 0.0
    total_fill_value: float = 0.0
    commission: float = 0.0
    fills: tuple[Fill, ...] = ()
    stop_loss: float | None = None
    take_profit: float | None = None
    parent_id: str | None = None
    child_ids: tuple[str, ...] = ()
    exchange: str = "default"
    exchange_order_id: str | None = None
    notes: str | None = None
    reject_reason: str | None = None
    filled_at: datetime | None = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(frozen=True)
class OrderRequest:
    """What a caller asks for. ``exchange=None`` means the configured default."""

    portfolio_id: str
    symbol: str
    side: Side
    type: OrderType
    quantity: float
    price: float | None = None
    stop_price: float | None = None
    time_in_force: TimeInForce | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    exchange: str | None = None
    notes: str | None = None
    parent_id: str | None = None


@dataclass(frozen=True)
class RiskAssessment:
    level: RiskLevel
    factors: tuple[str, ...] = ()
    position_size_percent: float = 0.0


@dataclass(frozen=True)
class OrderValidation:
    valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    estimated_price: float = 0.0
    estimated_cost: float = 0.0
    estimated_commission: float = 0.0
    risk: RiskAssessment = field(default_factory=lambda: RiskAssessment(level=RiskLevel.LOW))


@dataclass(frozen=True)
class ExecutionReport:
    order_id: str | None
    symbol: str
    side: Side
    status: ExecutionStatus
    message: str
    timestamp: datetime
    executed_quantity: float = 0.0
    avg_price: float = 0.0
    total_value: float = 0.0
    commission: float = 0.0
    fills: tuple[Fill, ...] = ()


@dataclass(frozen=True)
class ExchangeOrder:
    """Acknowledgement returned by an exchange adapter."""

    id: str
    symbol: str
    side: Side
    type: OrderType
    amount: float
    price: float | None
    status: str
    timestamp: datetime


@dataclass(frozen=True)
class Ticker:
    symbol: str
    last: float
    bid: float | None = None
    ask: float | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True)
class ExecutionStats:
    total_orders: int
    filled_orders: int
    canceled_orders: int
    rejected_orders: int
    fill_rate: float
    avg_execution_seconds: float
    total_volume: float
    total_commissions: float
    best_execution: float
    worst_execution: float
