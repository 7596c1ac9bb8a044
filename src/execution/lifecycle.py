"""
Order state machine.

    pending -> submitted -> partially_filled <-> (more fills) -> filled
    pending | submitted | partially_filled -> canceled | expired
    pending | submitted | partially_filled -> rejected

Every function takes an Order and returns the next version; the input is
never modified. An illegal move raises InvariantViolation.
"""

from __future__ import annotations

import dataclasses
import uuid
from datetime import datetime

from trading_core.contracts import utc_now
from trading_core.errors import InvariantViolation

from execution.models import Fill, Order, OrderRequest, OrderStatus, TimeInForce

# Tolerance for float quantities when comparing fills against the remainder.
QTY_EPSILON = 1e-9

_OPEN = (OrderStatus.PENDING, OrderStatus.SUBMITTED, OrderStatus.PARTIALLY_FILLED)

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.SUBMITTED, OrderStatus.CANCELED, OrderStatus.REJECTED, OrderStatus.EXPIRED}
    ),
    OrderStatus.SUBMITTED: frozenset(
        {
            OrderStatus.SUBMITTED,
            OrderStatus.PARTIALLY_FILLED,
            OrderStatus.FILLED,
            OrderStatus.CANCELED,
            OrderStatus.REJECTED,
            OrderStatus.EXPIRED,
        }
    ),
    OrderStatus.PARTIALLY_FILLED: frozenset(
        {
            OrderStatus.PARTIALLY_FILLED,
            OrderStatus.FILLED,
            OrderStatus.CANCELED,
            OrderStatus.REJECTED,
            OrderStatus.EXPIRED,
        }
    ),
    OrderStatus.FILLED: frozenset(),
    OrderStatus.CANCELED: frozenset(),
    OrderStatus.REJECTED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def _advance(order: Order, status: OrderStatus, at: datetime | None, **changes) -> Order:
    if not can_transition(order.status, status):
        raise InvariantViolation(
            f"Illegal order transition {order.status.value} -> {status.value} for order {order.id}"
        )
    return dataclasses.replace(
        order,
        status=status,
        updated_at=at or utc_now(),
        version=order.version + 1,
        **changes,
    )


def new_order(
    request: OrderRequest,
    *,
    exchange: str,
    time_in_force: TimeInForce | None = None,
    order_id: str | None = None,
    at: datetime | None = None,
) -> Order:
    """Build the first (pending) version of an order from a request."""
    if request.quantity <= 0:
        raise InvariantViolation("Order quantity must be positive")
    ts = at or utc_now()
    return Order(
        id=order_id or f"order_{uuid.uuid4().hex[:12]}",
        portfolio_id=request.portfolio_id,
        symbol=request.symbol,
        side=request.side,
        type=request.type,
        quantity=request.quantity,
        created_at=ts,
        updated_at=ts,
        price=request.price,
        stop_price=request.stop_price,
        time_in_force=time_in_force or request.time_in_force or TimeInForce.GTC,
        remaining_quantity=request.quantity,
        stop_loss=request.stop_loss,
        take_profit=request.take_profit,
        parent_id=request.parent_id,
        exchange=exchange,
        notes=request.notes,
    )


def submit(order: Order, exchange_order_id: str | None, at: datetime | None = None) -> Order:
    if order.status is not OrderStatus.PENDING:
        raise InvariantViolation(f"Only pending orders can be submitted (order {order.id} is {order.status.value})")
    return _advance(order, OrderStatus.SUBMITTED, at, exchange_order_id=exchange_order_id)


def apply_fill(order: Order, fill: Fill) -> Order:
    """Book one fill. Moves to partially_filled, or filled when nothing remains."""
    if order.status not in (OrderStatus.SUBMITTED, OrderStatus.PARTIALLY_FILLED):
        raise InvariantViolation(f"Cannot fill order {order.id} in status {order.status.value}")
    if fill.order_id != order.id:
        raise InvariantViolation(f"Fill {fill.id} belongs to order {fill.order_id}, not {order.id}")
    if fill.quantity <= 0:
        raise InvariantViolation("Fill quantity must be positive")
    if fill.quantity > order.remaining_quantity + QTY_EPSILON:
        raise InvariantViolation(
            f"Fill quantity {fill.quantity} exceeds remaining {order.remaining_quantity} on order {order.id}"
        )

    filled = order.filled_quantity + fill.quantity
    remaining = max(0.0, order.quantity - filled)
    if remaining <= QTY_EPSILON:
        filled, remaining = order.quantity, 0.0
    total_value = order.total_fill_value + fill.value
    done = remaining == 0.0
    return _advance(
        order,
        OrderStatus.FILLED if done else OrderStatus.PARTIALLY_FILLED,
        fill.timestamp,
        filled_quantity=filled,
        remaining_quantity=remaining,
        total_fill_value=total_value,
        avg_fill_price=total_value / filled,
        commission=order.commission + fill.commission,
        fills=order.fills + (fill,),
        filled_at=fill.timestamp if done else order.filled_at,
    )


def cancel(order: Order, at: datetime | None = None) -> Order:
    return _advance(order, OrderStatus.CANCELED, at)


def reject(order: Order, reason: str, at: datetime | None = None) -> Order:
    return _advance(order, OrderStatus.REJECTED, at, reject_reason=reason)


def expire(order: Order, at: datetime | None = None) -> Order:
    return _advance(order, OrderStatus.EXPIRED, at)


def amend(
    order: Order,
    *,
    exchange_order_id: str | None,
    price: float | None = None,
    quantity: float | None = None,
    stop_price: float | None = None,
    at: datetime | None = None,
) -> Order:
    """Replace a resting order's parameters; identity is kept, status stays submitted."""
    if order.status is not OrderStatus.SUBMITTED:
        raise InvariantViolation(f"Only submitted orders can be modified (order {order.id} is {order.status.value})")
    changes: dict = {"exchange_order_id": exchange_order_id}
    if price is not None:
        changes["price"] = price
    if stop_price is not None:
        changes["stop_price"] = stop_price
    if quantity is not None:
        if quantity <= order.filled_quantity:
            raise InvariantViolation("Modified quantity must exceed the filled quantity")
        changes["quantity"] = quantity
        changes["remaining_quantity"] = quantity - order.filled_quantity
    return _advance(order, OrderStatus.SUBMITTED, at, **changes)


def link_children(order: Order, child_ids: tuple[str, ...], at: datetime | None = None) -> Order:
    """Record derived stop-loss / take-profit orders on the parent."""
    if not child_ids:
        return order
    return dataclasses.replace(
        order,
        child_ids=order.child_ids + tuple(child_ids),
        updated_at=at or utc_now(),
        version=order.version + 1,
    )


def is_open(order: Order) -> bool:
    return order.status in _OPEN
