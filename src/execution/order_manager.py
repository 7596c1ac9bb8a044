"""
Order Lifecycle Manager.

validate -> create (pending) -> submit to exchange (submitted) -> fills
(partially_filled / filled) -> net trade posted to the ledger -> derived
stop-loss / take-profit child orders.

Market orders are filled in full at the estimated price right after
submission; limit and stop orders rest until process_fill is called for
them (by an adapter callback or the CLI).

Order values are immutable; every change goes through execution.lifecycle
and the new version replaces the old one in the book.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Iterable

from trading_core.contracts import Account, Side, Trade, utc_now
from trading_core.errors import AdapterError, NotFoundError, ValidationError
from trading_core.events import EventChannel, Unsubscribe
from trading_core.risk_engine import RiskEngine, RiskOrder

from execution import lifecycle
from execution.costs import CommissionModel, MarketHours
from execution.exchange import AdapterGateway, ExchangeAdapter
from execution.ledger import PortfolioLedger
from execution.models import (
    ExecutionReport,
    ExecutionStats,
    ExecutionStatus,
    Fill,
    Order,
    OrderRequest,
    OrderStatus,
    OrderType,
    OrderValidation,
    RiskAssessment,
    RiskLevel,
    TimeInForce,
)
from execution.store import StateStore

logger = logging.getLogger("tradedesk.orders")

LARGE_POSITION_PCT = 10.0
MEDIUM_POSITION_PCT = 5.0


class OrderManager:
    """Validates, submits, fills and cancels orders; posts filled trades to the ledger."""

    def __init__(
        self,
        ledger: PortfolioLedger,
        risk_engine: RiskEngine,
        exchange: ExchangeAdapter | AdapterGateway,
        *,
        store: StateStore | None = None,
        commission: CommissionModel | None = None,
        market_hours: MarketHours | None = None,
        default_exchange: str = "default",
        market_spread: float = 0.001,
        default_time_in_force: TimeInForce = TimeInForce.GTC,
        stale_order_age: timedelta = timedelta(days=1),
        exchange_timeout: float = 10.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.ledger = ledger
        self.risk_engine = risk_engine
        self.exchange = exchange if isinstance(exchange, AdapterGateway) else AdapterGateway(exchange, timeout=exchange_timeout)
        self._store = store
        self.commission = commission or CommissionModel()
        self.market_hours = market_hours or MarketHours()
        self.default_exchange = default_exchange
        self.market_spread = market_spread
        self.default_time_in_force = default_time_in_force
        self.stale_order_age = stale_order_age
        self._clock = clock
        self._orders: dict[str, Order] = {}
        self._open: dict[str, None] = {}  # ordered set of non-terminal order ids
        self._lock = threading.RLock()
        self.order_updates: EventChannel[Order] = EventChannel("orders")
        self.executions: EventChannel[ExecutionReport] = EventChannel("executions")
        self._restore_open_orders()

    # -- book keeping --------------------------------------------------------

    def _restore_open_orders(self) -> None:
        if self._store is None:
            return
        try:
            stored = self._store.load_orders()
        except AdapterError:
            logger.exception("Failed to restore open orders")
            return
        for order in reversed(stored):
            if lifecycle.is_open(order):
                self._orders[order.id] = order
                self._open[order.id] = None
        if self._open:
            logger.info("Restored %d open order(s)", len(self._open))

    def _track(self, order: Order) -> Order:
        with self._lock:
            self._orders[order.id] = order
            if lifecycle.is_open(order):
                self._open[order.id] = None
            else:
                self._open.pop(order.id, None)
        if self._store is not None:
            try:
                self._store.save_order(order)
            except AdapterError:
                logger.exception("Failed to save order %s", order.id)
        self.order_updates.publish(order)
        return order

    def get_order(self, order_id: str) -> Order:
        """Current version of an order. Unknown id -> NotFoundError."""
        with self._lock:
            order = self._orders.get(order_id)
        if order is None and self._store is not None:
            try:
                order = self._store.load_order(order_id)
            except AdapterError:
                logger.exception("Failed to load order %s", order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    # -- pricing -------------------------------------------------------------

    def estimate_price(self, symbol: str, side: Side) -> float:
        """Last traded price from the exchange, widened by the spread against the taker."""
        ticker = self.exchange.fetch_ticker(symbol)
        if side is Side.BUY:
            return ticker.last * (1 + self.market_spread)
        return ticker.last * (1 - self.market_spread)

    # -- validation ----------------------------------------------------------

    def validate_order(self, request: OrderRequest) -> OrderValidation:
        """Check a request without creating anything.

        Field checks, portfolio existence, cost and commission estimate,
        cash (buys) or position (sells) sufficiency, then the Risk Engine.
        A closed market is a warning, not an error.
        """
        errors: list[str] = []
        warnings: list[str] = []

        if not request.symbol:
            errors.append("Symbol is required")
        if request.quantity <= 0:
            errors.append("Quantity must be positive")
        if request.type.requires_price and (request.price is None or request.price <= 0):
            errors.append(f"Price is required for {request.type.value} orders")
        if request.type.requires_stop_price and (request.stop_price is None or request.stop_price <= 0):
            errors.append(f"Stop price is required for {request.type.value} orders")

        try:
            portfolio = self.ledger.get_portfolio(request.portfolio_id)
        except NotFoundError:
            errors.append("Portfolio not found")
            return OrderValidation(
                valid=False,
                errors=tuple(errors),
                risk=RiskAssessment(level=RiskLevel.HIGH, factors=("Portfolio not found",)),
            )
        if errors:
            return OrderValidation(valid=False, errors=tuple(errors))

        exchange = request.exchange or self.default_exchange
        if request.price:
            price = request.price
        else:
            try:
                price = self.estimate_price(request.symbol, request.side)
            except AdapterError as e:
                return OrderValidation(valid=False, errors=(f"Unable to price {request.symbol}: {e}",))

        cost = request.quantity * price
        commission = self.commission.commission(exchange, cost)

        committed: dict[str, float] = {}
        if request.side is Side.BUY:
            committed = self._committed_buy_value(request.portfolio_id)
            required = cost + commission
            cash_available = portfolio.cash_balance - sum(committed.values())
            if required > cash_available:
                errors.append(
                    f"Insufficient cash balance. Required: {required:.2f}, "
                    f"Available: {cash_available:.2f}"
                )
        else:
            position = portfolio.positions.get(request.symbol)
            held = position.quantity if position else 0.0
            available = max(
                0.0, held - self._committed_sell_quantity(request.portfolio_id, request.symbol, request.parent_id)
            )
            if request.quantity > available + lifecycle.QTY_EPSILON:
                errors.append(
                    f"Insufficient position size. Requested: {request.quantity}, Available: {available}"
                )

        check = self.risk_engine.validate_order(
            RiskOrder(
                symbol=request.symbol,
                side=request.side,
                quantity=request.quantity,
                price=price,
                stop_loss=request.stop_loss,
                take_profit=request.take_profit,
                committed=committed.get(request.symbol, 0.0),
                committed_total=sum(committed.values()),
            ),
            portfolio,
            Account.from_portfolio(portfolio),
        )
        if not check.valid:
            errors.append(check.reason or "Rejected by risk limits")

        size_pct = cost / portfolio.total_value * 100 if portfolio.total_value > 0 else 0.0
        level = RiskLevel.LOW
        factors: list[str] = []
        if size_pct > LARGE_POSITION_PCT:
            level = RiskLevel.HIGH
            factors.append("Large position size")
        elif size_pct > MEDIUM_POSITION_PCT:
            level = RiskLevel.MEDIUM
            factors.append("Medium position size")
        if request.type is OrderType.MARKET:
            factors.append("Market order - price uncertainty")
            if level is RiskLevel.LOW:
                level = RiskLevel.MEDIUM

        if not self.market_hours.is_open(request.symbol, self._clock()):
            warnings.append("Market is currently closed")

        return OrderValidation(
            valid=not errors,
            errors=tuple(errors),
            warnings=tuple(warnings),
            estimated_price=price,
            estimated_cost=cost,
            estimated_commission=commission,
            risk=RiskAssessment(level=level, factors=tuple(factors), position_size_percent=size_pct),
        )

    def _committed_buy_value(self, portfolio_id: str) -> dict[str, float]:
        """Cash promised to open buy orders, per symbol, commission included.

        Fills reach the ledger only when an order completes, so the whole
        order quantity stays committed until then.
        """
        committed: dict[str, float] = {}
        for order in self.pending_orders(portfolio_id):
            if order.side is not Side.BUY:
                continue
            value = order.quantity * (order.price or order.stop_price or 0.0)
            committed[order.symbol] = (
                committed.get(order.symbol, 0.0) + value + self.commission.commission(order.exchange, value)
            )
        return committed

    def _committed_sell_quantity(self, portfolio_id: str, symbol: str, bracket: str | None = None) -> float:
        """Quantity of *symbol* promised to open sell orders.

        The exit orders of one bracket cancel each other and count once;
        orders of the *bracket* parent are left out.
        """
        groups: dict[str, float] = {}
        for order in self.pending_orders(portfolio_id):
            if order.side is not Side.SELL or order.symbol != symbol:
                continue
            key = order.parent_id or order.id
            if key != bracket:
                groups[key] = max(groups.get(key, 0.0), order.quantity)
        return sum(groups.values())

    # -- execution -----------------------------------------------------------

    def _report(
        self,
        order: Order | None,
        request: OrderRequest,
        status: ExecutionStatus,
        message: str,
    ) -> ExecutionReport:
        report = ExecutionReport(
            order_id=order.id if order else None,
            symbol=request.symbol,
            side=request.side,
            status=status,
            message=message,
            timestamp=self._clock(),
            executed_quantity=order.filled_quantity if order else 0.0,
            avg_price=order.avg_fill_price if order else 0.0,
            total_value=order.total_fill_value if order else 0.0,
            commission=order.commission if order else 0.0,
            fills=order.fills if order else (),
        )
        self.executions.publish(report)
        return report

    def execute_order(self, request: OrderRequest) -> ExecutionReport:
        """Validate, create, submit and (for market orders) fill an order.

        A request that fails validation yields a failed report and no order.
        An exchange failure rejects the order and yields a failed report.
        """
        validation = self.validate_order(request)
        if not validation.valid:
            logger.info("Order validation failed for %s: %s", request.symbol, "; ".join(validation.errors))
            return self._report(
                None, request, ExecutionStatus.FAILED,
                f"Order validation failed: {', '.join(validation.errors)}",
            )

        order = lifecycle.new_order(
            request,
            exchange=request.exchange or self.default_exchange,
            time_in_force=request.time_in_force or self.default_time_in_force,
            at=self._clock(),
        )
        self._track(order)

        try:
            ack = self.exchange.place_order(
                order.symbol, order.type, order.side, order.quantity, order.price
            )
        except AdapterError as e:
            order = self._track(lifecycle.reject(order, str(e), self._clock()))
            logger.warning("Order %s rejected by exchange: %s", order.id, e)
            return self._report(order, request, ExecutionStatus.FAILED, f"Order execution failed: {e}")

        order = self._track(lifecycle.submit(order, ack.id, self._clock()))
        logger.info(
            "Order submitted: %s %s %s %s x %.6g (exchange id %s)",
            order.id, order.type.value, order.side.value, order.symbol, order.quantity, ack.id,
        )

        if order.type is OrderType.MARKET:
            order = self._fill(order.id, order.quantity, validation.estimated_price)

        if order.status is OrderStatus.FILLED:
            return self._report(order, request, ExecutionStatus.SUCCESS, "Order executed successfully")
        if order.status is OrderStatus.PARTIALLY_FILLED:
            return self._report(order, request, ExecutionStatus.PARTIAL, "Order partially executed")
        return self._report(order, request, ExecutionStatus.SUCCESS, "Order submitted")

    def _net_trade(self, order: Order) -> Trade:
        return Trade(
            id=f"trade_{uuid.uuid4().hex[:12]}",
            portfolio_id=order.portfolio_id,
            symbol=order.symbol,
            side=order.side,
            quantity=order.filled_quantity,
            price=order.avg_fill_price,
            timestamp=self._clock(),
            commission=order.commission,
            order_id=order.id,
        )

    def _fill(self, order_id: str, quantity: float, price: float) -> Order:
        order = self.get_order(order_id)
        if quantity <= 0 or price <= 0:
            raise ValidationError("Fill quantity and price must be positive")
        if quantity > order.remaining_quantity + lifecycle.QTY_EPSILON:
            raise ValidationError(
                f"Fill quantity {quantity} exceeds remaining {order.remaining_quantity} on order {order_id}"
            )

        with self.ledger.lock(order.portfolio_id):
            order = self.get_order(order_id)
            fill = Fill(
                id=f"fill_{uuid.uuid4().hex[:12]}",
                order_id=order.id,
                quantity=quantity,
                price=price,
                commission=self.commission.commission(order.exchange, quantity * price),
                timestamp=self._clock(),
            )
            updated = lifecycle.apply_fill(order, fill)
            if updated.status is OrderStatus.FILLED:
                # ledger first: a rejected trade leaves the order untouched
                self.ledger.apply_trades(order.portfolio_id, [self._net_trade(updated)])
            order = self._track(updated)

        logger.info(
            "Fill on %s: %.6g @ %.4f (%s, %.6g remaining)",
            order.id, quantity, price, order.status.value, order.remaining_quantity,
        )
        if order.status is OrderStatus.FILLED:
            if order.parent_id:
                self._cancel_siblings(order)
            order = self._place_children(order)
        return order

    def process_fill(self, order_id: str, quantity: float, price: float) -> ExecutionReport:
        """Book a (partial) fill reported by the exchange and publish a report."""
        order = self._fill(order_id, quantity, price)
        request = OrderRequest(
            portfolio_id=order.portfolio_id,
            symbol=order.symbol,
            side=order.side,
            type=order.type,
            quantity=order.quantity,
        )
        if order.status is OrderStatus.FILLED:
            return self._report(order, request, ExecutionStatus.SUCCESS, "Order executed successfully")
        return self._report(order, request, ExecutionStatus.PARTIAL, "Order partially executed")

    def _place_children(self, parent: Order) -> Order:
        """Submit stop-loss / take-profit orders for a filled parent. Failures are logged only."""
        requests: list[OrderRequest] = []
        common = dict(
            portfolio_id=parent.portfolio_id,
            symbol=parent.symbol,
            side=parent.side.opposite,
            quantity=parent.filled_quantity,
            time_in_force=TimeInForce.GTC,
            exchange=parent.exchange,
            parent_id=parent.id,
        )
        if parent.stop_loss is not None:
            requests.append(
                OrderRequest(type=OrderType.STOP, stop_price=parent.stop_loss, notes=f"Stop loss for {parent.id}", **common)
            )
        if parent.take_profit is not None:
            requests.append(
                OrderRequest(type=OrderType.LIMIT, price=parent.take_profit, notes=f"Take profit for {parent.id}", **common)
            )
        if not requests:
            return parent

        child_ids: list[str] = []
        for request in requests:
            try:
                report = self.execute_order(request)
            except Exception:
                logger.exception("Child order for %s failed", parent.id)
                continue
            if report.status is ExecutionStatus.FAILED:
                logger.warning("Child order for %s not placed: %s", parent.id, report.message)
            if report.order_id:
                child_ids.append(report.order_id)
        return self._track(lifecycle.link_children(self.get_order(parent.id), tuple(child_ids), self._clock()))

    def _cancel_siblings(self, child: Order) -> None:
        """One child of a bracket filled: the other exit order is no longer valid."""
        try:
            parent = self.get_order(child.parent_id)
        except NotFoundError:
            return
        for sibling_id in parent.child_ids:
            if sibling_id == child.id:
                continue
            try:
                self.cancel_order(sibling_id)
            except NotFoundError:
                logger.warning("Sibling order %s of %s not found", sibling_id, child.id)

    # -- cancel / modify / expire -------------------------------------------

    def _close_out(self, order: Order, transition: Callable[[Order, datetime], Order]) -> Order:
        """Cancel on the exchange if resting, book any filled part, then apply *transition*.

        The filled part is checked against the ledger before the exchange
        cancel, so a rejected trade leaves the order resting everywhere.
        """
        trade = self._net_trade(order) if order.status is OrderStatus.PARTIALLY_FILLED else None
        if trade is not None:
            self.ledger.check_trades(order.portfolio_id, [trade])
        if order.exchange_order_id and order.status in (OrderStatus.SUBMITTED, OrderStatus.PARTIALLY_FILLED):
            self.exchange.cancel_order(order.exchange_order_id)
        if trade is not None:
            self.ledger.apply_trades(order.portfolio_id, [trade])
        return self._track(transition(order, self._clock()))

    def cancel_order(self, order_id: str) -> bool:
        """Cancel an order. False when it is already terminal or the exchange refuses."""
        order = self.get_order(order_id)
        if order.is_terminal:
            return False
        with self.ledger.lock(order.portfolio_id):
            order = self.get_order(order_id)
            if order.is_terminal:
                return False
            try:
                self._close_out(order, lifecycle.cancel)
            except (AdapterError, ValidationError) as e:
                logger.warning("Failed to cancel order %s: %s", order_id, e)
                return False
        logger.info("Order canceled: %s", order_id)
        return True

    def cancel_orders(self, order_ids: Iterable[str]) -> tuple[list[str], list[str]]:
        """Bulk cancel. Returns (successful, failed) ids; unknown ids count as failed."""
        successful: list[str] = []
        failed: list[str] = []
        for order_id in order_ids:
            try:
                ok = self.cancel_order(order_id)
            except NotFoundError:
                ok = False
            (successful if ok else failed).append(order_id)
        return successful, failed

    def modify_order(
        self,
        order_id: str,
        *,
        price: float | None = None,
        quantity: float | None = None,
        stop_price: float | None = None,
    ) -> bool:
        """Cancel and resubmit a resting order with new parameters, keeping its id.

        Only legal while the order is submitted; returns False otherwise or
        when the exchange fails.
        """
        if quantity is not None and quantity <= 0:
            raise ValidationError("Quantity must be positive")
        if (price is not None and price <= 0) or (stop_price is not None and stop_price <= 0):
            raise ValidationError("Prices must be positive")

        order = self.get_order(order_id)
        if order.status is not OrderStatus.SUBMITTED:
            return False
        with self.ledger.lock(order.portfolio_id):
            order = self.get_order(order_id)
            if order.status is not OrderStatus.SUBMITTED:
                return False
            try:
                if order.exchange_order_id:
                    self.exchange.cancel_order(order.exchange_order_id)
                new_quantity = quantity if quantity is not None else order.quantity
                ack = self.exchange.place_order(
                    order.symbol,
                    order.type,
                    order.side,
                    new_quantity - order.filled_quantity,
                    price if price is not None else order.price,
                )
            except AdapterError as e:
                logger.warning("Failed to modify order %s: %s", order_id, e)
                return False
            self._track(
                lifecycle.amend(
                    order,
                    exchange_order_id=ack.id,
                    price=price,
                    quantity=quantity,
                    stop_price=stop_price,
                    at=self._clock(),
                )
            )
        logger.info("Order modified: %s", order_id)
        return True

    def _is_stale(self, order: Order, now: datetime, max_age: timedelta) -> bool:
        if order.time_in_force is TimeInForce.GTC:
            return False
        if order.time_in_force is TimeInForce.DAY and order.created_at.date() < now.date():
            return True
        return now - order.created_at > max_age

    def expire_stale_orders(self, max_age: timedelta | None = None) -> list[Order]:
        """Expire open non-GTC orders older than *max_age* (DAY orders also at the date change)."""
        max_age = max_age or self.stale_order_age
        now = self._clock()
        expired: list[Order] = []
        for order in self.pending_orders():
            if not self._is_stale(order, now, max_age):
                continue
            with self.ledger.lock(order.portfolio_id):
                current = self.get_order(order.id)
                if current.is_terminal:
                    continue
                try:
                    expired.append(self._close_out(current, lifecycle.expire))
                except (AdapterError, ValidationError) as e:
                    logger.warning("Failed to expire order %s: %s", order.id, e)
        if expired:
            logger.info("Expired %d stale order(s)", len(expired))
        return expired

    # -- queries -------------------------------------------------------------

    def pending_orders(self, portfolio_id: str | None = None) -> list[Order]:
        with self._lock:
            orders = [self._orders[i] for i in self._open]
        return [o for o in orders if portfolio_id is None or o.portfolio_id == portfolio_id]

    def orders(
        self,
        portfolio_id: str,
        *,
        status: OrderStatus | None = None,
        symbol: str | None = None,
        side: Side | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
    ) -> list[Order]:
        """Order history for a portfolio, newest first."""
        by_id: dict[str, Order] = {}
        if self._store is not None:
            try:
                by_id = {o.id: o for o in self._store.load_orders(portfolio_id)}
            except AdapterError:
                logger.exception("Failed to load orders for %s", portfolio_id)
        with self._lock:
            for order in self._orders.values():
                if order.portfolio_id == portfolio_id:
                    by_id[order.id] = order

        selected = [
            o
            for o in by_id.values()
            if (status is None or o.status is status)
            and (symbol is None or o.symbol == symbol)
            and (side is None or o.side is side)
            and (since is None or o.created_at >= since)
            and (until is None or o.created_at <= until)
        ]
        selected.sort(key=lambda o: o.created_at, reverse=True)
        return selected[:limit] if limit > 0 else selected

    def execution_stats(self, portfolio_id: str, since: datetime | None = None) -> ExecutionStats:
        orders = self.orders(portfolio_id, since=since, limit=0)
        executed = [o for o in orders if o.status in (OrderStatus.FILLED, OrderStatus.PARTIALLY_FILLED)]
        canceled = [o for o in orders if o.status is OrderStatus.CANCELED]
        rejected = [o for o in orders if o.status is OrderStatus.REJECTED]
        durations = [(o.filled_at - o.created_at).total_seconds() for o in executed if o.filled_at]
        volumes = [o.total_fill_value for o in executed]
        return ExecutionStats(
            total_orders=len(orders),
            filled_orders=len(executed),
            canceled_orders=len(canceled),
            rejected_orders=len(rejected),
            fill_rate=len(executed) / len(orders) * 100 if orders else 0.0,
            avg_execution_seconds=sum(durations) / len(durations) if durations else 0.0,
            total_volume=sum(volumes),
            total_commissions=sum(o.commission for o in executed),
            best_execution=max(volumes) if volumes else 0.0,
            worst_execution=min(volumes) if volumes else 0.0,
        )

    # -- subscriptions -------------------------------------------------------

    def subscribe_to_orders(self, callback: Callable[[Order], None]) -> Unsubscribe:
        return self.order_updates.subscribe(callback)

    def subscribe_to_executions(self, callback: Callable[[ExecutionReport], None]) -> Unsubscribe:
        return self.executions.subscribe(callback)
