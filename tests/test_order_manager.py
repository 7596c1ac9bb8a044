"""Order Lifecycle Manager: validation, execution, brackets, cancel/modify/expire, stats."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from conftest import T0
from execution.models import (
    ExecutionReport,
    ExecutionStatus,
    Order,
    OrderRequest,
    OrderStatus,
    OrderType,
    RiskLevel,
    Ticker,
    TimeInForce,
)
from execution.order_manager import OrderManager
from trading_core.contracts import Side, Trade
from trading_core.errors import NotFoundError, ValidationError


def _market(pid: str, symbol: str = "BTC/USD", side: Side = Side.BUY, qty: float = 5, **kw) -> OrderRequest:
    return OrderRequest(pid, symbol, side, OrderType.MARKET, qty, **kw)


def _limit(pid: str, price: float = 190.0, qty: float = 4, side: Side = Side.BUY, **kw) -> OrderRequest:
    return OrderRequest(pid, "AAPL", side, OrderType.LIMIT, qty, price=price, **kw)


class TestValidation:
    def test_market_buy_estimate(self, manager: OrderManager, portfolio_id: str) -> None:
        result = manager.validate_order(_market(portfolio_id))
        assert result.valid
        assert result.estimated_price == pytest.approx(100.1)
        assert result.estimated_cost == pytest.approx(500.5)
        assert result.estimated_commission == pytest.approx(0.5005)
        assert result.risk.level is RiskLevel.MEDIUM
        assert "Market order - price uncertainty" in result.risk.factors

    def test_sell_estimate_below_last(self, manager: OrderManager) -> None:
        assert manager.estimate_price("BTC/USD", Side.SELL) == pytest.approx(99.9)

    def test_unknown_portfolio(self, manager: OrderManager) -> None:
        result = manager.validate_order(_market("portfolio_missing"))
        assert not result.valid
        assert result.errors == ("Portfolio not found",)
        assert result.risk.level is RiskLevel.HIGH

    def test_missing_limit_price(self, manager: OrderManager, portfolio_id: str) -> None:
        request = OrderRequest(portfolio_id, "AAPL", Side.BUY, OrderType.LIMIT, 1)
        assert "Price is required for limit orders" in manager.validate_order(request).errors

    def test_insufficient_cash(self, manager: OrderManager, portfolio_id: str) -> None:
        result = manager.validate_order(_limit(portfolio_id, price=200, qty=200))
        assert not result.valid
        assert "Insufficient cash balance. Required: 40040.00, Available: 10000.00" in result.errors

    def test_sell_without_position(self, manager: OrderManager, portfolio_id: str) -> None:
        result = manager.validate_order(_limit(portfolio_id, qty=1, side=Side.SELL))
        assert "Insufficient position size. Requested: 1, Available: 0.0" in result.errors

    def test_risk_rejection_is_an_error(self, manager: OrderManager, portfolio_id: str) -> None:
        result = manager.validate_order(_limit(portfolio_id, price=200, qty=20))
        assert any("exceeds maximum" in e for e in result.errors)
        assert result.risk.level is RiskLevel.HIGH

    def test_closed_market_is_a_warning(self, manager: OrderManager, portfolio_id: str, clock) -> None:
        clock.advance(timedelta(days=3))  # Saturday
        result = manager.validate_order(_limit(portfolio_id, qty=1))
        assert result.valid
        assert result.warnings == ("Market is currently closed",)


class TestExecution:
    def test_market_buy_fills_and_posts(self, manager: OrderManager, ledger, portfolio_id: str) -> None:
        report = manager.execute_order(_market(portfolio_id))
        assert report.status is ExecutionStatus.SUCCESS
        assert report.message == "Order executed successfully"
        assert report.executed_quantity == 5
        assert report.avg_price == pytest.approx(100.1)

        order = manager.get_order(report.order_id)
        assert order.status is OrderStatus.FILLED
        assert order.exchange_order_id == "paper-000001"
        assert order.filled_at == T0

        portfolio = ledger.get_portfolio(portfolio_id)
        assert portfolio.cash_balance == pytest.approx(10_000 - 500.5 - 0.5005)
        assert portfolio.positions["BTC/USD"].quantity == 5
        assert portfolio.positions["BTC/USD"].avg_price == pytest.approx(100.1)
        assert manager.pending_orders() == []

    def test_invalid_request_creates_no_order(self, manager: OrderManager, portfolio_id: str) -> None:
        report = manager.execute_order(_market(portfolio_id, side=Side.SELL))
        assert report.status is ExecutionStatus.FAILED
        assert report.order_id is None
        assert report.message.startswith("Order validation failed")
        assert manager.orders(portfolio_id) == []

    def test_exchange_failure_rejects(self, ledger, risk_engine, store, clock, portfolio_id: str) -> None:
        adapter = MagicMock()
        adapter.fetch_ticker.return_value = Ticker("BTC/USD", 100.0)
        adapter.place_order.side_effect = ConnectionError("venue down")
        manager = OrderManager(ledger, risk_engine, adapter, store=store, clock=clock)
        try:
            report = manager.execute_order(_market(portfolio_id))
            assert report.status is ExecutionStatus.FAILED
            assert "venue down" in report.message
            order = manager.get_order(report.order_id)
            assert order.status is OrderStatus.REJECTED
            assert "venue down" in order.reject_reason
            assert ledger.get_portfolio(portfolio_id).cash_balance == 10_000
            assert manager.execution_stats(portfolio_id).rejected_orders == 1
        finally:
            manager.exchange.close()

    def test_limit_rests_then_fills_in_parts(self, manager: OrderManager, ledger, portfolio_id: str) -> None:
        report = manager.execute_order(_limit(portfolio_id))
        assert report.status is ExecutionStatus.SUCCESS
        assert report.message == "Order submitted"
        assert [o.id for o in manager.pending_orders(portfolio_id)] == [report.order_id]

        partial = manager.process_fill(report.order_id, 2, 190)
        assert partial.status is ExecutionStatus.PARTIAL
        assert ledger.get_portfolio(portfolio_id).positions == {}

        done = manager.process_fill(report.order_id, 2, 189)
        assert done.status is ExecutionStatus.SUCCESS
        assert done.avg_price == pytest.approx(189.5)
        portfolio = ledger.get_portfolio(portfolio_id)
        assert portfolio.positions["AAPL"].quantity == 4
        assert portfolio.cash_balance == pytest.approx(10_000 - 758 - 0.758)

    def test_overfill_rejected(self, manager: OrderManager, portfolio_id: str) -> None:
        report = manager.execute_order(_limit(portfolio_id))
        with pytest.raises(ValidationError):
            manager.process_fill(report.order_id, 5, 190)

    def test_events(self, manager: OrderManager, portfolio_id: str) -> None:
        versions: list[Order] = []
        reports: list[ExecutionReport] = []
        manager.subscribe_to_orders(versions.append)
        manager.subscribe_to_executions(reports.append)
        manager.execute_order(_market(portfolio_id))
        assert [o.status for o in versions] == [OrderStatus.PENDING, OrderStatus.SUBMITTED, OrderStatus.FILLED]
        assert [r.status for r in reports] == [ExecutionStatus.SUCCESS]


class TestOpenOrderCommitments:
    def test_sell_counts_resting_sells(self, manager: OrderManager, ledger, portfolio_id: str) -> None:
        manager.execute_order(_market(portfolio_id))
        resting = manager.execute_order(
            OrderRequest(portfolio_id, "BTC/USD", Side.SELL, OrderType.LIMIT, 4, price=105.0)
        ).order_id
        manager.process_fill(resting, 2, 105.0)

        report = manager.execute_order(_market(portfolio_id, side=Side.SELL))
        assert report.status is ExecutionStatus.FAILED
        assert "Insufficient position size. Requested: 5, Available: 1.0" in report.message

        assert manager.cancel_order(resting)
        assert manager.get_order(resting).status is OrderStatus.CANCELED
        assert ledger.get_portfolio(portfolio_id).positions["BTC/USD"].quantity == 3

    def test_cancel_rejected_by_ledger_leaves_order_resting(
        self, manager: OrderManager, exchange, ledger, portfolio_id: str
    ) -> None:
        manager.execute_order(_market(portfolio_id))
        resting = manager.execute_order(
            OrderRequest(portfolio_id, "BTC/USD", Side.SELL, OrderType.LIMIT, 4, price=105.0)
        ).order_id
        manager.process_fill(resting, 2, 105.0)
        ledger.apply_trades(
            portfolio_id, [Trade("trade_manual", portfolio_id, "BTC/USD", Side.SELL, 4, 101.0, T0)]
        )

        assert not manager.cancel_order(resting)
        order = manager.get_order(resting)
        assert order.status is OrderStatus.PARTIALLY_FILLED
        venue = {o.id: o.status for o in exchange.fetch_orders("BTC/USD")}
        assert venue[order.exchange_order_id] == "open"
        assert ledger.get_portfolio(portfolio_id).positions["BTC/USD"].quantity == 1

    def test_resting_buys_count_toward_position_size(self, manager: OrderManager, portfolio_id: str) -> None:
        assert manager.execute_order(_limit(portfolio_id)).status is ExecutionStatus.SUCCESS
        result = manager.validate_order(_limit(portfolio_id))
        assert not result.valid
        assert any(e.startswith("Position size 15.2") for e in result.errors)

    def test_resting_buys_reserve_cash(self, manager: OrderManager, portfolio_id: str) -> None:
        manager.execute_order(_limit(portfolio_id))
        request = OrderRequest(portfolio_id, "BTC/USD", Side.BUY, OrderType.LIMIT, 100, price=100.0)
        result = manager.validate_order(request)
        assert "Insufficient cash balance. Required: 10010.00, Available: 9239.24" in result.errors

    def test_canceled_buy_releases_cash(self, manager: OrderManager, portfolio_id: str) -> None:
        resting = manager.execute_order(_limit(portfolio_id)).order_id
        manager.cancel_order(resting)
        assert manager.validate_order(_limit(portfolio_id)).valid


class TestBracket:
    def test_children_and_one_cancels_other(self, manager: OrderManager, ledger, portfolio_id: str) -> None:
        report = manager.execute_order(_market(portfolio_id, stop_loss=95.0, take_profit=110.0))
        parent = manager.get_order(report.order_id)
        assert len(parent.child_ids) == 2
        stop, target = (manager.get_order(i) for i in parent.child_ids)
        assert (stop.type, stop.side, stop.stop_price) == (OrderType.STOP, Side.SELL, 95.0)
        assert (target.type, target.side, target.price) == (OrderType.LIMIT, Side.SELL, 110.0)
        assert stop.parent_id == target.parent_id == parent.id
        assert stop.quantity == target.quantity == 5
        assert stop.status is target.status is OrderStatus.SUBMITTED

        manager.process_fill(target.id, 5, 110.0)
        assert manager.get_order(stop.id).status is OrderStatus.CANCELED
        portfolio = ledger.get_portfolio(portfolio_id)
        assert "BTC/USD" not in portfolio.positions
        assert portfolio.realized_pnl == pytest.approx(5 * (110 - 100.1))


class TestCancelModify:
    def test_cancel_partial_books_filled_part(self, manager: OrderManager, exchange, ledger, portfolio_id: str) -> None:
        report = manager.execute_order(_limit(portfolio_id))
        manager.process_fill(report.order_id, 1, 190)
        assert manager.cancel_order(report.order_id)

        order = manager.get_order(report.order_id)
        assert order.status is OrderStatus.CANCELED
        assert order.filled_quantity == 1
        assert ledger.get_portfolio(portfolio_id).positions["AAPL"].quantity == 1
        assert [o.status for o in exchange.fetch_orders("AAPL")] == ["canceled"]
        assert manager.pending_orders() == []

    def test_cancel_terminal_is_false(self, manager: OrderManager, portfolio_id: str) -> None:
        report = manager.execute_order(_market(portfolio_id))
        assert not manager.cancel_order(report.order_id)
        with pytest.raises(NotFoundError):
            manager.cancel_order("order_missing")

    def test_bulk_cancel(self, manager: OrderManager, portfolio_id: str) -> None:
        resting = manager.execute_order(_limit(portfolio_id)).order_id
        ok, failed = manager.cancel_orders([resting, "order_missing"])
        assert ok == [resting]
        assert failed == ["order_missing"]

    def test_modify_keeps_identity(self, manager: OrderManager, exchange, portfolio_id: str) -> None:
        report = manager.execute_order(_limit(portfolio_id))
        assert manager.modify_order(report.order_id, price=185.0, quantity=5)
        order = manager.get_order(report.order_id)
        assert order.price == 185.0
        assert order.quantity == 5
        assert order.remaining_quantity == 5
        assert order.exchange_order_id == "paper-000002"
        statuses = {o.id: o.status for o in exchange.fetch_orders("AAPL")}
        assert statuses == {"paper-000001": "canceled", "paper-000002": "open"}

    def test_modify_only_submitted(self, manager: OrderManager, portfolio_id: str) -> None:
        filled = manager.execute_order(_market(portfolio_id)).order_id
        assert not manager.modify_order(filled, price=1.0)
        with pytest.raises(ValidationError):
            manager.modify_order(filled, quantity=0)


class TestExpiry:
    def test_time_in_force_rules(self, manager: OrderManager, portfolio_id: str, clock) -> None:
        gtc = manager.execute_order(_limit(portfolio_id, qty=1)).order_id
        day = manager.execute_order(_limit(portfolio_id, qty=1, time_in_force=TimeInForce.DAY)).order_id
        ioc = manager.execute_order(_limit(portfolio_id, qty=1, time_in_force=TimeInForce.IOC)).order_id

        clock.advance(timedelta(hours=12))  # past midnight UTC
        assert [o.id for o in manager.expire_stale_orders()] == [day]

        clock.advance(timedelta(hours=13))
        assert [o.id for o in manager.expire_stale_orders()] == [ioc]
        assert manager.get_order(ioc).status is OrderStatus.EXPIRED
        assert [o.id for o in manager.pending_orders()] == [gtc]


class TestQueries:
    def test_history_and_stats(self, manager: OrderManager, portfolio_id: str, clock) -> None:
        filled = manager.execute_order(_market(portfolio_id)).order_id
        clock.advance(timedelta(minutes=5))
        canceled = manager.execute_order(_limit(portfolio_id)).order_id
        manager.cancel_order(canceled)

        assert [o.id for o in manager.orders(portfolio_id)] == [canceled, filled]
        assert [o.id for o in manager.orders(portfolio_id, status=OrderStatus.FILLED)] == [filled]
        assert manager.orders(portfolio_id, symbol="ETH/USD") == []
        assert len(manager.orders(portfolio_id, limit=1)) == 1

        stats = manager.execution_stats(portfolio_id)
        assert stats.total_orders == 2
        assert stats.filled_orders == 1
        assert stats.canceled_orders == 1
        assert stats.fill_rate == 50.0
        assert stats.total_volume == pytest.approx(500.5)
        assert stats.avg_execution_seconds == 0.0

    def test_open_orders_restored_from_store(self, manager: OrderManager, ledger, risk_engine, exchange, store, clock, portfolio_id: str) -> None:
        resting = manager.execute_order(_limit(portfolio_id)).order_id
        manager.execute_order(_market(portfolio_id))
        restarted = OrderManager(ledger, risk_engine, exchange, store=store, clock=clock)
        try:
            assert [o.id for o in restarted.pending_orders()] == [resting]
        finally:
            restarted.exchange.close()
