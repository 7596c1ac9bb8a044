"""Tests for structured JSON event logger."""

import io
import json
from unittest.mock import patch

import pytest

from cli.structured_log import StructuredEventLogger
from conftest import T0
from execution.models import OrderRequest, OrderType
from trading_core.contracts import AlertLevel, AlertSeverity, RiskAlert, Side, Signal, SignalType


@pytest.fixture
def buf() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def logger(buf: io.StringIO) -> StructuredEventLogger:
    return StructuredEventLogger(enabled=True, stream=buf)


def _signal() -> Signal:
    return Signal("AAPL", SignalType.SELL, 61.234, 0.65, 120.0, T0, "rsi", "RSI overbought")


class TestEmit:
    """Basic event emission and format."""

    def test_signal(self, logger: StructuredEventLogger, buf: io.StringIO) -> None:
        logger.signal(_signal())
        record = json.loads(buf.getvalue().strip())
        assert record["event"] == "signal"
        assert record["symbol"] == "AAPL"
        assert record["type"] == "sell"
        assert record["strategy"] == "rsi"
        assert record["strength"] == 61.23
        assert record["reason"] == "RSI overbought"
        assert "ts" in record

    def test_risk_alert(self, logger: StructuredEventLogger, buf: io.StringIO) -> None:
        alert = RiskAlert("position_1", AlertSeverity.CRITICAL, AlertLevel.HIGH, "Large position", T0, "AAPL", 50.0, 10.0)
        logger.risk_alert(alert)
        record = json.loads(buf.getvalue().strip())
        assert record["event"] == "risk_alert"
        assert record["severity"] == "critical"
        assert record["level"] == "high"
        assert record["value"] == 50.0

    def test_order_and_execution(self, manager, portfolio_id: str, logger: StructuredEventLogger, buf: io.StringIO) -> None:
        manager.subscribe_to_orders(logger.order_update)
        manager.subscribe_to_executions(logger.execution)
        manager.execute_order(OrderRequest(portfolio_id, "BTC/USD", Side.BUY, OrderType.MARKET, 1))
        records = [json.loads(line) for line in buf.getvalue().strip().split("\n")]
        assert [r["event"] for r in records] == ["order_update", "order_update", "order_update", "execution"]
        assert [r["status"] for r in records] == ["pending", "submitted", "filled", "success"]
        assert records[-1]["qty"] == 1

    def test_portfolio_update(self, ledger, portfolio_id: str, logger: StructuredEventLogger, buf: io.StringIO) -> None:
        logger.portfolio_update(ledger.get_portfolio(portfolio_id))
        record = json.loads(buf.getvalue().strip())
        assert record["cash"] == 10_000
        assert record["positions"] == 0

    def test_error_event(self, logger: StructuredEventLogger, buf: io.StringIO) -> None:
        logger.error(message="DB locked", detail="OperationalError")
        record = json.loads(buf.getvalue().strip())
        assert record["event"] == "error"
        assert record["message"] == "DB locked"
        assert record["detail"] == "OperationalError"


class TestDisabled:
    """When structured_logs=False, nothing is written to stream."""

    def test_no_output_when_disabled(self, buf: io.StringIO) -> None:
        logger = StructuredEventLogger(enabled=False, stream=buf)
        logger.signal(_signal())
        logger.error("x")
        assert buf.getvalue() == ""


class TestWebhook:
    def test_trade_events_posted(self, buf: io.StringIO) -> None:
        logger = StructuredEventLogger(stream=buf, webhook_url="http://hooks.local/x")
        with patch("cli.structured_log.urllib.request.urlopen") as urlopen:
            logger.signal(_signal())
            logger.error("boom")
        assert urlopen.call_count == 2
        request = urlopen.call_args_list[0].args[0]
        assert request.full_url == "http://hooks.local/x"
        assert json.loads(request.data)["event"] == "signal"

    def test_non_trade_events_not_posted(self, ledger, portfolio_id: str, buf: io.StringIO) -> None:
        logger = StructuredEventLogger(stream=buf, webhook_url="http://hooks.local/x")
        with patch("cli.structured_log.urllib.request.urlopen") as urlopen:
            logger.portfolio_update(ledger.get_portfolio(portfolio_id))
        urlopen.assert_not_called()

    def test_webhook_failure_is_logged(self, buf: io.StringIO, caplog) -> None:
        logger = StructuredEventLogger(stream=buf, webhook_url="http://hooks.local/x")
        with patch("cli.structured_log.urllib.request.urlopen", side_effect=OSError("refused")):
            record = logger.error("boom")
        assert record["event"] == "error"
        assert "Webhook POST failed" in caplog.text


class TestReturnValue:
    """Each method returns the record dict for testability."""

    def test_returns_record(self, logger: StructuredEventLogger) -> None:
        record = logger.error("x", detail="y")
        assert isinstance(record, dict)
        assert record["event"] == "error"
        assert record["detail"] == "y"
