"""
Structured JSON event logger for log shipping.

Emits one JSON object per line to stderr. Events are designed to be
parsed by log aggregators (Grafana Loki, CloudWatch, ELK).

Optional webhook: when configured, trade-level events (signal, execution,
risk_alert, error) are POSTed to the URL.
"""

from __future__ import annotations

import json
import logging
import sys
import urllib.request
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("tradedesk.events")

WEBHOOK_EVENTS = frozenset({"signal", "execution", "risk_alert", "error"})


def _value(obj: Any) -> Any:
    return getattr(obj, "value", obj)


class StructuredEventLogger:
    """Emit structured JSON events to stderr and optional webhook."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        webhook_url: str = "",
        stream: Any = None,
    ) -> None:
        self._enabled = enabled
        self._webhook_url = webhook_url.strip()
        self._stream = stream or sys.stderr

    def _emit(self, event_type: str, **fields: Any) -> dict:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event_type,
            **fields,
        }
        if self._enabled:
            self._stream.write(json.dumps(record, default=str) + "\n")
            self._stream.flush()

        if self._webhook_url and event_type in WEBHOOK_EVENTS:
            self._post_webhook(record)

        return record

    def _post_webhook(self, record: dict) -> None:
        try:
            data = json.dumps(record, default=str).encode("utf-8")
            req = urllib.request.Request(
                self._webhook_url,
                data=data,
                headers={"Content-Type": "application/json"},
                method="POST",
            )
            urllib.request.urlopen(req, timeout=5)
        except Exception as exc:
            logger.warning("Webhook POST failed: %s", exc)

    def signal(self, signal: Any) -> dict:
        return self._emit(
            "signal",
            symbol=signal.symbol,
            type=_value(signal.type),
            strategy=signal.strategy,
            strength=round(signal.strength, 2),
            confidence=round(signal.confidence, 4),
            price=signal.price,
            reason=signal.reason,
        )

    def order_update(self, order: Any) -> dict:
        return self._emit(
            "order_update",
            order_id=order.id,
            portfolio_id=order.portfolio_id,
            symbol=order.symbol,
            side=_value(order.side),
            type=_value(order.type),
            status=_value(order.status),
            quantity=order.quantity,
            filled=order.filled_quantity,
            version=order.version,
        )

    def execution(self, report: Any) -> dict:
        return self._emit(
            "execution",
            order_id=report.order_id,
            symbol=report.symbol,
            side=_value(report.side),
            status=_value(report.status),
            qty=report.executed_quantity,
            avg_price=report.avg_price,
            commission=report.commission,
            message=report.message,
        )

    def portfolio_update(self, portfolio: Any) -> dict:
        return self._emit(
            "portfolio_update",
            portfolio_id=portfolio.id,
            cash=round(portfolio.cash_balance, 2),
            total_value=round(portfolio.total_value, 2),
            positions=len(portfolio.positions),
            unrealized_pnl=round(portfolio.unrealized_pnl, 2),
            realized_pnl=round(portfolio.realized_pnl, 2),
        )

    def risk_alert(self, alert: Any) -> dict:
        return self._emit(
            "risk_alert",
            alert_id=alert.id,
            severity=_value(alert.severity),
            level=_value(alert.level),
            message=alert.message,
            symbol=alert.symbol,
            value=alert.value,
            threshold=alert.threshold,
        )

    def error(self, message: str, detail: str = "") -> dict:
        return self._emit("error", message=message, detail=detail)
