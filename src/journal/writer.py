"""
Structured journal: append-only JSON lines of signals, orders, fills, trades and alerts.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any


def _serialize(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "__dict__") and not isinstance(obj, type):
        return {k: _serialize(v) for k, v in vars(obj).items() if not k.startswith("_")}
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_serialize(x) for x in obj]
    return obj


class JournalWriter:
    """Append-only journal. Each line is a JSON object with event type and payload."""

    def __init__(self, path: str | Path, *, echo_stdout: bool = False) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._echo = echo_stdout

    @property
    def path(self) -> Path:
        return self._path

    def _write(self, event_type: str, payload: dict) -> None:
        record = {"ts_utc": datetime.now(timezone.utc).isoformat(), "event": event_type, **payload}
        line = json.dumps(_serialize(record)) + "\n"
        with open(self._path, "a") as f:
            f.write(line)
        if self._echo:
            print(line.rstrip())

    def signal(self, signal: Any, **extra: Any) -> None:
        self._write("signal", {"signal": signal, **extra})

    def order(self, order: Any, **extra: Any) -> None:
        # fills are journaled on their own
        payload = {k: v for k, v in vars(order).items() if k != "fills"}
        self._write("order", {"order": payload, **extra})

    def execution(self, report: Any, **extra: Any) -> None:
        self._write("execution", {"report": report, **extra})

    def trade(self, trade: Any, **extra: Any) -> None:
        self._write("trade", {"trade": trade, **extra})

    def alert(self, alert: Any, **extra: Any) -> None:
        self._write("risk_alert", {"alert": alert, **extra})

    def backtest(self, strategy: str, symbol: str, event: str, payload: dict, **extra: Any) -> None:
        self._write("backtest_" + event, {"strategy": strategy, "symbol": symbol, **payload, **extra})

    def read(self) -> list[dict]:
        """All journal records, oldest first."""
        if not self._path.exists():
            return []
        with open(self._path) as f:
            return [json.loads(line) for line in f if line.strip()]
