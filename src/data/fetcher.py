"""
Fetch OHLCV bars from a data source. Configurable adapter; sync, batch pull.
"""

import csv
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from trading_core.contracts import PriceBar


@dataclass
class FetchResult:
    """Result of a fetch: bars and optional next cursor for pagination."""

    bars: list[PriceBar]
    symbol: str
    timeframe: str
    next_cursor: str | None = None


class BarFetcher(Protocol):
    """Protocol for bar fetchers. Implement per provider (Alpaca, CSV export, etc.)."""

    def fetch(
        self,
        symbol: str,
        timeframe: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> FetchResult:
        """Fetch bars; normalize timestamps to UTC. Returns FetchResult."""
        ...


class MockBarFetcher:
    """Returns no bars; for tests and when no API is configured."""

    def fetch(
        self,
        symbol: str,
        timeframe: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> FetchResult:
        return FetchResult(bars=[], symbol=symbol, timeframe=timeframe)


def _parse_ts(value: str) -> datetime:
    value = value.strip()
    if value.isdigit():
        # epoch seconds, or milliseconds when it is too large for seconds
        n = int(value)
        return datetime.fromtimestamp(n / 1000 if n > 10**11 else n, tz=timezone.utc)
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class CsvBarFetcher:
    """
    Read bars from a CSV export with columns timestamp,open,high,low,close,volume.

    Timestamps may be ISO-8601 or epoch seconds/milliseconds. Rows are sorted
    ascending; ``start``/``end``/``limit`` filter the result.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        if not self._path.exists():
            raise FileNotFoundError(f"CSV file not found: {self._path}")

    def fetch(
        self,
        symbol: str,
        timeframe: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> FetchResult:
        bars: list[PriceBar] = []
        with open(self._path, newline="") as f:
            reader = csv.DictReader(f)
            missing = {"timestamp", "open", "high", "low", "close", "volume"} - set(reader.fieldnames or [])
            if missing:
                raise ValueError(f"CSV {self._path.name} is missing columns: {sorted(missing)}")
            for row in reader:
                ts = _parse_ts(row["timestamp"])
                if (start and ts < start) or (end and ts > end):
                    continue
                bars.append(
                    PriceBar(
                        symbol=symbol,
                        timestamp=ts,
                        open=float(row["open"]),
                        high=float(row["high"]),
                        low=float(row["low"]),
                        close=float(row["close"]),
                        volume=float(row["volume"]),
                    )
                )
        bars.sort(key=lambda b: b.timestamp)
        if limit is not None:
            bars = bars[-limit:]
        return FetchResult(bars=bars, symbol=symbol, timeframe=timeframe)
