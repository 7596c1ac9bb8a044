"""
SQLite price-bar store: the window source for strategies, backtests and CLI marks.

Rows are keyed by (symbol, timeframe, ts_utc); re-ingesting a window
overwrites it. Timestamps are stored as UTC ISO strings, so string order
is time order.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from trading_core.contracts import PriceBar
from trading_core.errors import AdapterError

logger = logging.getLogger("tradedesk.bars")

_COLUMNS = "ts_utc, open, high, low, close, volume"


def _iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


def _parse(ts_utc: str) -> datetime:
    ts = datetime.fromisoformat(ts_utc.replace("Z", "+00:00"))
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


class BarStore:
    """Bar storage for any number of (symbol, timeframe) series in one file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._execute(
            """
            CREATE TABLE IF NOT EXISTS bars (
                symbol TEXT NOT NULL,
                timeframe TEXT NOT NULL,
                ts_utc TEXT NOT NULL,
                open REAL NOT NULL,
                high REAL NOT NULL,
                low REAL NOT NULL,
                close REAL NOT NULL,
                volume REAL NOT NULL,
                PRIMARY KEY (symbol, timeframe, ts_utc)
            )
            """
        )

    @property
    def path(self) -> Path:
        return self._path

    def _execute(self, sql: str, params: Sequence = ()) -> list[tuple]:
        try:
            with sqlite3.connect(str(self._path)) as c:
                return c.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise AdapterError(f"Bar store {self._path}: {e}") from e

    def write_bars(self, symbol: str, timeframe: str, bars: Sequence[PriceBar]) -> int:
        """Upsert *bars* under (symbol, timeframe). Returns the number written."""
        rows = [
            (symbol, timeframe, _iso(b.timestamp), b.open, b.high, b.low, b.close, b.volume)
            for b in bars
        ]
        try:
            with sqlite3.connect(str(self._path)) as c:
                c.executemany(
                    f"INSERT OR REPLACE INTO bars (symbol, timeframe, {_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    rows,
                )
        except sqlite3.Error as e:
            raise AdapterError(f"Bar store {self._path}: {e}") from e
        logger.debug("Stored %d %s %s bars", len(rows), symbol, timeframe)
        return len(rows)

    def _select(
        self,
        symbol: str,
        timeframe: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        newest_first: bool = False,
        limit: int | None = None,
    ) -> list[PriceBar]:
        sql = f"SELECT {_COLUMNS} FROM bars WHERE symbol = ? AND timeframe = ?"
        params: list = [symbol, timeframe]
        if since is not None:
            sql += " AND ts_utc >= ?"
            params.append(_iso(since))
        if until is not None:
            sql += " AND ts_utc <= ?"
            params.append(_iso(until))
        sql += " ORDER BY ts_utc DESC" if newest_first else " ORDER BY ts_utc ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [
            PriceBar(symbol, _parse(ts), o, h, l, c, vol)
            for ts, o, h, l, c, vol in self._execute(sql, params)
        ]

    def get_bars(
        self,
        symbol: str,
        timeframe: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[PriceBar]:
        """Bars in ascending time order, optionally windowed by [since, until] and capped at *limit*."""
        return self._select(symbol, timeframe, since=since, until=until, limit=limit)

    def get_last_bars(
        self,
        symbol: str,
        timeframe: str,
        n: int,
        *,
        until: datetime | None = None,
    ) -> list[PriceBar]:
        """The newest *n* bars at or before *until*, ascending: the strategy window."""
        bars = self._select(symbol, timeframe, until=until, newest_first=True, limit=n)
        bars.reverse()
        return bars

    def latest_close(self, symbol: str, timeframe: str) -> float | None:
        rows = self._execute(
            "SELECT close FROM bars WHERE symbol = ? AND timeframe = ? ORDER BY ts_utc DESC LIMIT 1",
            (symbol, timeframe),
        )
        return rows[0][0] if rows else None

    def count_bars(self, symbol: str, timeframe: str) -> int:
        rows = self._execute(
            "SELECT COUNT(*) FROM bars WHERE symbol = ? AND timeframe = ?",
            (symbol, timeframe),
        )
        return rows[0][0] if rows else 0

    def series(self) -> list[tuple[str, str, int]]:
        """Stored (symbol, timeframe, bar count) triples."""
        rows = self._execute(
            "SELECT symbol, timeframe, COUNT(*) FROM bars GROUP BY symbol, timeframe ORDER BY symbol, timeframe"
        )
        return [(r[0], r[1], r[2]) for r in rows]
