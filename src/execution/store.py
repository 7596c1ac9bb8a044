"""
State store: portfolios, positions, orders, fills and trades in SQLite.

Upsert/fetch keyed by identity; timestamps are ISO-8601 UTC strings. Any
sqlite3.Error is raised as AdapterError. Callers decide whether a failed
save is fatal (the ledger and order manager log and continue).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from trading_core.contracts import Portfolio, Position, PositionSide, Side, Trade
from trading_core.errors import AdapterError

from execution.models import Fill, Order, OrderStatus, OrderType, TimeInForce

logger = logging.getLogger("tradedesk.store")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS portfolios (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        name TEXT NOT NULL,
        cash_balance REAL NOT NULL,
        initial_value REAL NOT NULL,
        realized_pnl REAL NOT NULL DEFAULT 0,
        day_start_value REAL NOT NULL DEFAULT 0,
        value_history TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS positions (
        portfolio_id TEXT NOT NULL,
        symbol TEXT NOT NULL,
        side TEXT NOT NULL,
        quantity REAL NOT NULL,
        avg_price REAL NOT NULL,
        current_price REAL NOT NULL,
        entry_time TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        stop_loss REAL,
        take_profit REAL,
        PRIMARY KEY (portfolio_id, symbol)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        portfolio_id TEXT NOT NULL,
        symbol TEXT NOT NULL,
        side TEXT NOT NULL,
        type TEXT NOT NULL,
        quantity REAL NOT NULL,
        price REAL,
        stop_price REAL,
        time_in_force TEXT NOT NULL,
        status TEXT NOT NULL,
        filled_quantity REAL NOT NULL,
        remaining_quantity REAL NOT NULL,
        avg_fill_price REAL NOT NULL,
        total_fill_value REAL NOT NULL,
        commission REAL NOT NULL,
        stop_loss REAL,
        take_profit REAL,
        parent_id TEXT,
        child_ids TEXT NOT NULL DEFAULT '[]',
        exchange TEXT NOT NULL,
        exchange_order_id TEXT,
        notes TEXT,
        reject_reason TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        filled_at TEXT,
        version INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fills (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL,
        quantity REAL NOT NULL,
        price REAL NOT NULL,
        commission REAL NOT NULL,
        ts_utc TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trades (
        id TEXT PRIMARY KEY,
        portfolio_id TEXT NOT NULL,
        symbol TEXT NOT NULL,
        side TEXT NOT NULL,
        quantity REAL NOT NULL,
        price REAL NOT NULL,
        commission REAL NOT NULL,
        order_id TEXT,
        realized_pnl REAL,
        ts_utc TEXT NOT NULL
    )
    """,
)

_ORDER_COLUMNS = (
    "id, portfolio_id, symbol, side, type, quantity, price, stop_price, time_in_force, status, "
    "filled_quantity, remaining_quantity, avg_fill_price, total_fill_value, commission, stop_loss, "
    "take_profit, parent_id, child_ids, exchange, exchange_order_id, notes, reject_reason, "
    "created_at, updated_at, filled_at, version"
)


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class StateStore:
    """SQLite-backed persistence for ledger and order state. One file per path."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._path

    def _conn(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._path), timeout=10.0)

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._conn()
        except sqlite3.Error as e:
            raise AdapterError(f"Cannot open state store {self._path}: {e}") from e
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise AdapterError(f"State store error: {e}") from e
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._tx() as c:
            for ddl in _SCHEMA:
                c.execute(ddl)
        logger.debug("State store ready at %s", self._path)

    # -- portfolios -----------------------------------------------------------

    def save_portfolio(self, portfolio: Portfolio) -> None:
        """Upsert the portfolio row and replace its positions."""
        with self._tx() as c:
            c.execute(
                """INSERT OR REPLACE INTO portfolios
                   (id, owner_id, name, cash_balance, initial_value, realized_pnl, day_start_value,
                    value_history, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    portfolio.id,
                    portfolio.owner_id,
                    portfolio.name,
                    portfolio.cash_balance,
                    portfolio.initial_value,
                    portfolio.realized_pnl,
                    portfolio.day_start_value,
                    json.dumps(portfolio.value_history),
                    _ts(portfolio.created_at),
                    _ts(portfolio.updated_at),
                ),
            )
            c.execute("DELETE FROM positions WHERE portfolio_id = ?", (portfolio.id,))
            for p in portfolio.positions.values():
                c.execute(
                    """INSERT INTO positions
                       (portfolio_id, symbol, side, quantity, avg_price, current_price, entry_time,
                        updated_at, stop_loss, take_profit)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        portfolio.id,
                        p.symbol,
                        p.side.value,
                        p.quantity,
                        p.avg_price,
                        p.current_price,
                        _ts(p.entry_time),
                        _ts(p.updated_at),
                        p.stop_loss,
                        p.take_profit,
                    ),
                )

    def load_portfolio(self, portfolio_id: str) -> Portfolio | None:
        """Raw stored state; derived totals are left for the ledger to recompute."""
        with self._tx() as c:
            row = c.execute(
                """SELECT id, owner_id, name, cash_balance, initial_value, realized_pnl, day_start_value,
                          value_history, created_at, updated_at
                   FROM portfolios WHERE id = ?""",
                (portfolio_id,),
            ).fetchone()
            if row is None:
                return None
            pos_rows = c.execute(
                """SELECT symbol, side, quantity, avg_price, current_price, entry_time, updated_at,
                          stop_loss, take_profit
                   FROM positions WHERE portfolio_id = ? ORDER BY symbol""",
                (portfolio_id,),
            ).fetchall()

        portfolio = Portfolio(
            id=row[0],
            owner_id=row[1],
            name=row[2],
            cash_balance=row[3],
            initial_value=row[4],
            realized_pnl=row[5],
            day_start_value=row[6],
            value_history=list(json.loads(row[7])),
            created_at=_parse(row[8]),
            updated_at=_parse(row[9]),
        )
        for r in pos_rows:
            position = Position(
                portfolio_id=portfolio_id,
                symbol=r[0],
                side=PositionSide(r[1]),
                quantity=r[2],
                avg_price=r[3],
                current_price=r[4],
                entry_time=_parse(r[5]),
                updated_at=_parse(r[6]),
                stop_loss=r[7],
                take_profit=r[8],
            )
            position.revalue(position.current_price, position.updated_at)
            portfolio.positions[position.symbol] = position
        return portfolio

    def portfolio_ids(self) -> list[str]:
        with self._tx() as c:
            rows = c.execute("SELECT id FROM portfolios ORDER BY created_at").fetchall()
        return [r[0] for r in rows]

    # -- orders ---------------------------------------------------------------

    def save_order(self, order: Order) -> None:
        """Upsert the order (by id) and insert any fills not stored yet."""
        with self._tx() as c:
            c.execute(
                f"INSERT OR REPLACE INTO orders ({_ORDER_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    order.id,
                    order.portfolio_id,
                    order.symbol,
                    order.side.value,
                    order.type.value,
                    order.quantity,
                    order.price,
                    order.stop_price,
                    order.time_in_force.value,
                    order.status.value,
                    order.filled_quantity,
                    order.remaining_quantity,
                    order.avg_fill_price,
                    order.total_fill_value,
                    order.commission,
                    order.stop_loss,
                    order.take_profit,
                    order.parent_id,
                    json.dumps(list(order.child_ids)),
                    order.exchange,
                    order.exchange_order_id,
                    order.notes,
                    order.reject_reason,
                    _ts(order.created_at),
                    _ts(order.updated_at),
                    _ts(order.filled_at) if order.filled_at else None,
                    order.version,
                ),
            )
            for f in order.fills:
                c.execute(
                    """INSERT OR IGNORE INTO fills (id, order_id, quantity, price, commission, ts_utc)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (f.id, f.order_id, f.quantity, f.price, f.commission, _ts(f.timestamp)),
                )

    def _order_from_row(self, c: sqlite3.Connection, r: tuple) -> Order:
        fill_rows = c.execute(
            "SELECT id, order_id, quantity, price, commission, ts_utc FROM fills WHERE order_id = ? ORDER BY ts_utc",
            (r[0],),
        ).fetchall()
        fills = tuple(
            Fill(id=f[0], order_id=f[1], quantity=f[2], price=f[3], commission=f[4], timestamp=_parse(f[5]))
            for f in fill_rows
        )
        return Order(
            id=r[0],
            portfolio_id=r[1],
            symbol=r[2],
            side=Side(r[3]),
            type=OrderType(r[4]),
            quantity=r[5],
            price=r[6],
            stop_price=r[7],
            time_in_force=TimeInForce(r[8]),
            status=OrderStatus(r[9]),
            filled_quantity=r[10],
            remaining_quantity=r[11],
            avg_fill_price=r[12],
            total_fill_value=r[13],
            commission=r[14],
            stop_loss=r[15],
            take_profit=r[16],
            parent_id=r[17],
            child_ids=tuple(json.loads(r[18])),
            exchange=r[19],
            exchange_order_id=r[20],
            notes=r[21],
            reject_reason=r[22],
            created_at=_parse(r[23]),
            updated_at=_parse(r[24]),
            filled_at=_parse(r[25]),
            version=r[26],
            fills=fills,
        )

    def load_order(self, order_id: str) -> Order | None:
        with self._tx() as c:
            row = c.execute(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = ?", (order_id,)).fetchone()
            return self._order_from_row(c, row) if row else None

    def load_orders(self, portfolio_id: str | None = None) -> list[Order]:
        """Orders newest first, optionally for one portfolio."""
        with self._tx() as c:
            if portfolio_id is None:
                rows = c.execute(f"SELECT {_ORDER_COLUMNS} FROM orders ORDER BY created_at DESC").fetchall()
            else:
                rows = c.execute(
                    f"SELECT {_ORDER_COLUMNS} FROM orders WHERE portfolio_id = ? ORDER BY created_at DESC",
                    (portfolio_id,),
                ).fetchall()
            return [self._order_from_row(c, r) for r in rows]

    # -- trades ---------------------------------------------------------------

    def save_trade(self, trade: Trade) -> None:
        with self._tx() as c:
            c.execute(
                """INSERT OR REPLACE INTO trades
                   (id, portfolio_id, symbol, side, quantity, price, commission, order_id, realized_pnl, ts_utc)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    trade.id,
                    trade.portfolio_id,
                    trade.symbol,
                    trade.side.value,
                    trade.quantity,
                    trade.price,
                    trade.commission,
                    trade.order_id,
                    trade.realized_pnl,
                    _ts(trade.timestamp),
                ),
            )

    def load_trades(self, portfolio_id: str, since: datetime | None = None) -> list[Trade]:
        """Trades oldest first."""
        with self._tx() as c:
            if since is None:
                rows = c.execute(
                    """SELECT id, portfolio_id, symbol, side, quantity, price, commission, order_id, realized_pnl, ts_utc
                       FROM trades WHERE portfolio_id = ? ORDER BY ts_utc""",
                    (portfolio_id,),
                ).fetchall()
            else:
                rows = c.execute(
                    """SELECT id, portfolio_id, symbol, side, quantity, price, commission, order_id, realized_pnl, ts_utc
                       FROM trades WHERE portfolio_id = ? AND ts_utc >= ? ORDER BY ts_utc""",
                    (portfolio_id, _ts(since)),
                ).fetchall()
        return [
            Trade(
                id=r[0],
                portfolio_id=r[1],
                symbol=r[2],
                side=Side(r[3]),
                quantity=r[4],
                price=r[5],
                commission=r[6],
                order_id=r[7],
                realized_pnl=r[8],
                timestamp=_parse(r[9]),
            )
            for r in rows
        ]
