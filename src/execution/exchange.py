"""
Exchange adapter boundary.

The order manager depends only on ExchangeAdapter. PaperExchange is the
deterministic in-process implementation (settable prices, sequential ids);
a real venue adapter implements the same methods.

AdapterGateway wraps any adapter: every call runs with a timeout and any
failure surfaces as AdapterError.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime
from typing import Any, Callable, Protocol, Sequence

from trading_core.contracts import PriceBar, Side, utc_now
from trading_core.errors import AdapterError

from execution.models import ExchangeOrder, OrderType, Ticker

logger = logging.getLogger("tradedesk.exchange")


class ExchangeAdapter(Protocol):
    """Venue boundary. Implementations may raise anything; AdapterGateway normalizes it."""

    def place_order(
        self,
        symbol: str,
        type: OrderType,
        side: Side,
        amount: float,
        price: float | None = None,
    ) -> ExchangeOrder:
        ...

    def cancel_order(self, exchange_order_id: str) -> bool:
        ...

    def fetch_balance(self) -> dict[str, float]:
        ...

    def fetch_ticker(self, symbol: str) -> Ticker:
        ...

    def fetch_ohlcv(self, symbol: str, timeframe: str = "1d", limit: int = 100) -> list[PriceBar]:
        ...

    def fetch_orders(self, symbol: str | None = None) -> list[ExchangeOrder]:
        ...


class PaperExchange:
    """Deterministic fake venue. Orders are acknowledged, never matched."""

    def __init__(
        self,
        prices: dict[str, float] | None = None,
        *,
        balances: dict[str, float] | None = None,
        default_price: float = 100.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._prices = dict(prices or {})
        self._balances = dict(balances or {"USD": 0.0})
        self._bars: dict[str, list[PriceBar]] = {}
        self._orders: dict[str, ExchangeOrder] = {}
        self._next_id = 1
        self._default_price = default_price
        self._clock = clock
        self._lock = threading.Lock()

    def set_price(self, symbol: str, price: float) -> None:
        self._prices[symbol] = price

    def load_bars(self, symbol: str, bars: Sequence[PriceBar]) -> None:
        self._bars[symbol] = list(bars)
        if bars:
            self._prices[symbol] = bars[-1].close

    def place_order(
        self,
        symbol: str,
        type: OrderType,
        side: Side,
        amount: float,
        price: float | None = None,
    ) -> ExchangeOrder:
        if amount <= 0:
            raise ValueError("amount must be positive")
        with self._lock:
            order_id = f"paper-{self._next_id:06d}"
            self._next_id += 1
            ack = ExchangeOrder(
                id=order_id,
                symbol=symbol,
                side=side,
                type=type,
                amount=amount,
                price=price,
                status="open",
                timestamp=self._clock(),
            )
            self._orders[order_id] = ack
        return ack

    def cancel_order(self, exchange_order_id: str) -> bool:
        with self._lock:
            ack = self._orders.get(exchange_order_id)
            if ack is None or ack.status != "open":
                return False
            self._orders[exchange_order_id] = ExchangeOrder(
                id=ack.id,
                symbol=ack.symbol,
                side=ack.side,
                type=ack.type,
                amount=ack.amount,
                price=ack.price,
                status="canceled",
                timestamp=self._clock(),
            )
        return True

    def fetch_balance(self) -> dict[str, float]:
        return dict(self._balances)

    def fetch_ticker(self, symbol: str) -> Ticker:
        last = self._prices.get(symbol, self._default_price)
        return Ticker(symbol=symbol, last=last, bid=last, ask=last, timestamp=self._clock())

    def fetch_ohlcv(self, symbol: str, timeframe: str = "1d", limit: int = 100) -> list[PriceBar]:
        return self._bars.get(symbol, [])[-limit:]

    def fetch_orders(self, symbol: str | None = None) -> list[ExchangeOrder]:
        return [o for o in self._orders.values() if symbol is None or o.symbol == symbol]


class AdapterGateway:
    """Runs adapter calls with a timeout; every failure becomes AdapterError.

    A call that times out cannot be interrupted and keeps its worker until
    the adapter returns. Later calls run on the remaining *workers*.
    """

    def __init__(self, adapter: ExchangeAdapter, *, timeout: float = 10.0, workers: int = 4) -> None:
        self.adapter = adapter
        self.timeout = timeout
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="exchange")

    def _call(self, name: str, *args: Any) -> Any:
        method = getattr(self.adapter, name)
        future = self._pool.submit(method, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as e:
            future.cancel()
            raise AdapterError(f"Exchange call {name} timed out after {self.timeout}s") from e
        except AdapterError:
            raise
        except Exception as e:
            logger.warning("Exchange call %s failed: %s", name, e)
            raise AdapterError(f"Exchange call {name} failed: {e}") from e

    def place_order(
        self,
        symbol: str,
        type: OrderType,
        side: Side,
        amount: float,
        price: float | None = None,
    ) -> ExchangeOrder:
        return self._call("place_order", symbol, type, side, amount, price)

    def cancel_order(self, exchange_order_id: str) -> bool:
        return bool(self._call("cancel_order", exchange_order_id))

    def fetch_ticker(self, symbol: str) -> Ticker:
        return self._call("fetch_ticker", symbol)

    def fetch_balance(self) -> dict[str, float]:
        return self._call("fetch_balance")

    def fetch_ohlcv(self, symbol: str, timeframe: str = "1d", limit: int = 100) -> list[PriceBar]:
        return self._call("fetch_ohlcv", symbol, timeframe, limit)

    def fetch_orders(self, symbol: str | None = None) -> list[ExchangeOrder]:
        return self._call("fetch_orders", symbol)

    def close(self) -> None:
        self._pool.shutdown(wait=False)
