"""Pytest fixtures: price-bar sequences and a paper order stack for deterministic tests."""

from datetime import datetime, timedelta, timezone
from typing import Sequence

import pytest

from execution.exchange import PaperExchange
from execution.ledger import PortfolioLedger
from execution.order_manager import OrderManager
from execution.store import StateStore
from trading_core.contracts import PriceBar
from trading_core.risk_engine import RiskEngine

# Wednesday, inside the equity session
T0 = datetime(2024, 3, 6, 15, 0, 0, tzinfo=timezone.utc)

# Thirty closes with mixed half- and whole-point moves; indicator values are worked by hand.
GOLDEN_CLOSES = [
    44.0, 44.5, 43.5, 44.5, 45.0, 45.5, 45.0, 46.0, 46.5, 46.0,
    47.0, 46.5, 47.5, 48.0, 47.5, 48.5, 49.0, 48.5, 49.5, 50.0,
    49.0, 48.0, 48.5, 47.5, 47.0, 48.0, 48.5, 49.5, 50.0, 50.5,
]


def make_bars(
    closes: Sequence[float],
    symbol: str = "BTC/USD",
    start: datetime = T0,
    step: timedelta = timedelta(hours=1),
) -> list[PriceBar]:
    """One bar per close; open = previous close, high/low 1 above/below."""
    bars = []
    prev = closes[0]
    for i, close in enumerate(closes):
        bars.append(
            PriceBar(
                symbol=symbol,
                timestamp=start + step * i,
                open=prev,
                high=max(prev, close) + 1,
                low=min(prev, close) - 1,
                close=close,
                volume=1_000.0 + i,
            )
        )
        prev = close
    return bars


class FixedClock:
    """Settable clock for the engine's injectable ``clock`` parameters."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@pytest.fixture
def symbol() -> str:
    return "BTC/USD"


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def uptrend_bars(symbol: str) -> list[PriceBar]:
    """Twenty-five bars, each close one above the prior."""
    return make_bars([100.0 + i for i in range(25)], symbol)


@pytest.fixture
def flat_bars(symbol: str) -> list[PriceBar]:
    return make_bars([100.0] * 30, symbol)


@pytest.fixture
def exchange(clock: FixedClock) -> PaperExchange:
    return PaperExchange({"BTC/USD": 100.0, "ETH/USD": 50.0, "AAPL": 200.0}, balances={"USD": 10_000.0}, clock=clock)


@pytest.fixture
def store(tmp_path) -> StateStore:
    return StateStore(tmp_path / "state.db")


@pytest.fixture
def risk_engine(clock: FixedClock) -> RiskEngine:
    return RiskEngine(clock=clock)


@pytest.fixture
def ledger(store: StateStore, clock: FixedClock) -> PortfolioLedger:
    return PortfolioLedger(store, clock=clock)


@pytest.fixture
def portfolio_id(ledger: PortfolioLedger) -> str:
    return ledger.create_portfolio("owner-1", "main", 10_000.0).id


@pytest.fixture
def manager(ledger, risk_engine, exchange, store, clock) -> OrderManager:
    om = OrderManager(ledger, risk_engine, exchange, store=store, clock=clock)
    yield om
    om.exchange.close()
