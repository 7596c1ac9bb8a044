"""
Portfolio Ledger: cash, positions, realized/unrealized P&L and derived totals.

Long-only position model. Every mutation of one portfolio runs under that
portfolio's lock (``ledger.lock(portfolio_id)``), which the order manager
also holds while it books a fill, so fill and ledger update are one step.

Saves go to the StateStore when one is attached. A failed save is logged and
the in-memory state stands.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Mapping, Sequence

from trading_core import risk_metrics
from trading_core.contracts import Portfolio, Position, Side, Trade, utc_now
from trading_core.errors import AdapterError, NotFoundError, ValidationError
from trading_core.events import EventChannel, Unsubscribe

from execution.lifecycle import QTY_EPSILON
from execution.store import StateStore

logger = logging.getLogger("tradedesk.ledger")

DEFAULT_INITIAL_CASH = 10_000.0
REBALANCE_THRESHOLD = 0.01

PERIODS = {
    "1d": timedelta(days=1),
    "1w": timedelta(days=7),
    "1m": timedelta(days=30),
    "3m": timedelta(days=90),
    "1y": timedelta(days=365),
}


def period_start(period: str, now: datetime) -> datetime | None:
    """Start of a reporting period ("1d", "1w", "1m", "3m", "1y"); None for "all"."""
    if period == "all":
        return None
    return now - PERIODS.get(period, PERIODS["1m"])


@dataclass(frozen=True)
class AllocationTarget:
    symbol: str
    target_percent: float


@dataclass(frozen=True)
class RebalanceOrder:
    symbol: str
    side: Side
    quantity: float
    current_quantity: float
    target_quantity: float
    estimated_value: float
    reason: str


@dataclass(frozen=True)
class PnLSummary:
    unrealized: float
    realized: float

    @property
    def total(self) -> float:
        return self.unrealized + self.realized


@dataclass(frozen=True)
class PortfolioPerformance:
    period: str
    start_value: float
    end_value: float
    absolute_return: float
    percent_return: float
    volatility: float
    sharpe_ratio: float
    max_drawdown: float
    win_rate: float
    profit_factor: float
    best_trade: float
    worst_trade: float
    avg_trade: float
    total_trades: int


class PortfolioLedger:
    """Owns Portfolio state. One instance per process, held by the TradingContext."""

    def __init__(
        self,
        store: StateStore | None = None,
        *,
        margin_rate: float = 0.1,
        history_size: int = 365,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self.margin_rate = margin_rate
        self._history_size = history_size
        self._clock = clock
        self._portfolios: dict[str, Portfolio] = {}
        self._trades: dict[str, list[Trade]] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()
        self.updates: EventChannel[Portfolio] = EventChannel("portfolio")

    def lock(self, portfolio_id: str) -> threading.RLock:
        """Per-portfolio re-entrant lock: at most one writer per portfolio."""
        with self._guard:
            lock = self._locks.get(portfolio_id)
            if lock is None:
                lock = self._locks[portfolio_id] = threading.RLock()
            return lock

    # -- lookup -------------------------------------------------------------

    def create_portfolio(
        self,
        owner_id: str,
        name: str,
        initial_cash: float | None = None,
    ) -> Portfolio:
        cash = DEFAULT_INITIAL_CASH if initial_cash is None else initial_cash
        if cash < 0:
            raise ValidationError("Initial cash cannot be negative")
        if not name:
            raise ValidationError("Portfolio name is required")
        now = self._clock()
        portfolio = Portfolio(
            id=f"portfolio_{uuid.uuid4().hex[:12]}",
            owner_id=owner_id,
            name=name,
            cash_balance=cash,
            initial_value=cash,
            created_at=now,
            updated_at=now,
            day_start_value=cash,
        )
        self._refresh_totals(portfolio)
        portfolio.value_history.append(portfolio.total_value)
        with self._guard:
            self._portfolios[portfolio.id] = portfolio
        self._save(portfolio)
        logger.info("Portfolio created: %s (%s) cash=%.2f", portfolio.id, name, cash)
        return portfolio

    def get_portfolio(self, portfolio_id: str) -> Portfolio:
        """In-memory portfolio, else the stored one. Unknown id -> NotFoundError."""
        with self._guard:
            portfolio = self._portfolios.get(portfolio_id)
        if portfolio is not None:
            return portfolio
        if self._store is not None:
            try:
                portfolio = self._store.load_portfolio(portfolio_id)
            except AdapterError:
                logger.exception("Failed to load portfolio %s", portfolio_id)
                portfolio = None
        if portfolio is None:
            raise NotFoundError("Portfolio", portfolio_id)
        self._refresh_totals(portfolio)
        with self._guard:
            portfolio = self._portfolios.setdefault(portfolio_id, portfolio)
        return portfolio

    def portfolios(self) -> list[Portfolio]:
        ids: list[str] = []
        if self._store is not None:
            try:
                ids = self._store.portfolio_ids()
            except AdapterError:
                logger.exception("Failed to list stored portfolios")
        with self._guard:
            ids += [pid for pid in self._portfolios if pid not in ids]
        return [self.get_portfolio(pid) for pid in ids]

    # -- trades -------------------------------------------------------------

    def _check_batch(self, portfolio: Portfolio, trades: Sequence[Trade]) -> None:
        held = {s: p.quantity for s, p in portfolio.positions.items()}
        for trade in trades:
            if trade.portfolio_id != portfolio.id:
                raise ValidationError(f"Trade {trade.id} belongs to portfolio {trade.portfolio_id}")
            if trade.quantity <= 0 or trade.price <= 0:
                raise ValidationError(f"Trade {trade.id} must have positive quantity and price")
            if trade.side is Side.BUY:
                held[trade.symbol] = held.get(trade.symbol, 0.0) + trade.quantity
                continue
            available = held.get(trade.symbol, 0.0)
            if trade.quantity > available + QTY_EPSILON:
                raise ValidationError(
                    f"Insufficient position size. Requested: {trade.quantity}, Available: {available}"
                )
            held[trade.symbol] = available - trade.quantity

    def _book(self, portfolio: Portfolio, trade: Trade) -> Trade:
        position = portfolio.positions.get(trade.symbol)
        realized = None

        if trade.side is Side.BUY:
            if position is None:
                position = Position(
                    portfolio_id=portfolio.id,
                    symbol=trade.symbol,
                    quantity=trade.quantity,
                    avg_price=trade.price,
                    current_price=trade.price,
                    entry_time=trade.timestamp,
                    updated_at=trade.timestamp,
                )
                portfolio.positions[trade.symbol] = position
            else:
                quantity = position.quantity + trade.quantity
                position.avg_price = (
                    position.quantity * position.avg_price + trade.quantity * trade.price
                ) / quantity
                position.quantity = quantity
            position.revalue(trade.price, trade.timestamp)
            portfolio.cash_balance -= trade.notional + trade.commission
        else:
            realized = trade.quantity * (trade.price - position.avg_price)
            portfolio.realized_pnl += realized
            position.quantity = max(0.0, position.quantity - trade.quantity)
            if position.quantity <= QTY_EPSILON:
                del portfolio.positions[trade.symbol]
            else:
                position.revalue(trade.price, trade.timestamp)
            portfolio.cash_balance += trade.notional - trade.commission

        return dataclasses.replace(trade, realized_pnl=realized)

    def check_trades(self, portfolio_id: str, trades: Sequence[Trade]) -> None:
        """Raise ValidationError if apply_trades would reject *trades*; books nothing."""
        with self.lock(portfolio_id):
            self._check_batch(self.get_portfolio(portfolio_id), trades)

    def apply_trades(self, portfolio_id: str, trades: Sequence[Trade]) -> list[Trade]:
        """Post executed trades and recompute totals.

        The whole batch is checked first (a sell larger than the position
        held at that point raises ValidationError) so a bad batch changes
        nothing. Returns the booked trades; sells carry ``realized_pnl``.
        """
        with self.lock(portfolio_id):
            portfolio = self.get_portfolio(portfolio_id)
            self._check_batch(portfolio, trades)
            booked = [self._book(portfolio, t) for t in trades]
            self._recalculate(portfolio)
            with self._guard:
                self._trades.setdefault(portfolio_id, []).extend(booked)
            for trade in booked:
                self._save_trade(trade)
            self._save(portfolio)
        for trade in booked:
            logger.info(
                "Trade booked: %s %s %s x %.6g @ %.4f",
                portfolio_id, trade.side.value, trade.symbol, trade.quantity, trade.price,
            )
        self.updates.publish(portfolio)
        return booked

    def trades(self, portfolio_id: str, since: datetime | None = None) -> list[Trade]:
        """Booked trades, oldest first."""
        if self._store is not None:
            try:
                return self._store.load_trades(portfolio_id, since)
            except AdapterError:
                logger.exception("Failed to load trades for %s", portfolio_id)
        with self._guard:
            trades = list(self._trades.get(portfolio_id, []))
        return [t for t in trades if since is None or t.timestamp >= since]

    # -- valuation ----------------------------------------------------------

    def mark_to_market(self, portfolio_id: str, prices: Mapping[str, float]) -> PnLSummary:
        """Revalue every position that has a price in *prices*; others keep their last mark."""
        with self.lock(portfolio_id):
            portfolio = self.get_portfolio(portfolio_id)
            now = self._clock()
            for symbol, position in portfolio.positions.items():
                price = prices.get(symbol)
                if price and price > 0:
                    position.revalue(price, now)
            self._recalculate(portfolio)
            self._save(portfolio)
            summary = PnLSummary(unrealized=portfolio.unrealized_pnl, realized=portfolio.realized_pnl)
        self.updates.publish(portfolio)
        return summary

    def _refresh_totals(self, portfolio: Portfolio) -> None:
        market_value = sum(p.market_value for p in portfolio.positions.values())
        portfolio.total_value = portfolio.cash_balance + market_value
        portfolio.total_equity = portfolio.total_value
        portfolio.margin_used = market_value * self.margin_rate
        portfolio.free_margin = portfolio.total_equity - portfolio.margin_used
        portfolio.unrealized_pnl = sum(p.unrealized_pnl for p in portfolio.positions.values())
        portfolio.total_return = portfolio.total_value - portfolio.initial_value
        portfolio.total_return_percent = (
            portfolio.total_return / portfolio.initial_value * 100 if portfolio.initial_value else 0.0
        )
        portfolio.day_change = portfolio.total_value - portfolio.day_start_value
        portfolio.day_change_percent = (
            portfolio.day_change / portfolio.day_start_value * 100 if portfolio.day_start_value else 0.0
        )

    def _recalculate(self, portfolio: Portfolio) -> None:
        now = self._clock()
        if now.date() != portfolio.updated_at.date():
            # first update of a new day: yesterday's closing value is today's base
            portfolio.day_start_value = portfolio.total_value
        self._refresh_totals(portfolio)
        portfolio.updated_at = now
        portfolio.value_history.append(portfolio.total_value)
        if len(portfolio.value_history) > self._history_size:
            del portfolio.value_history[: -self._history_size]

    # -- rebalancing and reporting -----------------------------------------

    def rebalance(
        self,
        portfolio_id: str,
        targets: Mapping[str, float] | Sequence[AllocationTarget],
        prices: Mapping[str, float] | None = None,
    ) -> list[RebalanceOrder]:
        """Orders that move each target symbol to its weight (percent of total value).

        Deltas of at most 1% of total value are ignored. A symbol with no
        price (neither held nor in *prices*) is skipped with a warning.
        """
        if isinstance(targets, Mapping):
            targets = [AllocationTarget(s, w) for s, w in targets.items()]
        bad = [t.symbol for t in targets if not 0 <= t.target_percent <= 100]
        if bad:
            raise ValidationError(f"Target weights must be between 0 and 100: {', '.join(bad)}")
        if sum(t.target_percent for t in targets) > 100 + 1e-9:
            raise ValidationError("Target weights sum to more than 100%")

        portfolio = self.get_portfolio(portfolio_id)
        total = portfolio.total_value
        if total <= 0:
            return []
        prices = prices or {}

        orders: list[RebalanceOrder] = []
        for target in targets:
            position = portfolio.positions.get(target.symbol)
            current_value = position.market_value if position else 0.0
            target_value = total * target.target_percent / 100
            difference = target_value - current_value
            if abs(difference) <= total * REBALANCE_THRESHOLD:
                continue
            price = prices.get(target.symbol) or (position.current_price if position else 0.0)
            if not price or price <= 0:
                logger.warning("No price for %s, skipping rebalance", target.symbol)
                continue
            current_percent = current_value / total * 100
            orders.append(
                RebalanceOrder(
                    symbol=target.symbol,
                    side=Side.BUY if difference > 0 else Side.SELL,
                    quantity=abs(difference) / price,
                    current_quantity=position.quantity if position else 0.0,
                    target_quantity=target_value / price,
                    estimated_value=abs(difference),
                    reason=f"Rebalance from {current_percent:.2f}% to {target.target_percent:.2f}%",
                )
            )
        return orders

    def performance(self, portfolio_id: str, period: str = "all") -> PortfolioPerformance:
        portfolio = self.get_portfolio(portfolio_id)
        values = list(portfolio.value_history) or [portfolio.total_value]
        start_value = portfolio.initial_value if period == "all" else values[0]
        end_value = portfolio.total_value
        absolute = end_value - start_value
        returns = risk_metrics.returns_from_values(values)

        since = period_start(period, self._clock())
        pnls = [t.realized_pnl for t in self.trades(portfolio_id, since) if t.realized_pnl is not None]
        wins = [p for p in pnls if p > 0]
        losses = [p for p in pnls if p < 0]
        gross_loss = abs(sum(losses))

        return PortfolioPerformance(
            period=period,
            start_value=start_value,
            end_value=end_value,
            absolute_return=absolute,
            percent_return=absolute / start_value * 100 if start_value > 0 else 0.0,
            volatility=risk_metrics.pstdev(returns) * 100,
            sharpe_ratio=risk_metrics.sharpe_ratio(returns),
            max_drawdown=risk_metrics.max_drawdown_pct(values),
            win_rate=len(wins) / len(pnls) * 100 if pnls else 0.0,
            profit_factor=sum(wins) / gross_loss if gross_loss else 0.0,
            best_trade=max(pnls) if pnls else 0.0,
            worst_trade=min(pnls) if pnls else 0.0,
            avg_trade=sum(pnls) / len(pnls) if pnls else 0.0,
            total_trades=len(pnls),
        )

    def subscribe_to_portfolio(self, callback: Callable[[Portfolio], None]) -> Unsubscribe:
        return self.updates.subscribe(callback)

    # -- persistence --------------------------------------------------------

    def _save(self, portfolio: Portfolio) -> None:
        if self._store is None:
            return
        try:
            self._store.save_portfolio(portfolio)
        except AdapterError:
            logger.exception("Failed to save portfolio %s", portfolio.id)

    def _save_trade(self, trade: Trade) -> None:
        if self._store is None:
            return
        try:
            self._store.save_trade(trade)
        except AdapterError:
            logger.exception("Failed to save trade %s", trade.id)
