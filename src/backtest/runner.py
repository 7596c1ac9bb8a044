"""
Signal-driven backtest: replay bars in order, run a strategy on each prefix,
simulate one paper position at a time.

No lookahead: at bar i the strategy only sees bars[: i + 1]. Fills happen
at the signal price. An opposite directional signal closes the open
position before a new one is considered; hold signals never open or close.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Sequence

from trading_core.contracts import PriceBar, Side, Signal, SignalType
from trading_core.risk_metrics import max_drawdown_pct, sharpe_ratio


@dataclass
class BacktestTrade:
    """One round-trip paper trade."""

    symbol: str
    side: Side
    entry_time: datetime
    entry_price: float
    exit_time: datetime
    exit_price: float
    quantity: float
    pnl: float
    pnl_percent: float

    @property
    def duration(self) -> timedelta:
        return self.exit_time - self.entry_time


@dataclass
class OpenPaperPosition:
    side: Side
    entry_price: float
    quantity: float
    entry_time: datetime


@dataclass
class BacktestResult:
    """Result of a backtest run."""

    strategy: str
    symbol: str
    initial_balance: float
    final_balance: float
    start_time: datetime | None = None
    end_time: datetime | None = None
    trades: list[BacktestTrade] = field(default_factory=list)
    max_drawdown: float = 0.0
    open_position: OpenPaperPosition | None = None

    @classmethod
    def empty(cls, strategy: str, symbol: str, initial_balance: float) -> BacktestResult:
        return cls(strategy=strategy, symbol=symbol, initial_balance=initial_balance, final_balance=initial_balance)

    @property
    def total_trades(self) -> int:
        return len(self.trades)

    @property
    def win_count(self) -> int:
        return sum(1 for t in self.trades if t.pnl > 0)

    @property
    def loss_count(self) -> int:
        return sum(1 for t in self.trades if t.pnl < 0)

    @property
    def win_rate(self) -> float:
        return self.win_count / len(self.trades) * 100 if self.trades else 0.0

    @property
    def total_return_pct(self) -> float:
        if self.initial_balance <= 0:
            return 0.0
        return (self.final_balance - self.initial_balance) / self.initial_balance * 100

    @property
    def avg_win(self) -> float:
        wins = [t.pnl for t in self.trades if t.pnl > 0]
        return sum(wins) / len(wins) if wins else 0.0

    @property
    def avg_loss(self) -> float:
        losses = [t.pnl for t in self.trades if t.pnl < 0]
        return abs(sum(losses) / len(losses)) if losses else 0.0

    @property
    def profit_factor(self) -> float:
        """(avg win * wins) / (avg loss * losses); 0 when there are no losses."""
        if self.avg_loss == 0:
            return 0.0
        return (self.avg_win * self.win_count) / (self.avg_loss * self.loss_count)

    @property
    def sharpe_ratio(self) -> float:
        """Sharpe of per-trade percent returns (no risk-free adjustment)."""
        return sharpe_ratio([t.pnl_percent for t in self.trades])


def _close(position: OpenPaperPosition, symbol: str, price: float, at: datetime) -> BacktestTrade:
    if position.side is Side.BUY:
        pnl = (price - position.entry_price) * position.quantity
    else:
        pnl = (position.entry_price - price) * position.quantity
    cost = position.entry_price * position.quantity
    return BacktestTrade(
        symbol=symbol,
        side=position.side,
        entry_time=position.entry_time,
        entry_price=position.entry_price,
        exit_time=at,
        exit_price=price,
        quantity=position.quantity,
        pnl=pnl,
        pnl_percent=pnl / cost * 100 if cost else 0.0,
    )


def run_backtest(
    bars: Sequence[PriceBar],
    execute: Callable[[Sequence[PriceBar]], list[Signal]],
    *,
    start_index: int,
    position_size_pct: float,
    initial_balance: float = 10_000.0,
    strategy: str = "",
    journal_callback: Callable[[str, dict], None] | None = None,
) -> BacktestResult:
    """Replay *bars* through *execute*, one paper position at a time.

    Parameters
    ----------
    bars:
        Chronological bar history for one symbol.
    execute:
        Strategy signal function called on every prefix ``bars[: i + 1]``.
    start_index:
        First bar index evaluated (the strategy's minimum lookback).
    position_size_pct:
        New positions are sized as ``balance * position_size_pct / 100 / price``.
    initial_balance:
        Starting paper balance.
    journal_callback:
        Optional callback receiving ("entry" | "exit", payload).
    """
    symbol = bars[0].symbol if bars else ""
    result = BacktestResult.empty(strategy, symbol, initial_balance)
    if not bars:
        return result
    result.start_time = bars[0].timestamp
    result.end_time = bars[-1].timestamp

    balance = initial_balance
    equity_curve = [balance]
    position: OpenPaperPosition | None = None

    for i in range(max(start_index, 0), len(bars)):
        signals = execute(bars[: i + 1])
        if not signals:
            continue
        signal = signals[0]
        if signal.type is SignalType.HOLD:
            continue
        side = Side(signal.type.value)

        if position is not None and position.side is not side:
            trade = _close(position, symbol, signal.price, signal.timestamp)
            balance += trade.pnl
            equity_curve.append(balance)
            result.trades.append(trade)
            if journal_callback:
                journal_callback("exit", {"trade": trade, "bar_index": i})
            position = None

        if position is None and signal.price > 0:
            quantity = balance * position_size_pct / 100 / signal.price
            position = OpenPaperPosition(
                side=side,
                entry_price=signal.price,
                quantity=quantity,
                entry_time=signal.timestamp,
            )
            if journal_callback:
                journal_callback("entry", {
                    "side": side.value,
                    "price": signal.price,
                    "quantity": quantity,
                    "bar_index": i,
                    "reason": signal.reason,
                })

    result.final_balance = balance
    result.max_drawdown = max_drawdown_pct(equity_curve)
    result.open_position = position
    return result
