"""
TradingContext: every engine service, built once at process start and passed explicitly.

build_context wires the channels: signals, order updates, execution reports,
portfolio updates and risk alerts flow to the journal and to any event sink
(the CLI's StructuredEventLogger). Portfolio marks feed the Risk Engine's
price history used for correlation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from config.engine_config import EngineConfig
from config.loader import AppConfig
from execution.exchange import ExchangeAdapter, PaperExchange
from execution.ledger import PortfolioLedger
from execution.order_manager import OrderManager
from execution.store import StateStore
from journal.writer import JournalWriter
from trading_core.contracts import Account, Portfolio, utc_now
from trading_core.events import Unsubscribe
from trading_core.risk_engine import RiskEngine, RiskMetrics
from trading_core.strategies import build_strategies
from trading_core.strategy_engine import StrategyEngine

logger = logging.getLogger("tradedesk.engine")


@dataclass
class TradingContext:
    config: EngineConfig
    app: AppConfig
    strategy_engine: StrategyEngine
    risk_engine: RiskEngine
    ledger: PortfolioLedger
    orders: OrderManager
    exchange: ExchangeAdapter
    store: StateStore
    journal: JournalWriter
    events: Any = None
    _subscriptions: list[Unsubscribe] = field(default_factory=list, repr=False)

    def default_portfolio(self, name: str = "default") -> Portfolio:
        """The owner's portfolio called *name*; created with the configured initial cash if missing."""
        owner = self.app.execution.owner_id
        for portfolio in self.ledger.portfolios():
            if portfolio.owner_id == owner and portfolio.name == name:
                return portfolio
        return self.ledger.create_portfolio(owner, name, self.app.execution.initial_cash)

    def monitor(self, portfolio_id: str) -> RiskMetrics:
        portfolio = self.ledger.get_portfolio(portfolio_id)
        return self.risk_engine.monitor_risk(portfolio, Account.from_portfolio(portfolio))

    def close(self) -> None:
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()
        self.orders.exchange.close()


def _wire(ctx: TradingContext) -> None:
    journal, events = ctx.journal, ctx.events
    subs = ctx._subscriptions

    subs.append(ctx.strategy_engine.subscribe_to_signals(journal.signal))
    subs.append(ctx.orders.subscribe_to_orders(journal.order))
    subs.append(ctx.orders.subscribe_to_executions(journal.execution))
    subs.append(ctx.risk_engine.subscribe_to_alerts(journal.alert))

    # Every booking republishes all positions; record a symbol only when its mark moves.
    last_marks: dict[str, float] = {}

    def record_marks(portfolio: Portfolio) -> None:
        for position in portfolio.positions.values():
            if last_marks.get(position.symbol) != position.current_price:
                last_marks[position.symbol] = position.current_price
                ctx.risk_engine.record_price(position.symbol, position.current_price)

    subs.append(ctx.ledger.subscribe_to_portfolio(record_marks))

    if events is not None:
        subs.append(ctx.strategy_engine.subscribe_to_signals(events.signal))
        subs.append(ctx.orders.subscribe_to_orders(events.order_update))
        subs.append(ctx.orders.subscribe_to_executions(events.execution))
        subs.append(ctx.ledger.subscribe_to_portfolio(events.portfolio_update))
        subs.append(ctx.risk_engine.subscribe_to_alerts(events.risk_alert))


def build_context(
    app: AppConfig,
    config: EngineConfig,
    *,
    exchange: ExchangeAdapter | None = None,
    events: Any = None,
    clock: Callable[[], datetime] = utc_now,
) -> TradingContext:
    """Construct and wire every service. *exchange* defaults to a PaperExchange."""
    store = StateStore(Path(app.execution.state_path))
    exchange = exchange or PaperExchange(
        balances={"USD": app.execution.initial_cash},
        clock=clock,
    )
    default_exchange = (
        app.execution.default_exchange
        if app.execution.default_exchange != "default"
        else config.orders.default_exchange
    )

    strategy_engine = StrategyEngine(
        build_strategies(config.strategies),
        signal_retention=config.signals.retention,
        history_limit=config.signals.history_limit,
    )
    risk_engine = RiskEngine(
        config.risk.limits,
        margin_rate=config.risk.margin_rate,
        risk_free_rate=config.risk.risk_free_rate,
        price_history_size=config.risk.price_history_size,
        clock=clock,
    )
    ledger = PortfolioLedger(store, margin_rate=config.risk.margin_rate, clock=clock)
    orders = OrderManager(
        ledger,
        risk_engine,
        exchange,
        store=store,
        commission=config.commission,
        market_hours=config.market_hours,
        default_exchange=default_exchange,
        market_spread=config.orders.market_spread,
        default_time_in_force=config.orders.default_time_in_force,
        stale_order_age=config.orders.stale_order_age,
        exchange_timeout=config.orders.exchange_timeout_seconds,
        clock=clock,
    )
    ctx = TradingContext(
        config=config,
        app=app,
        strategy_engine=strategy_engine,
        risk_engine=risk_engine,
        ledger=ledger,
        orders=orders,
        exchange=exchange,
        store=store,
        journal=JournalWriter(app.journal.path, echo_stdout=app.journal.echo_stdout),
        events=events,
    )
    _wire(ctx)
    logger.info(
        "Context ready: %d strategies (%d active), state=%s",
        len(strategy_engine.available_strategies()),
        len(strategy_engine.active_strategies()),
        store.path,
    )
    return ctx
