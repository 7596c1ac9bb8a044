"""
CLI entry point: tradedesk ingest | signals | backtest | portfolio | order | mark | risk | rebalance | health.

Every command loads config from --config (default config.yaml), builds a
TradingContext on the SQLite state store, prints human-readable output
and journals events.
"""

import logging
import sys
from datetime import datetime, timedelta, timezone

import click
from dotenv import load_dotenv

from config import load_config, load_engine_config

load_dotenv()

logger = logging.getLogger("tradedesk")

ORDER_TYPES = ["market", "limit", "stop", "stop_limit"]
TIME_IN_FORCE = ["GTC", "IOC", "FOK", "DAY"]
STATUSES = ["pending", "submitted", "partially_filled", "filled", "canceled", "rejected", "expired"]


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s  %(message)s",
        stream=sys.stderr,
    )


def _parse_date(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    raise SystemExit(1)


def _bar_store(cfg):
    from data.bar_store import BarStore

    return BarStore(cfg.data.bar_store_path)


def _latest_prices(cfg, symbols) -> dict[str, float]:
    """Last stored close per symbol on the configured timeframe."""
    store = _bar_store(cfg)
    prices: dict[str, float] = {}
    for symbol in symbols:
        close = store.latest_close(symbol, cfg.timeframe)
        if close is not None:
            prices[symbol] = close
    return prices


def _context(ctx: click.Context):
    """Build the TradingContext once per invocation; closed when the command ends."""
    if "trading" in ctx.obj:
        return ctx.obj["trading"]

    from cli.structured_log import StructuredEventLogger
    from engine import build_context
    from execution.exchange import PaperExchange

    cfg = load_config(ctx.obj["config_path"])
    engine_cfg = load_engine_config(overrides_path=cfg.engine_config_path or None)
    exchange = PaperExchange(
        _latest_prices(cfg, cfg.symbols),
        balances={"USD": cfg.execution.initial_cash},
    )
    events = StructuredEventLogger(
        enabled=cfg.alerting.structured_logs,
        webhook_url=cfg.alerting.webhook_url,
    )
    trading = build_context(cfg, engine_cfg, exchange=exchange, events=events)
    ctx.obj["trading"] = trading
    ctx.call_on_close(trading.close)
    return trading


def _portfolio_id(trading, portfolio_id: str | None) -> str:
    return portfolio_id or trading.default_portfolio().id


@click.group()
@click.option("--config", "config_path", default="config.yaml", help="Path to config file.")
@click.pass_context
def cli(ctx: click.Context, config_path: str) -> None:
    """tradedesk: strategy signals, pre-trade risk, order lifecycle and a portfolio ledger."""
    _setup_logging()
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# ---------- tradedesk ingest ----------


@cli.command()
@click.option("--symbol", default=None, help="Symbol to fetch (default: every configured symbol).")
@click.option("--days", default=None, type=int, help="Number of calendar days to fetch (default: 30 for intraday, 365 for daily).")
@click.option("--start", "start_str", default=None, help="Start date (ISO, e.g. 2024-01-01).")
@click.option("--end", "end_str", default=None, help="End date (ISO, e.g. 2024-02-01).")
@click.option("--timeframe", "tf_override", default=None, help="Override timeframe (e.g. 1d, 15m). Defaults to config value.")
@click.option("--csv", "csv_path", default=None, type=click.Path(exists=True, dir_okay=False), help="Import bars from a CSV export instead of Alpaca.")
@click.pass_context
def ingest(
    ctx: click.Context,
    symbol: str | None,
    days: int | None,
    start_str: str | None,
    end_str: str | None,
    tf_override: str | None,
    csv_path: str | None,
) -> None:
    """Fetch bars (Alpaca or CSV) and store locally."""
    cfg = load_config(ctx.obj["config_path"])
    from data import CsvBarFetcher, get_alpaca_fetcher

    if csv_path:
        fetcher = CsvBarFetcher(csv_path)
    else:
        try:
            fetcher = get_alpaca_fetcher(cfg.data.api_key, cfg.data.api_secret)
        except (ValueError, ImportError) as e:
            _fail(str(e))
    store = _bar_store(cfg)

    tf = tf_override or cfg.timeframe
    if days is None:
        days = 365 if tf == "1d" else 30

    end_dt = _parse_date(end_str) if end_str else datetime.now(timezone.utc)
    start_dt = _parse_date(start_str) if start_str else end_dt - timedelta(days=days)
    if csv_path and not start_str:
        start_dt = None

    symbols = [symbol] if symbol else list(cfg.symbols)
    if csv_path and len(symbols) > 1:
        _fail("--csv imports one symbol; pass --symbol")

    for sym in symbols:
        click.echo(f"Fetching {sym} {tf} bars ...")
        result = fetcher.fetch(sym, tf, start=start_dt, end=end_dt)
        if result.bars:
            store.write_bars(sym, tf, result.bars)
            click.echo(f"Stored {len(result.bars)} bars in {cfg.data.bar_store_path}")
            click.echo(f"  Range: {result.bars[0].timestamp.isoformat()} -> {result.bars[-1].timestamp.isoformat()}")
            click.echo(f"  Total {tf} bars in store: {store.count_bars(sym, tf)}")
        else:
            click.echo("No bars returned. Check symbol, timeframe, date range, and API keys.")


# ---------- tradedesk signals ----------


@cli.command()
@click.option("--symbol", default=None, help="Symbol to analyse (default: every configured symbol).")
@click.option("--strategy", "strategy_name", default=None, help="Run one strategy instead of every active one.")
@click.option("--window", default=200, help="Number of stored bars handed to the strategies.")
@click.pass_context
def signals(ctx: click.Context, symbol: str | None, strategy_name: str | None, window: int) -> None:
    """Run strategies over the latest stored bars and print their signals."""
    trading = _context(ctx)
    cfg = trading.app
    store = _bar_store(cfg)
    symbols = [symbol] if symbol else list(cfg.symbols)

    market_data = {s: store.get_last_bars(s, cfg.timeframe, window) for s in symbols}
    market_data = {s: bars for s, bars in market_data.items() if bars}
    if not market_data:
        _fail(f"No {cfg.timeframe} bars in store. Run: tradedesk ingest")

    if strategy_name:
        from trading_core.errors import NotFoundError

        try:
            found = [sig for bars in market_data.values() for sig in trading.strategy_engine.run_strategy(strategy_name, bars)]
        except NotFoundError as e:
            _fail(str(e))
    else:
        found = trading.strategy_engine.run_all_active_strategies(market_data)

    from cli.output import format_signals

    for sym, bars in market_data.items():
        click.echo(format_signals(sym, cfg.timeframe, len(bars), [s for s in found if s.symbol == sym]))


# ---------- tradedesk backtest ----------


@cli.command()
@click.option("--strategy", "strategy_name", default=None, help="Strategy to test (default: every active strategy).")
@click.option("--symbol", default=None, help="Symbol to test (default: primary configured symbol).")
@click.option("--start", "start_str", default=None, help="Start date filter (ISO).")
@click.option("--end", "end_str", default=None, help="End date filter (ISO).")
@click.pass_context
def backtest(ctx: click.Context, strategy_name: str | None, symbol: str | None, start_str: str | None, end_str: str | None) -> None:
    """Backtest strategies on stored bars and journal every result."""
    trading = _context(ctx)
    cfg = trading.app
    sym = symbol or cfg.symbol
    bars = _bar_store(cfg).get_bars(
        sym,
        cfg.timeframe,
        since=_parse_date(start_str) if start_str else None,
        until=_parse_date(end_str) if end_str else None,
    )
    if not bars:
        _fail(f"No bars in store for {sym} {cfg.timeframe}. Run: tradedesk ingest")

    names = [strategy_name] if strategy_name else trading.strategy_engine.active_strategies()
    from cli.output import format_backtest_summary
    from trading_core.errors import NotFoundError

    for name in names:
        try:
            result = trading.strategy_engine.backtest_strategy(name, bars, cfg.backtest.initial_balance)
        except NotFoundError as e:
            _fail(str(e))
        trading.journal.backtest(
            name,
            sym,
            "result",
            {
                "trades": result.total_trades,
                "return_pct": result.total_return_pct,
                "win_rate": result.win_rate,
                "max_drawdown": result.max_drawdown,
            },
        )
        click.echo(format_backtest_summary(result))


# ---------- tradedesk portfolio ----------


@cli.group()
def portfolio() -> None:
    """Create and inspect portfolios."""


@portfolio.command("create")
@click.argument("name")
@click.option("--cash", type=float, default=None, help="Initial cash (default: execution.initial_cash).")
@click.pass_context
def portfolio_create(ctx: click.Context, name: str, cash: float | None) -> None:
    trading = _context(ctx)
    from cli.output import format_portfolio
    from trading_core.errors import ValidationError

    initial = cash if cash is not None else trading.app.execution.initial_cash
    try:
        created = trading.ledger.create_portfolio(trading.app.execution.owner_id, name, initial)
    except ValidationError as e:
        _fail(str(e))
    click.echo(format_portfolio(created))


@portfolio.command("show")
@click.argument("portfolio_id", required=False)
@click.option("--period", type=click.Choice(["1d", "1w", "1m", "3m", "1y", "all"]), default="all")
@click.pass_context
def portfolio_show(ctx: click.Context, portfolio_id: str | None, period: str) -> None:
    trading = _context(ctx)
    from cli.output import format_execution_stats, format_performance, format_portfolio
    from trading_core.errors import NotFoundError

    try:
        pid = _portfolio_id(trading, portfolio_id)
        held = trading.ledger.get_portfolio(pid)
    except NotFoundError as e:
        _fail(str(e))
    click.echo(format_portfolio(held))
    click.echo(format_performance(trading.ledger.performance(pid, period)))
    click.echo(format_execution_stats(trading.orders.execution_stats(pid)))


# ---------- tradedesk order ----------


@cli.group()
def order() -> None:
    """Place, fill, cancel and list orders."""


@order.command("place")
@click.argument("symbol")
@click.argument("side", type=click.Choice(["buy", "sell"]))
@click.argument("quantity", type=float)
@click.option("--type", "order_type", type=click.Choice(ORDER_TYPES), default="market")
@click.option("--price", type=float, default=None, help="Limit price.")
@click.option("--stop-price", type=float, default=None)
@click.option("--tif", type=click.Choice(TIME_IN_FORCE), default=None, help="Time in force (default from engine config).")
@click.option("--stop-loss", type=float, default=None, help="Attach a protective stop once filled.")
@click.option("--take-profit", type=float, default=None, help="Attach a take-profit limit once filled.")
@click.option("--portfolio", "portfolio_id", default=None)
@click.option("--dry-run", is_flag=True, default=False, help="Validate only.")
@click.pass_context
def order_place(
    ctx: click.Context,
    symbol: str,
    side: str,
    quantity: float,
    order_type: str,
    price: float | None,
    stop_price: float | None,
    tif: str | None,
    stop_loss: float | None,
    take_profit: float | None,
    portfolio_id: str | None,
    dry_run: bool,
) -> None:
    """Validate and submit an order; market orders fill at the estimated price."""
    trading = _context(ctx)
    from cli.output import format_execution, format_validation
    from execution.models import ExecutionStatus, OrderRequest, OrderType, TimeInForce
    from trading_core.contracts import Side

    request = OrderRequest(
        portfolio_id=_portfolio_id(trading, portfolio_id),
        symbol=symbol,
        side=Side(side),
        type=OrderType(order_type),
        quantity=quantity,
        price=price,
        stop_price=stop_price,
        time_in_force=TimeInForce(tif) if tif else None,
        stop_loss=stop_loss,
        take_profit=take_profit,
    )
    validation = trading.orders.validate_order(request)
    click.echo(f"=== Order: {side} {quantity:g} {symbol} ({order_type}) ===")
    click.echo(format_validation(validation))
    if dry_run:
        raise SystemExit(0 if validation.valid else 1)

    report = trading.orders.execute_order(request)
    click.echo(format_execution(report))
    if report.status is ExecutionStatus.FAILED:
        trading.events.error(report.message)
        raise SystemExit(1)


@order.command("fill")
@click.argument("order_id")
@click.argument("quantity", type=float)
@click.argument("price", type=float)
@click.pass_context
def order_fill(ctx: click.Context, order_id: str, quantity: float, price: float) -> None:
    """Record a (partial) fill reported by the venue."""
    trading = _context(ctx)
    from cli.output import format_execution
    from trading_core.errors import TradingError

    try:
        report = trading.orders.process_fill(order_id, quantity, price)
    except (TradingError, ValueError) as e:
        _fail(str(e))
    click.echo(format_execution(report))


@order.command("cancel")
@click.argument("order_ids", nargs=-1, required=True)
@click.pass_context
def order_cancel(ctx: click.Context, order_ids: tuple[str, ...]) -> None:
    trading = _context(ctx)
    ok, failed = trading.orders.cancel_orders(order_ids)
    for oid in ok:
        click.echo(f"  Canceled {oid}")
    for oid in failed:
        click.echo(f"  Could not cancel {oid}")
    if failed:
        raise SystemExit(1)


@order.command("list")
@click.option("--portfolio", "portfolio_id", default=None)
@click.option("--status", type=click.Choice(STATUSES), default=None)
@click.option("--symbol", default=None)
@click.option("--limit", default=20, help="Maximum orders to show (0 = all).")
@click.pass_context
def order_list(ctx: click.Context, portfolio_id: str | None, status: str | None, symbol: str | None, limit: int) -> None:
    trading = _context(ctx)
    from cli.output import format_orders
    from execution.models import OrderStatus

    orders = trading.orders.orders(
        _portfolio_id(trading, portfolio_id),
        status=OrderStatus(status) if status else None,
        symbol=symbol,
        limit=limit,
    )
    click.echo(format_orders(orders))


@order.command("expire")
@click.option("--hours", type=float, default=None, help="Maximum age (default from engine config).")
@click.pass_context
def order_expire(ctx: click.Context, hours: float | None) -> None:
    """Expire open orders that outlived their time in force."""
    trading = _context(ctx)
    expired = trading.orders.expire_stale_orders(timedelta(hours=hours) if hours is not None else None)
    click.echo(f"Expired {len(expired)} order(s)")


# ---------- tradedesk mark / risk / rebalance ----------


@cli.command()
@click.option("--portfolio", "portfolio_id", default=None)
@click.pass_context
def mark(ctx: click.Context, portfolio_id: str | None) -> None:
    """Mark open positions to the latest stored closes."""
    trading = _context(ctx)
    from cli.output import format_pnl

    pid = _portfolio_id(trading, portfolio_id)
    held = trading.ledger.get_portfolio(pid)
    prices = _latest_prices(trading.app, held.positions)
    missing = sorted(set(held.positions) - set(prices))
    for sym in missing:
        click.echo(f"  No stored price for {sym}; keeping last mark")
    click.echo(format_pnl(pid, trading.ledger.mark_to_market(pid, prices)))


@cli.command()
@click.option("--portfolio", "portfolio_id", default=None)
@click.pass_context
def risk(ctx: click.Context, portfolio_id: str | None) -> None:
    """Portfolio risk snapshot and alerts."""
    trading = _context(ctx)
    from cli.output import format_risk

    click.echo(format_risk(trading.monitor(_portfolio_id(trading, portfolio_id))))


@cli.command()
@click.argument("targets", nargs=-1, required=True)
@click.option("--portfolio", "portfolio_id", default=None)
@click.option("--execute", is_flag=True, default=False, help="Submit the rebalance orders as market orders.")
@click.pass_context
def rebalance(ctx: click.Context, targets: tuple[str, ...], portfolio_id: str | None, execute: bool) -> None:
    """Compute (and optionally submit) orders toward SYMBOL=PERCENT targets."""
    trading = _context(ctx)
    from cli.output import format_execution, format_rebalance
    from execution.models import OrderRequest, OrderType
    from trading_core.errors import ValidationError

    weights: dict[str, float] = {}
    for item in targets:
        sym, sep, pct = item.partition("=")
        try:
            weights[sym] = float(pct)
        except ValueError:
            _fail(f"Target must look like SYMBOL=PERCENT, got '{item}'")
        if not sep or not sym:
            _fail(f"Target must look like SYMBOL=PERCENT, got '{item}'")

    pid = _portfolio_id(trading, portfolio_id)
    try:
        orders = trading.ledger.rebalance(pid, weights, _latest_prices(trading.app, weights))
    except ValidationError as e:
        _fail(str(e))
    click.echo(format_rebalance(orders))

    if execute:
        # sells first to free cash for the buys
        for ro in sorted(orders, key=lambda o: o.side.value != "sell"):
            report = trading.orders.execute_order(
                OrderRequest(portfolio_id=pid, symbol=ro.symbol, side=ro.side, type=OrderType.MARKET, quantity=ro.quantity)
            )
            click.echo(format_execution(report))


# ---------- tradedesk health ----------


@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Check system health: config, engine config, state DB, bar data.

    Exit code 0 = healthy, 1 = unhealthy. Suitable for a container HEALTHCHECK.
    """
    checks: list[tuple[str, bool, str]] = []

    try:
        cfg = load_config(ctx.obj["config_path"])
        checks.append(("config", True, f"loaded ({', '.join(cfg.symbols)} {cfg.timeframe})"))
    except Exception as e:
        checks.append(("config", False, str(e)))
        _print_health(checks)
        raise SystemExit(1)

    try:
        engine_cfg = load_engine_config(overrides_path=cfg.engine_config_path or None)
        enabled = sum(1 for s in engine_cfg.strategies.values() if s.enabled)
        checks.append(("engine_config", True, f"validated ({enabled} of {len(engine_cfg.strategies)} strategies enabled)"))
    except Exception as e:
        checks.append(("engine_config", False, str(e)))

    try:
        from execution.store import StateStore

        state = StateStore(cfg.execution.state_path)
        checks.append(("state", True, f"{len(state.portfolio_ids())} portfolio(s) in {state.path}"))
    except Exception as e:
        checks.append(("state", False, str(e)))

    try:
        store = _bar_store(cfg)
        counts = {sym: store.count_bars(sym, cfg.timeframe) for sym in cfg.symbols}
        empty = [sym for sym, n in counts.items() if n == 0]
        if empty:
            checks.append(("bars", False, f"no {cfg.timeframe} bars for {', '.join(empty)}"))
        else:
            checks.append(("bars", True, ", ".join(f"{sym}: {n}" for sym, n in counts.items())))
    except Exception as e:
        checks.append(("bars", False, str(e)))

    _print_health(checks)
    healthy = all(ok for _, ok, _ in checks)
    raise SystemExit(0 if healthy else 1)


def _print_health(checks: list[tuple[str, bool, str]]) -> None:
    for name, ok, detail in checks:
        status = "OK" if ok else "FAIL"
        click.echo(f"  [{status}] {name}: {detail}")
    healthy = all(ok for _, ok, _ in checks)
    click.echo(f"\nHealth: {'HEALTHY' if healthy else 'UNHEALTHY'}")


if __name__ == "__main__":
    cli()
