"""
Human-readable engine output for the terminal.

Every CLI command uses these formatters; the journal receives the same data.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from backtest.runner import BacktestResult
    from execution.ledger import PnLSummary, PortfolioPerformance, RebalanceOrder
    from execution.models import ExecutionReport, ExecutionStats, Order, OrderValidation
    from trading_core.contracts import Portfolio, Signal
    from trading_core.risk_engine import RiskMetrics


def _fmt_level(value: float | None) -> str:
    return f"{value:.2f}" if value is not None else "-"


def format_signal(signal: Signal) -> str:
    """One line per signal with its reasoning and bracket levels."""
    lines = [
        f"  {signal.type.value.upper():4s} {signal.symbol} @ {signal.price:.2f}  "
        f"[{signal.strategy}] strength {signal.strength:.1f}  confidence {signal.confidence:.2f}",
        f"       Reason : {signal.reason}",
    ]
    if signal.stop_loss is not None or signal.take_profit is not None:
        lines.append(f"       Stop   : {_fmt_level(signal.stop_loss)}  |  Target: {_fmt_level(signal.take_profit)}")
    return "\n".join(lines)


def format_signals(symbol: str, timeframe: str, bars_seen: int, signals: Sequence[Signal]) -> str:
    lines = [f"=== Signals: {symbol} {timeframe} ({bars_seen} bars) ==="]
    if signals:
        lines.extend(format_signal(s) for s in signals)
    else:
        lines.append("  No signals on the latest bar.")
    lines.append("===")
    return "\n".join(lines)


def format_backtest_summary(result: BacktestResult) -> str:
    """Format backtest result summary."""
    period = (
        f"{result.start_time.isoformat()} -> {result.end_time.isoformat()}"
        if result.start_time and result.end_time
        else "n/a"
    )
    lines = [
        f"=== Backtest: {result.strategy} on {result.symbol} ===",
        f"Period       : {period}",
        f"Initial cash : ${result.initial_balance:,.2f}",
        f"Final cash   : ${result.final_balance:,.2f}",
        f"Return       : {result.total_return_pct:+.2f}%",
        f"Trades       : {result.total_trades} (W:{result.win_count} / L:{result.loss_count})",
        f"Win rate     : {result.win_rate:.1f}%",
        f"Profit factor: {result.profit_factor:.2f}",
        f"Max drawdown : {result.max_drawdown:.2f}%",
        f"Sharpe       : {result.sharpe_ratio:.2f}",
    ]
    if result.trades:
        lines.append("")
        for i, t in enumerate(result.trades, 1):
            lines.append(f"  Trade #{i}: {t.side.value} {t.quantity:.4f} | entry {t.entry_price:.2f} @ {t.entry_time.isoformat()}")
            lines.append(f"            exit  {t.exit_price:.2f} @ {t.exit_time.isoformat()} | PnL ${t.pnl:+.2f} ({t.pnl_percent:+.2f}%)")
    if result.open_position:
        pos = result.open_position
        lines.append(f"  Open       : {pos.side.value} {pos.quantity:.4f} @ {pos.entry_price:.2f}")
    lines.append("===")
    return "\n".join(lines)


def format_portfolio(portfolio: Portfolio) -> str:
    """Cash, totals and every open position."""
    lines = [
        f"=== Portfolio: {portfolio.name} ({portfolio.id}) ===",
        f"Cash         : ${portfolio.cash_balance:,.2f}",
        f"Total value  : ${portfolio.total_value:,.2f}",
        f"Return       : {portfolio.total_return:+,.2f} ({portfolio.total_return_percent:+.2f}%)",
        f"Day change   : {portfolio.day_change:+,.2f} ({portfolio.day_change_percent:+.2f}%)",
        f"Margin used  : ${portfolio.margin_used:,.2f}  |  Free: ${portfolio.free_margin:,.2f}",
        f"PnL          : unrealized {portfolio.unrealized_pnl:+,.2f}  |  realized {portfolio.realized_pnl:+,.2f}",
    ]
    if portfolio.positions:
        lines.append("")
        for pos in portfolio.positions.values():
            lines.append(
                f"  {pos.symbol:10s} {pos.quantity:.6g} @ avg {pos.avg_price:.2f}  "
                f"mark {pos.current_price:.2f}  value {pos.market_value:,.2f}  "
                f"PnL {pos.unrealized_pnl:+,.2f} ({pos.unrealized_pnl_percent:+.2f}%)"
            )
    else:
        lines.append("Positions    : flat (no open positions)")
    lines.append("===")
    return "\n".join(lines)


def format_validation(validation: OrderValidation) -> str:
    lines = [
        f"  Estimate     : price {validation.estimated_price:.2f}  cost ${validation.estimated_cost:,.2f}  "
        f"commission ${validation.estimated_commission:,.2f}",
        f"  Risk         : {validation.risk.level.value} ({validation.risk.position_size_percent:.2f}% of portfolio)",
    ]
    for factor in validation.risk.factors:
        lines.append(f"    - {factor}")
    for error in validation.errors:
        lines.append(f"  ✗ {error}")
    for warning in validation.warnings:
        lines.append(f"  ! {warning}")
    return "\n".join(lines)


def format_execution(report: ExecutionReport) -> str:
    lines = [f"  [{report.status.value.upper()}] {report.message}"]
    if report.order_id:
        lines.append(f"  Order        : {report.order_id}")
    if report.executed_quantity:
        lines.append(
            f"  Executed     : {report.side.value} {report.executed_quantity:.6g} {report.symbol} "
            f"@ {report.avg_price:.2f} (value ${report.total_value:,.2f}, commission ${report.commission:,.2f})"
        )
    return "\n".join(lines)


def format_order(order: Order) -> str:
    price = f" @ {order.price:.2f}" if order.price is not None else ""
    stop = f" stop {order.stop_price:.2f}" if order.stop_price is not None else ""
    return (
        f"  {order.id}  {order.status.value:16s} {order.side.value:4s} {order.type.value:10s} "
        f"{order.symbol} {order.filled_quantity:.6g}/{order.quantity:.6g}{price}{stop}  "
        f"v{order.version}  {order.created_at.isoformat()}"
    )


def format_orders(orders: Sequence[Order]) -> str:
    if not orders:
        return "  No orders."
    return "\n".join(format_order(o) for o in orders)


def format_execution_stats(stats: ExecutionStats) -> str:
    return "\n".join([
        f"Orders       : {stats.total_orders} (filled {stats.filled_orders}, canceled {stats.canceled_orders}, "
        f"rejected {stats.rejected_orders})",
        f"Fill rate    : {stats.fill_rate:.1f}%",
        f"Volume       : ${stats.total_volume:,.2f}  |  Commissions: ${stats.total_commissions:,.2f}",
    ])


def format_pnl(portfolio_id: str, pnl: PnLSummary) -> str:
    return (
        f"Marked {portfolio_id}: unrealized {pnl.unrealized:+,.2f}  realized {pnl.realized:+,.2f}  "
        f"total {pnl.total:+,.2f}"
    )


def format_risk(metrics: RiskMetrics) -> str:
    """Risk snapshot plus any alerts raised by this run."""
    lines = [
        "=== Risk ===",
        f"Exposure     : ${metrics.total_exposure:,.2f}",
        f"Leverage     : {metrics.leverage:.2f}x",
        f"Margin util. : {metrics.margin_utilization:.2f}%",
        f"VaR (95%)    : ${metrics.value_at_risk:,.2f}",
        f"Max drawdown : {metrics.max_drawdown:.2f}%",
        f"Sharpe       : {metrics.sharpe_ratio:.2f}",
        f"Diversif.    : {metrics.diversification_ratio:.2f}",
        f"Risk score   : {metrics.risk_score:.1f}/100",
    ]
    if metrics.alerts:
        lines.append("")
        for alert in metrics.alerts:
            lines.append(f"  [{alert.severity.value.upper()}] {alert.message}")
    lines.append("===")
    return "\n".join(lines)


def format_performance(perf: PortfolioPerformance) -> str:
    return "\n".join([
        f"=== Performance ({perf.period}) ===",
        f"Value        : ${perf.start_value:,.2f} -> ${perf.end_value:,.2f}",
        f"Return       : {perf.absolute_return:+,.2f} ({perf.percent_return:+.2f}%)",
        f"Volatility   : {perf.volatility:.2f}  |  Sharpe: {perf.sharpe_ratio:.2f}  |  Max DD: {perf.max_drawdown:.2f}%",
        f"Trades       : {perf.total_trades}  win rate {perf.win_rate:.1f}%  profit factor {perf.profit_factor:.2f}",
        f"Best / worst : {perf.best_trade:+,.2f} / {perf.worst_trade:+,.2f}  |  avg {perf.avg_trade:+,.2f}",
        "===",
    ])


def format_rebalance(orders: Sequence[RebalanceOrder]) -> str:
    if not orders:
        return "  Portfolio is within threshold of its targets; nothing to do."
    return "\n".join(
        f"  {o.side.value.upper():4s} {o.quantity:.6g} {o.symbol} (~${o.estimated_value:,.2f}): {o.reason}"
        for o in orders
    )
