"""
Backtest engine: replay bars through a strategy, simulate paper positions, report metrics.
"""

from backtest.runner import BacktestResult, BacktestTrade, OpenPaperPosition, run_backtest

__all__ = ["BacktestResult", "BacktestTrade", "OpenPaperPosition", "run_backtest"]
