"""
Data pipeline: fetch OHLCV, normalize to UTC, persist bars, serve strategy windows.

Depends on trading_core.contracts for PriceBar; no dependency from trading_core back to data.
"""

from data.bar_store import BarStore
from data.fetcher import BarFetcher, CsvBarFetcher, FetchResult, MockBarFetcher

__all__ = [
    "BarFetcher",
    "BarStore",
    "CsvBarFetcher",
    "FetchResult",
    "MockBarFetcher",
]


def get_alpaca_fetcher(api_key: str, api_secret: str):
    """Lazy import to avoid requiring alpaca-py when not used."""
    from data.alpaca_fetcher import AlpacaBarFetcher

    return AlpacaBarFetcher(api_key, api_secret)
