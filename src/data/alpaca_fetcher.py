"""
Alpaca bar fetcher: implements BarFetcher protocol using alpaca-py SDK.

Maps Alpaca Bar objects to trading_core.contracts.PriceBar (OHLCV, UTC timestamp, symbol).
Symbols with a slash (``BTC/USD``) go to the crypto data client, everything
else to the stock client. Handles pagination via next_page_token.
Free tier uses IEX data for stocks; SIP requires Algo Trader Plus subscription.
"""

import logging
from datetime import datetime, timezone

from trading_core.contracts import PriceBar

from data.fetcher import FetchResult

logger = logging.getLogger("tradedesk.data")

_TIMEFRAME_MAP = {
    "1m": ("Minute", 1),
    "5m": ("Minute", 5),
    "15m": ("Minute", 15),
    "30m": ("Minute", 30),
    "1h": ("Hour", 1),
    "4h": ("Hour", 4),
    "1d": ("Day", 1),
}


def _parse_timeframe(tf_str: str):
    """Convert string timeframe to Alpaca TimeFrame object."""
    from alpaca.data.timeframe import TimeFrame, TimeFrameUnit

    if tf_str not in _TIMEFRAME_MAP:
        raise ValueError(
            f"Unsupported timeframe '{tf_str}'. Supported: {list(_TIMEFRAME_MAP.keys())}"
        )
    unit_str, amount = _TIMEFRAME_MAP[tf_str]
    unit = getattr(TimeFrameUnit, unit_str)
    return TimeFrame(amount, unit)


def is_crypto_symbol(symbol: str) -> bool:
    return "/" in symbol


class AlpacaBarFetcher:
    """
    Fetch OHLCV bars from Alpaca Market Data API.

    Uses StockHistoricalDataClient and CryptoHistoricalDataClient from alpaca-py.
    API keys via constructor (typically from AppConfig, sourced from env vars).
    """

    def __init__(self, api_key: str, api_secret: str) -> None:
        if not api_key or not api_secret:
            raise ValueError(
                "Alpaca API key and secret are required. "
                "Set APCA_API_KEY_ID and APCA_API_SECRET_KEY environment variables."
            )
        try:
            from alpaca.data.historical import CryptoHistoricalDataClient, StockHistoricalDataClient
        except ImportError:
            raise ImportError(
                "alpaca-py is required for AlpacaBarFetcher. "
                "Install with: pip install 'tradedesk-engine[data]'"
            )
        self._client = StockHistoricalDataClient(api_key, api_secret)
        self._crypto_client = CryptoHistoricalDataClient(api_key, api_secret)

    def _request(self, symbol, tf, start, end, limit, feed):
        if is_crypto_symbol(symbol):
            from alpaca.data.requests import CryptoBarsRequest

            params = CryptoBarsRequest(
                symbol_or_symbols=symbol,
                timeframe=tf,
                start=start,
                end=end,
                limit=limit,
            )
            return self._crypto_client.get_crypto_bars(params)

        from alpaca.data.enums import DataFeed
        from alpaca.data.requests import StockBarsRequest

        params = StockBarsRequest(
            symbol_or_symbols=symbol,
            timeframe=tf,
            start=start,
            end=end,
            limit=limit,
            feed=DataFeed(feed.lower()),
        )
        return self._client.get_stock_bars(params)

    def fetch(
        self,
        symbol: str,
        timeframe: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        cursor: str | None = None,
        feed: str = "iex",
    ) -> FetchResult:
        """Fetch bars from Alpaca; normalize timestamps to UTC. Returns FetchResult."""
        tf = _parse_timeframe(timeframe)
        response = self._request(symbol, tf, start, end, limit, feed)
        bars: list[PriceBar] = []
        raw_bars = response.data.get(symbol, []) if hasattr(response, "data") else response.get(symbol, [])
        for alpaca_bar in raw_bars:
            ts = alpaca_bar.timestamp
            if ts.tzinfo is None:
                ts = ts.replace(tzinfo=timezone.utc)
            else:
                ts = ts.astimezone(timezone.utc)
            bars.append(
                PriceBar(
                    symbol=symbol,
                    timestamp=ts,
                    open=float(alpaca_bar.open),
                    high=float(alpaca_bar.high),
                    low=float(alpaca_bar.low),
                    close=float(alpaca_bar.close),
                    volume=float(alpaca_bar.volume),
                )
            )
        next_token = getattr(response, "next_page_token", None)
        logger.info("Fetched %d bars for %s %s", len(bars), symbol, timeframe)
        return FetchResult(
            bars=bars,
            symbol=symbol,
            timeframe=timeframe,
            next_cursor=next_token,
        )
