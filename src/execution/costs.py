"""
Commission and market-hours models used by order validation.

Commission: per-exchange rate in basis points of notional, with an absolute
minimum per fill. Unknown exchanges use the default rate.

Market hours (UTC, simplified):
    crypto    always open
    FX        closed from Friday 22:00 to Sunday 22:00
    equities  Monday-Friday 14:00-21:00
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

DEFAULT_RATES_BPS = {
    "binance": 10.0,
    "kraken": 26.0,
    "coinbase": 50.0,
    "forex.com": 2.0,
    "interactive_brokers": 50.0,
}

FRIDAY, SATURDAY, SUNDAY = 4, 5, 6


@dataclass(frozen=True)
class CommissionModel:
    rates_bps: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_RATES_BPS))
    default_bps: float = 10.0
    minimum: float = 0.01

    def rate(self, exchange: str) -> float:
        """Fractional rate for *exchange* (10 bps -> 0.001)."""
        bps = self.rates_bps.get(exchange.lower(), self.default_bps)
        return bps / 10_000

    def commission(self, exchange: str, notional: float) -> float:
        return max(self.minimum, abs(notional) * self.rate(exchange))


@dataclass(frozen=True)
class MarketHours:
    crypto_assets: tuple[str, ...] = ("BTC", "ETH", "CRYPTO")
    fx_close_hour: int = 22  # Friday close / Sunday reopen, UTC
    equity_open_hour: int = 14
    equity_close_hour: int = 21

    def asset_class(self, symbol: str) -> str:
        upper = symbol.upper()
        if any(asset in upper for asset in self.crypto_assets):
            return "crypto"
        if "/" in symbol:
            return "fx"
        return "equity"

    def is_open(self, symbol: str, at: datetime) -> bool:
        kind = self.asset_class(symbol)
        if kind == "crypto":
            return True
        day, hour = at.weekday(), at.hour
        if kind == "fx":
            if day == FRIDAY and hour >= self.fx_close_hour:
                return False
            if day == SATURDAY:
                return False
            if day == SUNDAY and hour < self.fx_close_hour:
                return False
            return True
        return day < SATURDAY and self.equity_open_hour <= hour < self.equity_close_hour
