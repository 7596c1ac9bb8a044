"""
Error taxonomy for the trading core.

ValidationError    malformed or out-of-policy request; surfaced verbatim, never retried.
RiskRejection      risk policy violation; carries the name of the breached limit.
NotFoundError      unknown strategy, order or portfolio identity.
AdapterError       exchange or persistence failure; logged, not retried by the core.
InvariantViolation programming/usage error (zero stop distance, illegal transition).
"""

from __future__ import annotations


class TradingError(Exception):
    """Base class for every error raised by the trading core."""


class ValidationError(TradingError):
    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors) if errors else [message]


class RiskRejection(TradingError):
    def __init__(self, message: str, limit: str | None = None) -> None:
        super().__init__(message)
        self.limit = limit


class NotFoundError(TradingError, LookupError):
    def __init__(self, kind: str, identity: str) -> None:
        super().__init__(f"{kind} not found: {identity}")
        self.kind = kind
        self.identity = identity


class AdapterError(TradingError):
    """External exchange or persistence failure."""


class InvariantViolation(TradingError, ValueError):
    """Usage error that must fail fast."""
