"""Explicit service context: every engine service built once and passed to callers."""

from engine.context import TradingContext, build_context

__all__ = ["TradingContext", "build_context"]
