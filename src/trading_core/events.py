"""
Publish/subscribe channel, one per event type (signals, orders, executions,
portfolio updates, risk alerts).

Delivery is synchronous on the publishing thread, in registration order.
A subscriber that raises is logged and skipped; later subscribers still
receive the event.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Generic, TypeVar

logger = logging.getLogger("tradedesk.events")

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class EventChannel(Generic[T]):
    """Named broadcast channel with per-subscriber failure isolation."""

    def __init__(self, name: str) -> None:
        self.name = name
        # (token, callback); the token identifies one registration.
        self._subscribers: list[tuple[object, Callable[[T], None]]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[T], None]) -> Unsubscribe:
        """Register *callback*; returns a handle that removes it again."""
        token = object()
        with self._lock:
            self._subscribers.append((token, callback))

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers = [s for s in self._subscribers if s[0] is not token]

        return unsubscribe

    def publish(self, event: T) -> int:
        """Deliver *event* to every subscriber. Returns the number of failures."""
        with self._lock:
            subscribers = list(self._subscribers)
        failures = 0
        for _, callback in subscribers:
            try:
                callback(event)
            except Exception:
                failures += 1
                logger.exception("Subscriber %r on channel %s failed", callback, self.name)
        return failures

    def __len__(self) -> int:
        return len(self._subscribers)
