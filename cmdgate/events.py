"""Synchronous publish/subscribe for command lifecycle events.

Handlers run in the caller's context at the moment of each transition.
A handler that raises is logged and skipped; it never reaches back into
the engine that emitted the event.
"""

from __future__ import annotations

import threading
from typing import Any, Callable

import structlog

logger = structlog.get_logger()

EventHandler = Callable[[Any], None]


class CommandEvents:
    """Names of all events emitted by the approval workflow."""

    PENDING = "command:pending"
    APPROVED = "command:approved"
    DENIED = "command:denied"
    FAILED = "command:failed"

    ALL = (PENDING, APPROVED, DENIED, FAILED)


class EventNotifier:
    """Fan-out of named events to zero or more subscribers."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event: str, handler: EventHandler) -> None:
        """Register ``handler`` to be called with the payload of each ``event``."""
        with self._lock:
            self._subscribers.setdefault(event, []).append(handler)

    def unsubscribe(self, event: str, handler: EventHandler) -> bool:
        """Remove a handler. Returns False if it was not subscribed."""
        with self._lock:
            handlers = self._subscribers.get(event, [])
            if handler not in handlers:
                return False
            handlers.remove(handler)
            return True

    def emit(self, event: str, payload: Any) -> int:
        """Deliver ``payload`` to every subscriber of ``event``, in subscription order.

        Returns:
            The number of handlers that completed without raising.
        """
        with self._lock:
            handlers = list(self._subscribers.get(event, ()))

        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception("event_subscriber_failed", event_name=event, handler=repr(handler))
                continue
            delivered += 1
        return delivered
