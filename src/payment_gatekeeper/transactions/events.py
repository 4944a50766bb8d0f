"""In-process event bus for transaction events."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Awaitable[Any]]


class EventBus:
    """Publish/subscribe bus keyed by event type.

    Subscribers are registered at composition time. Publishing awaits every
    handler of the event's exact type in subscription order; a handler that
    raises is logged and does not stop the remaining handlers.
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: EventHandler) -> None:
        """Register a handler for an event type."""
        self._handlers[event_type].append(handler)

    def handlers_for(self, event_type: type) -> list[EventHandler]:
        """Return the handlers registered for an event type."""
        return list(self._handlers.get(event_type, []))

    async def publish(self, event: object) -> int:
        """Deliver an event to its subscribers.

        Returns:
            Number of handlers that completed without raising.
        """
        delivered = 0
        for handler in self.handlers_for(type(event)):
            try:
                await handler(event)
                delivered += 1
            except Exception as e:
                logger.exception(
                    "Event handler %s failed for %s: %s",
                    getattr(handler, "__qualname__", repr(handler)),
                    type(event).__name__,
                    e,
                )
        return delivered
