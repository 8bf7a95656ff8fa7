"""Synchronous in-process bus for post-commit domain events."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable

from loguru import logger

Handler = Callable[[Any], None]


class EventBus:
    """Fan committed lifecycle events out to their subscribers.

    Handlers run on the publishing thread, in subscription order. Events are
    published after the store has committed, so a failing handler is logged
    and skipped rather than surfacing as an error for a write that succeeded.
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def publish(self, event: Any) -> int:
        """Deliver ``event`` and return how many handlers failed."""
        name = type(event).__name__
        handlers = self._handlers.get(type(event), [])
        logger.debug("Publishing {} to {} handler(s)", name, len(handlers))
        failures = 0
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                failures += 1
                logger.opt(exception=True).error(
                    "Handler {} failed for {}", getattr(handler, "__name__", handler), name
                )
        return failures
