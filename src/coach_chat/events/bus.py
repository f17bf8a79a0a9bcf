"""Event delivery from the engine to presentation and other observers."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable

from coach_chat.types import ChatEvent, EventType

_logger = logging.getLogger(__name__)

WILDCARD = "*"

Handler = Callable[[ChatEvent], Any]


class EventBus:
    """Typed pub/sub with a ``"*"`` wildcard.

    Handlers run one after another, typed subscribers first and then
    wildcard ones, each in subscription order.  ``emit()`` returns only
    after every handler has seen the event, so a single emitter's events
    (for example the ``message.updated`` snapshots of one reply) reach each
    handler in the order they were produced.  A failing handler is logged
    and skipped.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}

    def subscribe(self, event_type: EventType | str, handler: Handler) -> Callable[[], None]:
        """Register *handler*; returns a function that unsubscribes it."""
        key = event_type.value if isinstance(event_type, EventType) else str(event_type)
        handlers = self._handlers.setdefault(key, [])
        handlers.append(handler)

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def emit(self, event: ChatEvent) -> None:
        targets = self._handlers.get(event.type.value, []) + self._handlers.get(WILDCARD, [])
        for handler in targets:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                _logger.exception(
                    "Handler %s failed on %s",
                    getattr(handler, "__name__", type(handler).__name__),
                    event.type.value,
                )

    async def publish(self, event_type: EventType, **data: Any) -> None:
        await self.emit(ChatEvent(type=event_type, data=data))
