"""In-process publish/subscribe for pipeline notifications.

Events are fire-and-forget. Nothing is persisted, retried or acknowledged:
a handler that is not subscribed when an event is published never sees it.
Durable work always goes through the broker instead.
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable


logger = logging.getLogger(__name__)


SCRAPE_REQUESTED = "scrape.requested"
INSIGHT_NEW = "insight.new"
POST_GENERATED = "post.generated"


@dataclass(frozen=True)
class Event:
    topic: str
    payload: Any
    published_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


EventHandler = Callable[[Event], Any]


class EventBus:
    """Delivers events to the handlers subscribed to their topic.

    Handlers are called one after another in the order they subscribed.
    They may be plain functions or coroutines. A handler that raises is
    logged and skipped; the publisher and the remaining handlers are not
    affected.

    Examples:

        >>> bus = EventBus()
        >>> @bus.on("insight.new")
        ... async def store(event: Event) -> None:
        ...     print(event.payload["project"])
        >>> await bus.publish("insight.new", {"project": "p1", "data": {}})
        p1
        1
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def subscribe(self, topic: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe ``handler`` to ``topic``.

        Returns:
            Callable[[], None]: Removes this subscription when called.
        """
        if not topic or not isinstance(topic, str):
            raise ValueError("Topic must be a non-empty string")
        if not callable(handler):
            raise ValueError("Event handler must be callable")

        self._handlers.setdefault(topic, []).append(handler)
        logger.debug(f"Subscribed {getattr(handler, '__qualname__', handler)} to {topic!r}")
        return lambda: self.unsubscribe(topic, handler)

    def on(self, topic: str) -> Callable[[EventHandler], EventHandler]:
        def decorator(handler: EventHandler) -> EventHandler:
            self.subscribe(topic, handler)
            return handler

        return decorator

    def unsubscribe(self, topic: str, handler: EventHandler) -> bool:
        handlers = self._handlers.get(topic, [])
        if handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del self._handlers[topic]
        return True

    def subscribers(self, topic: str) -> list[EventHandler]:
        return list(self._handlers.get(topic, []))

    async def publish(self, topic: str, payload: Any = None) -> int:
        """Deliver an event to the current subscribers of ``topic``.

        Returns:
            int: Number of handlers that processed the event without error.
        """
        event = Event(topic=topic, payload=payload)
        # Handlers subscribed during delivery only see later events
        handlers = self.subscribers(topic)
        if not handlers:
            logger.debug(f"No subscribers for {topic!r}, event dropped")
            return 0

        delivered = 0
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    f"Handler {getattr(handler, '__qualname__', handler)} "
                    f"failed on {topic!r} event"
                )
                continue
            delivered += 1
        return delivered
