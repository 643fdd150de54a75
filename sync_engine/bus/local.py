"""In-process event bus."""

import asyncio
import logging
from collections import deque

from sync_engine import metrics
from sync_engine.bus.base import Handler, MessageBus
from sync_engine.bus.events import EventEnvelope, topic_matches

logger = logging.getLogger(__name__)


class LocalEventBus(MessageBus):
    """Delivers published envelopes to matching handlers in this process.

    ``publish`` awaits every matching handler concurrently. A handler
    exception is logged and counted; it never reaches the publisher.

    The last ``history_size`` published envelopes are kept for inspection;
    the default keeps none.
    """

    def __init__(self, history_size: int = 0):
        self._subscriptions: list[tuple[str, Handler]] = []
        self.published: deque[tuple[str, EventEnvelope]] = deque(maxlen=history_size)

    async def publish(self, topic: str, envelope: EventEnvelope) -> None:
        self.published.append((topic, envelope))
        handlers = [h for pattern, h in self._subscriptions if topic_matches(pattern, topic)]
        if not handlers:
            logger.debug(f"No subscribers for {topic}")
            return
        await asyncio.gather(*(self._invoke(topic, handler, envelope) for handler in handlers))

    async def subscribe(self, pattern: str, handler: Handler) -> None:
        self._subscriptions.append((pattern, handler))
        logger.debug(f"Subscribed {getattr(handler, '__qualname__', handler)} to {pattern}")

    async def _invoke(self, topic: str, handler: Handler, envelope: EventEnvelope) -> None:
        try:
            await handler(envelope)
        except Exception:
            metrics.record_bus_handler_error(topic)
            logger.exception(
                "Handler %s failed for %s (event %s)",
                getattr(handler, "__qualname__", handler),
                topic,
                envelope.event_id,
            )

    def published_on(self, pattern: str) -> list[EventEnvelope]:
        """Envelopes published on topics matching ``pattern``."""
        return [env for topic, env in self.published if topic_matches(pattern, topic)]

    async def close(self) -> None:
        self._subscriptions.clear()
