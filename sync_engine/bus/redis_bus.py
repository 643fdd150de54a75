"""Redis pub/sub event bus for stages running in separate processes."""

import asyncio
import logging
from typing import Optional

import redis.asyncio as redis

from sync_engine import metrics
from sync_engine.bus.base import Handler, MessageBus
from sync_engine.bus.events import EventEnvelope, topic_matches
from sync_engine.config import settings

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "sync:bus:"


class RedisEventBus(MessageBus):
    """Redis PSUBSCRIBE transport.

    Redis glob ``*`` also matches dots, so each delivered message is
    re-checked against the single-segment pattern before dispatch.

    Pub/sub delivers every message to every subscribed process, so each
    stage role must run in exactly one process (see ``worker_roles``).
    At most ``max_concurrency`` handlers run at once; the reader stops
    pulling messages while all slots are busy.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        channel_prefix: str = CHANNEL_PREFIX,
        max_concurrency: Optional[int] = None,
        reconnect_delay: float = 1.0,
    ):
        self.redis_url = redis_url or settings.redis_url
        self.channel_prefix = channel_prefix
        self.reconnect_delay = reconnect_delay
        self._slots = asyncio.Semaphore(max_concurrency or settings.queue_concurrency)
        self._redis: Optional[redis.Redis] = None
        self._pubsub = None
        self._subscriptions: list[tuple[str, Handler]] = []
        self._reader: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = await redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def publish(self, topic: str, envelope: EventEnvelope) -> None:
        client = await self._get_redis()
        await client.publish(self.channel_prefix + topic, envelope.to_json())

    async def subscribe(self, pattern: str, handler: Handler) -> None:
        client = await self._get_redis()
        if self._pubsub is None:
            self._pubsub = client.pubsub()
        self._subscriptions.append((pattern, handler))
        await self._pubsub.psubscribe(self.channel_prefix + pattern)

    async def start(self) -> None:
        if self._reader is None:
            self._reader = asyncio.create_task(self._read_loop())

    async def _resubscribe(self) -> None:
        """Replace a broken pub/sub connection and restore every pattern."""
        if self._pubsub is not None:
            try:
                await self._pubsub.aclose()
            except redis.RedisError:
                logger.debug("Closing broken pub/sub connection failed", exc_info=True)
        client = await self._get_redis()
        self._pubsub = client.pubsub()
        for pattern in dict.fromkeys(p for p, _ in self._subscriptions):
            await self._pubsub.psubscribe(self.channel_prefix + pattern)

    async def _read_loop(self) -> None:
        delay = self.reconnect_delay
        while True:
            if self._pubsub is None:
                await asyncio.sleep(0.5)
                continue
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except redis.RedisError as e:
                logger.warning(f"Bus connection lost ({e}); reconnecting in {delay:.1f}s")
                await asyncio.sleep(delay)
                delay = min(delay * 2, 30.0)
                try:
                    await self._resubscribe()
                except redis.RedisError:
                    logger.warning("Bus reconnect failed", exc_info=True)
                continue
            delay = self.reconnect_delay
            if message is None or message.get("type") != "pmessage":
                continue
            topic = message["channel"][len(self.channel_prefix):]
            try:
                envelope = EventEnvelope.from_json(message["data"])
            except ValueError:
                logger.error(f"Dropping undecodable message on {topic}")
                continue
            # Distinct patterns can both match one channel; dispatch per handler once
            for pattern, handler in self._subscriptions:
                if message["pattern"] == self.channel_prefix + pattern and topic_matches(pattern, topic):
                    await self._slots.acquire()
                    task = asyncio.create_task(self._invoke(topic, handler, envelope))
                    self._inflight.add(task)
                    task.add_done_callback(self._inflight.discard)

    async def _invoke(self, topic: str, handler: Handler, envelope: EventEnvelope) -> None:
        try:
            await handler(envelope)
        except Exception:
            metrics.record_bus_handler_error(topic)
            logger.exception("Handler failed for %s (event %s)", topic, envelope.event_id)
        finally:
            self._slots.release()

    async def close(self) -> None:
        if self._reader:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        if self._redis:
            await self._redis.aclose()
            self._redis = None
