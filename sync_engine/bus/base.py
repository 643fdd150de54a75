"""Message bus interface."""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from sync_engine.bus.events import EventEnvelope

Handler = Callable[[EventEnvelope], Awaitable[None]]


class MessageBus(ABC):
    """Publish/subscribe transport shared by every stage."""

    @abstractmethod
    async def publish(self, topic: str, envelope: EventEnvelope) -> None:
        """Publish an envelope on a concrete topic."""

    @abstractmethod
    async def subscribe(self, pattern: str, handler: Handler) -> None:
        """Register ``handler`` for every topic matching ``pattern``."""

    async def start(self) -> None:
        """Begin delivering messages. No-op for in-process buses."""

    async def close(self) -> None:
        """Release transport resources."""
