"""Topic-based publish/subscribe transport."""

from sync_engine.bus.base import Handler, MessageBus
from sync_engine.bus.events import EventEnvelope, Stage, build_topic, topic_matches

__all__ = ["EventEnvelope", "Handler", "MessageBus", "Stage", "build_topic", "topic_matches"]
