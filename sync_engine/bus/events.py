"""Event envelope and topic naming.

Topics are ``{stage}.{entityType}`` (stage fan-out between components) or
``{integrationType}.{stage}.{entityType}`` (integration-specific work such
as sync jobs). Subscribers match with a single-segment ``*`` wildcard.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from sync_engine.utils import new_id, utcnow


class Stage(str, Enum):
    """Pipeline stages, in flow order."""

    SYNC = "sync"
    FETCHED = "fetched"
    PROCESSED = "processed"
    LINKED = "linked"
    COMPLETED = "completed"
    FAILED = "failed"


def _span_id() -> str:
    return new_id()[:16]


class EventEnvelope(BaseModel):
    """One event per pipeline stage. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=new_id)
    parent_event_id: Optional[str] = None
    trace_id: str = Field(default_factory=new_id)
    span_id: str = Field(default_factory=_span_id)

    tenant_id: str
    integration_type: str
    entity_type: str
    data_source_id: Optional[str] = None
    stage: Stage
    created_at: datetime = Field(default_factory=utcnow)

    job_id: Optional[str] = None
    sync_id: Optional[str] = None
    batch_number: int = 1

    payload: dict[str, Any] = Field(default_factory=dict)
    metrics: dict[str, Any] = Field(default_factory=dict)

    def child(self, stage: Stage, payload: Optional[dict] = None, **updates) -> "EventEnvelope":
        """Derive the next-stage envelope, keeping the trace and pointing back at this event."""
        fields = {
            "event_id": new_id(),
            "parent_event_id": self.event_id,
            "span_id": _span_id(),
            "stage": stage,
            "created_at": utcnow(),
            "payload": payload if payload is not None else {},
        }
        fields.update(updates)
        return self.model_copy(update=fields)

    @property
    def topic(self) -> str:
        return build_topic(self.stage, self.entity_type)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str | bytes) -> "EventEnvelope":
        return cls.model_validate_json(raw)


def build_topic(stage: Stage | str, entity_type: str, integration_type: Optional[str] = None) -> str:
    """Build a topic string.

    Args:
        stage: Pipeline stage
        entity_type: Entity type, e.g. ``identities``
        integration_type: Prefix for integration-specific topics

    Returns:
        ``{stage}.{entity}`` or ``{integration}.{stage}.{entity}``
    """
    stage_value = Stage(stage).value
    if integration_type:
        return f"{integration_type}.{stage_value}.{entity_type}"
    return f"{stage_value}.{entity_type}"


def topic_matches(pattern: str, topic: str) -> bool:
    """True when ``topic`` matches ``pattern`` segment by segment.

    ``*`` matches exactly one segment; segment counts must be equal.
    """
    pattern_parts = pattern.split(".")
    topic_parts = topic.split(".")
    if len(pattern_parts) != len(topic_parts):
        return False
    return all(p == "*" or p == t for p, t in zip(pattern_parts, topic_parts))
