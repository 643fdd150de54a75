"""SQLAlchemy database models."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from sync_engine.utils import new_id, utcnow

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB, "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""

    def to_dict(self) -> dict[str, Any]:
        return {c.key: getattr(self, c.key) for c in self.__mapper__.column_attrs}


class DataSource(Base):
    """A configured connection from a tenant to one integration."""

    __tablename__ = "data_sources"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    integration_type: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    config: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="active", nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Entity(Base):
    """A normalized vendor object."""

    __tablename__ = "entities"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "integration_type", "data_source_id", "entity_type", "external_id",
            name="uq_entity_identity",
        ),
        Index("ix_entities_source_type", "tenant_id", "data_source_id", "entity_type"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    integration_type: Mapped[str] = mapped_column(String(64), nullable=False)
    data_source_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    data_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    site_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    normalized_data: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    raw_data: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    tags: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)  # analysis-managed
    state: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    sync_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Relationship(Base):
    """Directed edge between two entities."""

    __tablename__ = "entity_relationships"
    __table_args__ = (
        UniqueConstraint(
            "source_entity_id", "target_entity_id", "relationship_type", name="uq_relationship_edge"
        ),
        Index("ix_relationships_source", "tenant_id", "data_source_id"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    data_source_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    source_entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source_entity_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    target_entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    target_entity_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    relationship_type: Mapped[str] = mapped_column(String(32), nullable=False)
    meta: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class EntityAlert(Base):
    """A finding raised by analysis against one entity."""

    __tablename__ = "entity_alerts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "data_source_id", "fingerprint", name="uq_alert_fingerprint"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    data_source_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    integration_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    alert_type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), default="medium", nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fingerprint: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="active", nullable=False)
    meta: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    suppressed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    suppressed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    suppression_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    suppressed_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class AuditLog(Base):
    """Operator action record."""

    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    target_type: Mapped[str] = mapped_column(String(64), nullable=False)
    target_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class JobHistory(Base):
    """Outcome of one sync or analysis run."""

    __tablename__ = "job_history"
    __table_args__ = (
        Index("ix_job_history_source", "tenant_id", "data_source_id", "started_at"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    integration_type: Mapped[str] = mapped_column(String(64), nullable=False)
    data_source_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    job_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    sync_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metrics: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class SyncBatch(Base):
    """One linked batch of a paginated sync.

    The sync closes (sweep plus Job History) once batches ``1..N`` are all
    present, ``N`` being the batch flagged ``is_final``. Batch number 0 is
    the closing marker; its insert succeeds for exactly one handler.
    """

    __tablename__ = "sync_batches"
    __table_args__ = (
        UniqueConstraint("tenant_id", "sync_id", "entity_type", "batch_number", name="uq_sync_batch"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    integration_type: Mapped[str] = mapped_column(String(64), nullable=False)
    data_source_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    sync_id: Mapped[str] = mapped_column(String(32), nullable=False)
    batch_number: Mapped[int] = mapped_column(Integer, nullable=False)
    is_final: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    job_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    metrics: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
