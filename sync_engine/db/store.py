"""Tenant-scoped document store.

The narrow read/write contract every stage uses: get by id, list by
tenant plus equality/IN filters, batch insert, batch patch (optionally
conditional), batch soft-delete, upsert by unique key, and ``apply_batch``
for a single-transaction flush. Every call is scoped by ``tenant_id``.
Documents are plain dicts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from sync_engine.db.models import AuditLog, DataSource, Entity, EntityAlert, JobHistory, Relationship, SyncBatch
from sync_engine.errors import StorageError, WriteConflictError
from sync_engine.utils import new_id, utcnow

logger = logging.getLogger(__name__)

TABLES = {
    "data_sources": DataSource,
    "entities": Entity,
    "entity_relationships": Relationship,
    "entity_alerts": EntityAlert,
    "audit_log": AuditLog,
    "job_history": JobHistory,
    "sync_batches": SyncBatch,
}

# INSERT ... ON CONFLICT support per dialect
_UPSERT_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}

# Never overwritten when an upsert hits an existing row
_KEEP_ON_CONFLICT = ("id", "tenant_id", "created_at")

@dataclass
class StoreStats:
    queries: int = 0
    mutations: int = 0


@dataclass
class StoreOp:
    """One write inside an ``apply_batch`` transaction."""

    kind: str  # insert | upsert | patch | soft_delete
    table: str
    values: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    # patch: column values the row must still hold, else WriteConflictError
    expect: Optional[dict[str, Any]] = None
    # upsert: unique columns identifying an existing row
    conflict: tuple[str, ...] = ()
    # upsert: False leaves an existing row untouched
    overwrite: bool = True
    # upsert: columns written on insert but kept on an existing row
    insert_only: tuple[str, ...] = ()


def _model(table: str):
    try:
        return TABLES[table]
    except KeyError:
        raise StorageError(f"Unknown table: {table}", retryable=False) from None


def _to_doc(row) -> dict[str, Any]:
    return row.to_dict()


def _where(model, column: str, value):
    attr = getattr(model, column)
    return attr.is_(None) if value is None else attr == value


class DocumentStore:
    """SQLAlchemy-backed store. Each call runs in its own session, so
    concurrent calls (e.g. an ``asyncio.gather`` of bulk reads) are safe."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self.stats = StoreStats()

    def scoped(self) -> "DocumentStore":
        """A view over the same database with its own counters."""
        return type(self)(self.session_factory)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, table: str, tenant_id: str, doc_id: str) -> Optional[dict[str, Any]]:
        model = _model(table)
        self.stats.queries += 1
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(model).where(model.id == doc_id, model.tenant_id == tenant_id)
                )
                row = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(f"get {table}/{doc_id} failed: {e}") from e
        return _to_doc(row) if row else None

    async def list(
        self,
        table: str,
        tenant_id: Optional[str],
        filters: Optional[dict[str, Any]] = None,
        in_filters: Optional[dict[str, Iterable]] = None,
        include_deleted: bool = False,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        List documents for a tenant.

        Args:
            table: Table name
            tenant_id: Tenant scope (``None`` only for cross-tenant scheduler reads)
            filters: Column equality filters (``None`` matches NULL)
            in_filters: Column IN filters
            include_deleted: Include soft-deleted documents

        Returns:
            Matching documents
        """
        model = _model(table)
        query = select(model)
        if tenant_id is not None:
            query = query.where(model.tenant_id == tenant_id)
        for column, value in (filters or {}).items():
            query = query.where(_where(model, column, value))
        for column, values in (in_filters or {}).items():
            values = list(values)
            if not values:
                return []
            query = query.where(getattr(model, column).in_(values))
        if not include_deleted:
            query = query.where(model.deleted_at.is_(None))
        if order_by:
            column = getattr(model, order_by)
            query = query.order_by(column.desc() if descending else column)
        if limit:
            query = query.limit(limit)

        self.stats.queries += 1
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise StorageError(f"list {table} failed: {e}") from e
        return [_to_doc(row) for row in rows]

    async def list_relationships_for(
        self, tenant_id: str, data_source_id: Optional[str], entity_ids: Iterable[str],
        relationship_type: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Edges touching any of ``entity_ids`` as source or target."""
        ids = list(entity_ids)
        if not ids:
            return []
        query = select(Relationship).where(
            Relationship.tenant_id == tenant_id,
            _where(Relationship, "data_source_id", data_source_id),
            Relationship.deleted_at.is_(None),
            or_(Relationship.source_entity_id.in_(ids), Relationship.target_entity_id.in_(ids)),
        )
        if relationship_type:
            query = query.where(Relationship.relationship_type == relationship_type)
        self.stats.queries += 1
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(query)).scalars().all()
        except SQLAlchemyError as e:
            raise StorageError(f"list entity_relationships failed: {e}") from e
        return [_to_doc(row) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert(self, table: str, tenant_id: str, docs: list[dict[str, Any]]) -> list[str]:
        """Insert a batch and return the new ids."""
        if not docs:
            return []
        ops = [StoreOp("insert", table, doc) for doc in docs]
        await self.apply_batch(tenant_id, ops)
        return [op.values["id"] for op in ops]

    async def patch(self, table: str, tenant_id: str, updates: list[tuple[str, dict[str, Any]]]) -> int:
        """Apply ``(id, values)`` updates as one batch."""
        if not updates:
            return 0
        await self.apply_batch(tenant_id, [StoreOp("patch", table, values, id=doc_id) for doc_id, values in updates])
        return len(updates)

    async def soft_delete(self, table: str, tenant_id: str, ids: Iterable[str]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        await self.apply_batch(tenant_id, [StoreOp("soft_delete", table, id=doc_id) for doc_id in ids])
        return len(ids)

    async def upsert(
        self, table: str, tenant_id: str, doc: dict[str, Any], conflict: Iterable[str], overwrite: bool = True
    ) -> Optional[str]:
        """Insert or update by a unique key; ``None`` if skipped (``overwrite=False``)."""
        op = StoreOp("upsert", table, doc, conflict=tuple(conflict), overwrite=overwrite)
        await self.apply_batch(tenant_id, [op])
        return op.id

    async def apply_batch(self, tenant_id: str, ops: list[StoreOp]) -> None:
        """Apply every op in one transaction; all-or-nothing.

        After an upsert, ``op.id`` is the stored row's id, or ``None`` when
        a non-overwriting upsert found the row already present.
        """
        if not ops:
            return
        now = utcnow()
        self.stats.mutations += 1
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for op in ops:
                        await self._apply(session, tenant_id, op, now)
        except SQLAlchemyError as e:
            raise StorageError(f"batch of {len(ops)} write(s) failed: {e}") from e

    async def _apply(self, session, tenant_id: str, op: StoreOp, now) -> None:
        model = _model(op.table)
        if op.kind in ("insert", "upsert"):
            op.values.setdefault("id", new_id())
            values = {**op.values, "tenant_id": tenant_id}
            for stamp in ("created_at", "updated_at"):
                if hasattr(model, stamp):
                    values.setdefault(stamp, now)
            if op.kind == "insert":
                await session.execute(insert(model).values(**values))
            else:
                op.id = await self._upsert(session, model, op, values)
            return

        condition = and_(model.id == op.id, model.tenant_id == tenant_id)
        for column, value in (op.expect or {}).items():
            condition = and_(condition, _where(model, column, value))
        if op.kind == "patch":
            values = dict(op.values)
            if hasattr(model, "updated_at"):
                values.setdefault("updated_at", now)
        elif op.kind == "soft_delete":
            values = {"deleted_at": now}
        else:
            raise StorageError(f"Unknown store op: {op.kind}", retryable=False)
        result = await session.execute(update(model).where(condition).values(**values))
        if op.expect and result.rowcount == 0:
            raise WriteConflictError(f"{op.table}/{op.id} no longer matches {op.expect}")

    async def _upsert(self, session, model, op: StoreOp, values: dict[str, Any]) -> Optional[str]:
        """INSERT ... ON CONFLICT keyed on ``op.conflict``; returns the row id."""
        if not op.conflict:
            raise StorageError(f"upsert into {op.table} needs conflict columns", retryable=False)
        dialect = session.get_bind().dialect.name
        try:
            dialect_insert = _UPSERT_INSERTS[dialect]
        except KeyError:
            raise StorageError(f"upsert not supported on {dialect}", retryable=False) from None

        statement = dialect_insert(model).values(**values)
        if op.overwrite:
            changes = {k: v for k, v in values.items() if k not in _KEEP_ON_CONFLICT and k not in op.insert_only}
            statement = statement.on_conflict_do_update(index_elements=list(op.conflict), set_=changes)
        else:
            statement = statement.on_conflict_do_nothing(index_elements=list(op.conflict))
        result = await session.execute(statement.returning(model.id))
        return result.scalar_one_or_none()
