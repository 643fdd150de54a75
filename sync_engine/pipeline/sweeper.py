"""Sync completion: batch bookkeeping, mark-and-sweep cleanup, Job History."""

import logging
from typing import Optional

from sync_engine.bus.base import MessageBus
from sync_engine.bus.events import EventEnvelope, Stage, build_topic
from sync_engine.config import Settings, settings as default_settings
from sync_engine.db.store import DocumentStore, StoreOp
from sync_engine.logging_config import envelope_logger
from sync_engine.pipeline.base import publish_failure
from sync_engine.pipeline.history import JobHistoryManager, JobMetrics
from sync_engine.utils import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

SYNC_BATCH_KEY = ("tenant_id", "sync_id", "entity_type", "batch_number")

# Batch numbers start at 1
CLOSED_MARKER = 0


def all_batches_linked(batches: list[dict]) -> bool:
    """True once the final batch and every batch before it are recorded."""
    numbers = {b["batch_number"] for b in batches}
    if CLOSED_MARKER in numbers:
        return False
    final = [b["batch_number"] for b in batches if b["is_final"]]
    if not final:
        return False
    return numbers >= set(range(1, final[0] + 1))


class Sweeper:
    """Closes a sync once all of its batches are linked.

    Batches may be linked in any order. Each ``linked`` event records its
    batch; the handler that completes the set soft-deletes the entities
    (and their edges) of that data source and entity type the sync never
    saw, writes one Job History record with metrics summed over every
    batch, and publishes ``completed.{entityType}``.
    """

    def __init__(
        self,
        bus: MessageBus,
        store: DocumentStore,
        history: Optional[JobHistoryManager] = None,
        settings: Settings = default_settings,
        queue=None,
    ):
        self.bus = bus
        self.store = store
        self.history = history
        self.settings = settings
        self.queue = queue

    async def start(self) -> None:
        await self.bus.subscribe(build_topic(Stage.LINKED, "*"), self.handle_linked)

    async def handle_linked(self, envelope: EventEnvelope) -> None:
        try:
            batches = await self._record_batch(envelope)
            if batches is None or not self._ready(envelope, batches):
                return
            # Sweeping twice is harmless; only the marker winner reports
            deleted_ids = await self.sweep(envelope) if self.settings.sweep_enabled else []
            if not await self._claim_close(envelope):
                return
        except Exception as e:
            await publish_failure(self.bus, envelope, e, "sweeper", queue=self.queue)
            return

        metrics = JobMetrics()
        for batch in sorted(batches, key=lambda b: b["batch_number"]):
            metrics = metrics.merge(JobMetrics.from_dict(batch["metrics"]))
        metrics = metrics.merge(JobMetrics(entities_deleted=len(deleted_ids)))
        first_job = next((b["job_id"] for b in batches if b["batch_number"] == 1), envelope.job_id)

        if self.history is not None:
            await self.history.record(
                tenant_id=envelope.tenant_id,
                integration_type=envelope.integration_type,
                data_source_id=envelope.data_source_id,
                action=f"sync.{envelope.entity_type}",
                status="completed",
                started_at=parse_timestamp(envelope.payload.get("sync_started_at")) or envelope.created_at,
                completed_at=utcnow(),
                metrics=metrics,
                sync_id=envelope.sync_id,
                job_id=first_job,
            )

        completed = envelope.child(
            Stage.COMPLETED,
            {
                "deleted_ids": deleted_ids,
                "batches": len(batches),
                "sync_started_at": envelope.payload.get("sync_started_at"),
            },
            metrics=metrics.to_dict(),
        )
        await self.bus.publish(build_topic(Stage.COMPLETED, envelope.entity_type), completed)

    async def _record_batch(self, envelope: EventEnvelope) -> Optional[list[dict]]:
        """Store this batch and return every batch of the sync seen so far.

        ``None`` means the batch is not part of a tracked sync: it closes
        on its own when it is the last one.
        """
        is_final = not envelope.payload.get("has_more")
        row = {
            "integration_type": envelope.integration_type,
            "data_source_id": envelope.data_source_id,
            "entity_type": envelope.entity_type,
            "sync_id": envelope.sync_id,
            "batch_number": envelope.batch_number,
            "is_final": is_final,
            "job_id": envelope.job_id,
            "metrics": envelope.metrics,
        }
        if not envelope.sync_id:
            return [row] if is_final else None

        # A replayed batch keeps its first record
        await self.store.upsert("sync_batches", envelope.tenant_id, row, conflict=SYNC_BATCH_KEY, overwrite=False)
        return await self.store.list(
            "sync_batches",
            envelope.tenant_id,
            filters={"sync_id": envelope.sync_id, "entity_type": envelope.entity_type},
        )

    def _ready(self, envelope: EventEnvelope, batches: list[dict]) -> bool:
        if not envelope.sync_id or all_batches_linked(batches):
            return True
        envelope_logger(__name__, envelope).debug(
            f"Sync {envelope.sync_id} has {len(batches)} linked batch(es); waiting for the rest"
        )
        return False

    async def _claim_close(self, envelope: EventEnvelope) -> bool:
        """Exactly one handler wins the marker insert."""
        if not envelope.sync_id:
            return True
        claimed = await self.store.upsert(
            "sync_batches",
            envelope.tenant_id,
            {
                "integration_type": envelope.integration_type,
                "data_source_id": envelope.data_source_id,
                "entity_type": envelope.entity_type,
                "sync_id": envelope.sync_id,
                "batch_number": CLOSED_MARKER,
                "is_final": False,
                "job_id": envelope.job_id,
            },
            conflict=SYNC_BATCH_KEY,
            overwrite=False,
        )
        return claimed is not None

    async def sweep(self, envelope: EventEnvelope) -> list[str]:
        log = envelope_logger(__name__, envelope)
        sync_started_at = parse_timestamp(envelope.payload.get("sync_started_at"))
        if sync_started_at is None or not envelope.sync_id:
            log.debug("Skipping sweep: no sync start recorded")
            return []

        entities = await self.store.list(
            "entities",
            envelope.tenant_id,
            filters={
                "integration_type": envelope.integration_type,
                "data_source_id": envelope.data_source_id,
                "entity_type": envelope.entity_type,
            },
        )
        stale = [
            e["id"] for e in entities
            if e["sync_id"] != envelope.sync_id
            and (e["last_seen_at"] is None or e["last_seen_at"] < sync_started_at)
        ]

        ops = [StoreOp("soft_delete", "entities", id=entity_id) for entity_id in stale]
        if stale:
            edges = await self.store.list_relationships_for(envelope.tenant_id, envelope.data_source_id, stale)
            ops.extend(StoreOp("soft_delete", "entity_relationships", id=edge["id"]) for edge in edges)
        if envelope.data_source_id:
            ops.append(StoreOp("patch", "data_sources", {"last_sync_at": sync_started_at}, id=envelope.data_source_id))
        await self.store.apply_batch(envelope.tenant_id, ops)

        if stale:
            log.info(f"Swept {len(stale)} {envelope.entity_type} missing from sync {envelope.sync_id}")
        return stale
