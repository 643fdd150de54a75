"""Normalize stage: hash-diff incoming records, upsert the changed ones.

Replaying the same fetched batch is a no-op beyond refreshing
``sync_id``/``last_seen_at``: equal hashes are counted as unchanged and
never propagate.
"""

import logging

from sync_engine import metrics as prom
from sync_engine.bus.base import MessageBus
from sync_engine.bus.events import EventEnvelope, Stage, build_topic
from sync_engine.db.store import DocumentStore, StoreOp
from sync_engine.errors import NormalizationError
from sync_engine.integrations.registry import NormalizerRegistry
from sync_engine.logging_config import envelope_logger
from sync_engine.pipeline.base import publish_failure
from sync_engine.pipeline.history import MetricsCollector
from sync_engine.utils import utcnow

logger = logging.getLogger(__name__)

# Columns of uq_entity_identity; a concurrent sync may insert the same row first
ENTITY_KEY = ("tenant_id", "integration_type", "data_source_id", "entity_type", "external_id")


class EntityProcessor:
    """One instance per entity type; subscribes to ``fetched.{entityType}``."""

    def __init__(self, entity_type: str, normalizers: NormalizerRegistry, bus: MessageBus, store: DocumentStore, queue=None):
        self.entity_type = entity_type
        self.normalizers = normalizers
        self.bus = bus
        self.store = store
        self.queue = queue

    async def start(self) -> None:
        topic = build_topic(Stage.FETCHED, self.entity_type)
        await self.bus.subscribe(topic, self.handle_fetched)
        logger.info(f"EntityProcessor subscribed to {topic}")

    async def handle_fetched(self, envelope: EventEnvelope) -> None:
        collector = MetricsCollector(envelope.metrics)
        store = self.store.scoped()
        try:
            with collector.stage("processor", self.entity_type):
                payload = await self._process(envelope, store, collector)
        except Exception as e:
            collector.track_store(store)
            await publish_failure(
                self.bus, envelope, e, "processor", queue=self.queue, metrics=collector.result().to_dict()
            )
            return

        collector.track_store(store)
        processed = envelope.child(Stage.PROCESSED, payload, metrics=collector.result().to_dict())
        await self.bus.publish(build_topic(Stage.PROCESSED, self.entity_type), processed)

    async def _process(self, envelope: EventEnvelope, store: DocumentStore, collector: MetricsCollector) -> dict:
        log = envelope_logger(__name__, envelope)
        normalizer = self.normalizers.get(envelope.integration_type, self.entity_type)
        now = utcnow()

        # Last occurrence of an external id wins within one batch
        incoming: dict[str, dict] = {}
        for record in envelope.payload.get("records", []):
            incoming[record["external_id"]] = record

        existing = {
            row["external_id"]: row
            for row in await store.list(
                "entities",
                envelope.tenant_id,
                filters={
                    "integration_type": envelope.integration_type,
                    "data_source_id": envelope.data_source_id,
                    "entity_type": self.entity_type,
                },
                in_filters={"external_id": list(incoming)},
                include_deleted=True,
            )
        }

        touch = {"sync_id": envelope.sync_id, "last_seen_at": now, "deleted_at": None}
        to_create: list[dict] = []
        to_patch: list[tuple[str, dict]] = []
        updated_ids: list[str] = []
        unchanged = 0
        failures = 0

        for external_id, record in incoming.items():
            current = existing.get(external_id)
            if current is not None and current["deleted_at"] is None and current["data_hash"] == record["data_hash"]:
                unchanged += 1
                # Refresh only; updated_at stays so the touch is not an update
                to_patch.append((current["id"], {**touch, "updated_at": current["updated_at"]}))
                continue

            try:
                normalized = normalizer.normalize(record["raw_data"])
            except NormalizationError as e:
                failures += 1
                log.warning(f"Skipping malformed {self.entity_type} record {external_id}: {e}")
                continue

            values = {
                "data_hash": record["data_hash"],
                "site_id": record.get("site_id"),
                "normalized_data": normalized,
                "raw_data": record["raw_data"],
                **touch,
            }
            if current is None:
                to_create.append({
                    "integration_type": envelope.integration_type,
                    "data_source_id": envelope.data_source_id,
                    "entity_type": self.entity_type,
                    "external_id": external_id,
                    "tags": [],
                    "state": "normal",
                    **values,
                })
            else:
                # Changed, or revived after a sweep
                to_patch.append((current["id"], {**values, "updated_at": now}))
                updated_ids.append(current["id"])

        upserts = [
            StoreOp("upsert", "entities", doc, conflict=ENTITY_KEY, insert_only=("tags", "state"))
            for doc in to_create
        ]
        patches = [StoreOp("patch", "entities", values, id=entity_id) for entity_id, values in to_patch]
        await store.apply_batch(envelope.tenant_id, upserts + patches)
        created_ids = [op.id for op in upserts]

        collector.track("entities_created", len(created_ids))
        collector.track("entities_updated", len(updated_ids))
        collector.track("entities_unchanged", unchanged)
        collector.track("normalization_failures", failures)
        prom.record_entity_changes(self.entity_type, len(created_ids), len(updated_ids), unchanged)
        log.info(
            f"Processed {len(incoming)} {self.entity_type}: {len(created_ids)} created, "
            f"{len(updated_ids)} updated, {unchanged} unchanged, {failures} skipped"
        )

        return {
            "changed_ids": created_ids + updated_ids,
            "created_ids": created_ids,
            "updated_ids": updated_ids,
            "has_more": envelope.payload.get("has_more", False),
            "sync_started_at": envelope.payload.get("sync_started_at"),
        }

