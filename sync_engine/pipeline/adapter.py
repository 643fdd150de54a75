"""Fetch stage: turns a sync job into a fetched event of raw vendor records."""

import logging
from typing import Optional

from sync_engine import metrics as prom
from sync_engine.bus.base import MessageBus
from sync_engine.bus.events import EventEnvelope, Stage, build_topic
from sync_engine.db.store import DocumentStore
from sync_engine.errors import ConnectorError, NotFoundError, StageError, UnsupportedOperationError
from sync_engine.integrations.config import get_integration
from sync_engine.integrations.connector import Connector
from sync_engine.integrations.hashing import compute_data_hash, get_hash_policy
from sync_engine.integrations.registry import ConnectorRegistry
from sync_engine.logging_config import envelope_logger
from sync_engine.pipeline.base import publish_failure
from sync_engine.pipeline.history import MetricsCollector
from sync_engine.queue.job_queue import JobQueue
from sync_engine.utils import utcnow

logger = logging.getLogger(__name__)


class Adapter:
    """One instance per integration type; subscribes to ``{integrationType}.sync.*``."""

    def __init__(
        self,
        integration_type: str,
        connectors: ConnectorRegistry,
        bus: MessageBus,
        queue: JobQueue,
        store: DocumentStore,
    ):
        self.integration_type = integration_type
        self.connectors = connectors
        self.bus = bus
        self.queue = queue
        self.store = store

    @property
    def topic_pattern(self) -> str:
        return build_topic(Stage.SYNC, "*", self.integration_type)

    async def start(self) -> None:
        await self.bus.subscribe(self.topic_pattern, self.handle_sync)
        logger.info(f"Adapter for {self.integration_type} subscribed to {self.topic_pattern}")

    async def _load_config(self, envelope: EventEnvelope, store: DocumentStore) -> dict:
        if not envelope.data_source_id:
            return {}
        data_source = await store.get("data_sources", envelope.tenant_id, envelope.data_source_id)
        if data_source is None:
            raise NotFoundError(f"Data source not found: {envelope.data_source_id}")
        return data_source.get("config") or {}

    def _check_supported(self, entity_type: str) -> None:
        integration = get_integration(self.integration_type)
        if integration is None or integration.entity_config(entity_type) is None:
            raise UnsupportedOperationError(
                f"Unsupported entity type for {self.integration_type}: {entity_type}"
            )

    def _build_records(self, connector: Connector, entity_type: str, raws: list[dict], log) -> tuple[list[dict], int]:
        """Key and hash each raw record; one without a usable id is skipped, not fatal."""
        policy = get_hash_policy(self.integration_type, entity_type)
        records = []
        skipped = 0
        for raw in raws:
            try:
                records.append({
                    "external_id": connector.external_id(entity_type, raw),
                    "site_id": connector.resolve_site(entity_type, raw),
                    "data_hash": compute_data_hash(raw, policy),
                    "raw_data": raw,
                })
            except (KeyError, TypeError, ValueError) as e:
                skipped += 1
                log.warning(f"Skipping malformed {entity_type} record: {e!r}")
        return records, skipped

    async def handle_sync(self, envelope: EventEnvelope) -> None:
        log = envelope_logger(__name__, envelope)
        store = self.store.scoped()
        collector = MetricsCollector(envelope.metrics)
        metadata = envelope.payload.get("metadata") or {}
        cursor: Optional[str] = metadata.get("cursor")
        sync_started_at = metadata.get("sync_started_at") or utcnow().isoformat()
        connector: Optional[Connector] = None

        try:
            with collector.stage("adapter", envelope.entity_type):
                self._check_supported(envelope.entity_type)
                config = await self._load_config(envelope, store)
                connector = self.connectors.create(self.integration_type, config)
                connector.ensure_supported(envelope.entity_type)

                if not await connector.check_health():
                    raise ConnectorError(
                        f"Connector health check failed for data source {envelope.data_source_id}",
                        retryable=False,
                    )

                page = await connector.fetch(envelope.entity_type, cursor)
                records, skipped = self._build_records(connector, envelope.entity_type, page.records, log)
                collector.track("api_calls", connector.api_calls)
                collector.track("records_fetched", len(records))
                collector.track("normalization_failures", skipped)
        except Exception as e:
            collector.track_store(store)
            error = StageError.from_exception(e, stage="adapter")
            collector.track_error(error.to_dict())
            log.warning(f"Fetch failed: {error.message} (retryable={error.retryable})")
            if envelope.job_id:
                await self.queue.fail_job(envelope.job_id, error.message, retryable=error.retryable)
            # The job is already closed; publish for observability only
            await publish_failure(self.bus, envelope, e, "adapter", metrics=collector.result().to_dict())
            return
        finally:
            if connector is not None:
                await connector.close()

        if page.has_more and envelope.job_id:
            job = await self.queue.get_job(envelope.job_id)
            continuation = job.spawn(
                batch_number=envelope.batch_number + 1,
                metadata={
                    **job.metadata,
                    "cursor": page.next_cursor,
                    "sync_started_at": sync_started_at,
                    "trace_id": envelope.trace_id,
                },
            )
            await self.queue.schedule(continuation, origin="continuation")
            log.info(f"Scheduled batch {continuation.batch_number} for sync {envelope.sync_id}")

        if envelope.job_id:
            await self.queue.complete_job(envelope.job_id)

        collector.track_store(store)
        prom.record_records_fetched(self.integration_type, envelope.entity_type, len(records))
        fetched = envelope.child(
            Stage.FETCHED,
            {
                "records": records,
                "total": len(records),
                "has_more": page.has_more,
                "next_page_token": page.next_cursor,
                "sync_started_at": sync_started_at,
            },
            metrics=collector.result().to_dict(),
        )
        log.info(f"Fetched {len(records)} {envelope.entity_type} (batch {envelope.batch_number}, hasMore: {page.has_more})")
        await self.bus.publish(build_topic(Stage.FETCHED, envelope.entity_type), fetched)
