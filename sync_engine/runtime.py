"""Builds and owns every long-lived component of the sync engine."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from sync_engine.analysis.alerts import AlertManager
from sync_engine.analysis.context import ContextLoader
from sync_engine.analysis.engine import WorkflowEngine
from sync_engine.analysis.workers import AnalysisService, Microsoft365IdentityWorker
from sync_engine.bus.base import MessageBus
from sync_engine.bus.local import LocalEventBus
from sync_engine.bus.redis_bus import RedisEventBus
from sync_engine.config import Settings, settings as default_settings
from sync_engine.db.models import Base
from sync_engine.db.session import create_session_factory
from sync_engine.db.store import DocumentStore
from sync_engine.integrations.config import INTEGRATIONS
from sync_engine.integrations.registry import (
    ConnectorRegistry,
    NormalizerRegistry,
    build_connector_registry,
    build_normalizer_registry,
)
from sync_engine.pipeline.adapter import Adapter
from sync_engine.pipeline.history import JobHistoryManager
from sync_engine.pipeline.linker import DEFAULT_RULES, Linker
from sync_engine.pipeline.processor import EntityProcessor
from sync_engine.pipeline.sweeper import Sweeper
from sync_engine.queue.job_queue import JobQueue
from sync_engine.queue.scheduler import SyncScheduler
from sync_engine.queue.store import JobStore, MemoryJobStore, RedisJobStore

logger = logging.getLogger(__name__)


def build_bus(settings: Settings) -> MessageBus:
    if settings.bus_backend == "redis":
        return RedisEventBus(settings.redis_url, max_concurrency=settings.queue_concurrency)
    if settings.bus_backend == "local":
        return LocalEventBus()
    raise ValueError(f"Unknown bus backend: {settings.bus_backend}")


def build_job_store(settings: Settings) -> JobStore:
    if settings.queue_backend == "redis":
        return RedisJobStore(settings.redis_url)
    if settings.queue_backend == "memory":
        return MemoryJobStore()
    raise ValueError(f"Unknown queue backend: {settings.queue_backend}")


class Runtime:
    """
    Wires every stage onto one bus.

    Each stage only subscribes to the previous stage's topic, so the same
    wiring runs in a single process (local bus, memory queue) or split
    across processes sharing Redis.
    """

    def __init__(
        self,
        settings: Settings = default_settings,
        session_factory: Optional[async_sessionmaker] = None,
        bus: Optional[MessageBus] = None,
        job_store: Optional[JobStore] = None,
        connectors: Optional[ConnectorRegistry] = None,
        normalizers: Optional[NormalizerRegistry] = None,
    ):
        self.settings = settings
        self.db_engine: Optional[AsyncEngine] = None
        if session_factory is None:
            self.db_engine, session_factory = create_session_factory(settings.database_url, echo=settings.debug)
        self.session_factory = session_factory

        self.store = DocumentStore(session_factory)
        self.bus = bus or build_bus(settings)
        self.history = JobHistoryManager(self.store)
        self.queue = JobQueue(job_store or build_job_store(settings), self.bus, history=self.history, settings=settings)
        self.scheduler = SyncScheduler(self.queue, self.store)

        self.connectors = connectors or build_connector_registry(settings.connector_timeout_seconds)
        self.normalizers = normalizers or build_normalizer_registry()

        self.adapters = [
            Adapter(integration_type, self.connectors, self.bus, self.queue, self.store)
            for integration_type in INTEGRATIONS
        ]
        self.processors = [
            EntityProcessor(entity_type, self.normalizers, self.bus, self.store, queue=self.queue)
            for entity_type in sorted(self.normalizers.entity_types())
        ]
        self.linker = Linker(DEFAULT_RULES, self.bus, self.store, queue=self.queue)
        self.sweeper = Sweeper(self.bus, self.store, self.history, settings, queue=self.queue)

        self.alert_manager = AlertManager(self.store)
        self.workflow_engine = WorkflowEngine(self.store, ContextLoader(self.store), self.alert_manager, self.history)
        self.analysis = AnalysisService(
            self.bus,
            self.workflow_engine,
            [Microsoft365IdentityWorker(settings.stale_user_days)],
            settings,
        )

    @property
    def stages(self) -> list:
        """Stage components for the roles this process runs."""
        by_role = {
            "adapter": self.adapters,
            "processor": self.processors,
            "linker": [self.linker],
            "sweeper": [self.sweeper],
            "analysis": [self.analysis],
        }
        unknown = set(self.settings.worker_roles) - set(by_role) - {"dispatcher"}
        if unknown:
            raise ValueError(f"Unknown worker role(s): {', '.join(sorted(unknown))}")
        return [stage for role, stages in by_role.items() if role in self.settings.worker_roles for stage in stages]

    async def create_tables(self) -> None:
        engine = self.db_engine or self.session_factory.kw["bind"]
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def subscribe(self) -> None:
        """Subscribe every stage without starting the dispatcher."""
        for stage in self.stages:
            await stage.start()

    async def start(self, schedule_recurring: bool = True) -> None:
        await self.subscribe()
        await self.bus.start()
        if "dispatcher" in self.settings.worker_roles:
            if schedule_recurring:
                await self.scheduler.schedule_all()
            await self.queue.start()
        logger.info(f"Sync engine runtime started (roles: {', '.join(self.settings.worker_roles)})")

    async def close(self) -> None:
        await self.queue.close()
        await self.analysis.close()
        await self.bus.close()
        if self.db_engine is not None:
            await self.db_engine.dispose()
        logger.info("Sync engine runtime stopped")
