"""Analysis workers and the service that triggers them from ``linked`` events."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sync_engine.analysis.engine import Workflow, WorkflowEngine, WorkflowResult
from sync_engine.analysis.nodes import (
    EntityStateNode,
    EvaluateMFAEnforcementNode,
    LicenseOveruseNode,
    LicenseWasteNode,
    Node,
    PolicyGapNode,
    StaleIdentityNode,
    TagAdminNode,
)
from sync_engine.bus.base import MessageBus
from sync_engine.bus.events import EventEnvelope, Stage, build_topic
from sync_engine.config import Settings, settings as default_settings
from sync_engine.errors import WorkflowNodeError

logger = logging.getLogger(__name__)


class Worker(ABC):
    """Assembles the ordered node list for one kind of analysis."""

    name: str = ""
    integration_types: frozenset[str] = frozenset()
    incremental_types: frozenset[str] = frozenset()

    def applies_to(self, integration_type: str) -> bool:
        return integration_type in self.integration_types

    def incremental(self, changed_types: set[str]) -> bool:
        """True when only entity types this worker can analyse per-entity changed."""
        return bool(changed_types) and changed_types <= self.incremental_types

    @abstractmethod
    def build_nodes(self, integration_type: str, changed_types: set[str]) -> list[Node]:
        """Return the nodes to run, or an empty list when nothing applies."""

    def workflow(self, integration_type: str, changed_types: set[str]) -> Optional[Workflow]:
        nodes = self.build_nodes(integration_type, changed_types)
        if not nodes:
            return None
        return Workflow(nodes, name=self.name)


class Microsoft365IdentityWorker(Worker):
    name = "m365-identity"
    integration_types = frozenset({"microsoft-365"})
    incremental_types = frozenset({"identities"})

    RELEVANT_TYPES = frozenset({"identities", "groups", "roles", "policies", "licenses"})

    def __init__(self, stale_days: int = 90):
        self.stale_days = stale_days

    def build_nodes(self, integration_type, changed_types):
        if not self.applies_to(integration_type) or not (changed_types & self.RELEVANT_TYPES):
            return []
        return [
            TagAdminNode(),
            EvaluateMFAEnforcementNode(),
            PolicyGapNode(),
            StaleIdentityNode(self.stale_days),
            LicenseWasteNode(),
            LicenseOveruseNode(),
            EntityStateNode(),
        ]


@dataclass
class PendingAnalysis:
    tenant_id: str
    data_source_id: Optional[str]
    integration_type: str
    changed_types: set[str] = field(default_factory=set)
    changed_ids: set[str] = field(default_factory=set)
    task: Optional[asyncio.Task] = None


class AnalysisService:
    """Runs workers after linking.

    ``linked`` events are aggregated per (tenant, data source, integration)
    for ``analysis_debounce_seconds`` so a multi-entity sync produces one
    analysis run rather than one per batch.
    """

    def __init__(
        self,
        bus: MessageBus,
        engine: WorkflowEngine,
        workers: Iterable[Worker],
        settings: Settings = default_settings,
    ):
        self.bus = bus
        self.engine = engine
        self.workers = list(workers)
        self.settings = settings
        self._pending: dict[tuple, PendingAnalysis] = {}

    async def start(self) -> None:
        await self.bus.subscribe(build_topic(Stage.LINKED, "*"), self.handle_linked)

    async def handle_linked(self, envelope: EventEnvelope) -> None:
        changed = set(envelope.payload.get("changed_ids") or [])
        if not changed:
            return

        key = (envelope.tenant_id, envelope.data_source_id, envelope.integration_type)
        pending = self._pending.get(key)
        if pending is None:
            pending = PendingAnalysis(envelope.tenant_id, envelope.data_source_id, envelope.integration_type)
            self._pending[key] = pending
        pending.changed_types.add(envelope.entity_type)
        pending.changed_ids |= changed

        if self.settings.analysis_debounce_seconds <= 0:
            await self.flush(key)
            return
        if pending.task is not None:
            pending.task.cancel()
        pending.task = asyncio.create_task(self._flush_later(key))

    async def _flush_later(self, key: tuple) -> None:
        await asyncio.sleep(self.settings.analysis_debounce_seconds)
        try:
            await self.flush(key)
        except Exception as e:
            logger.error(f"Analysis for {key} failed: {e}")

    async def flush(self, key: tuple) -> list[WorkflowResult]:
        pending = self._pending.pop(key, None)
        if pending is None:
            return []
        return await self.run(pending)

    async def flush_all(self) -> list[WorkflowResult]:
        """Run every pending analysis now, cancelling debounce timers."""
        results = []
        for key in list(self._pending):
            pending = self._pending.get(key)
            if pending and pending.task is not None and pending.task is not asyncio.current_task():
                pending.task.cancel()
            results.extend(await self.flush(key))
        return results

    async def run(self, pending: PendingAnalysis) -> list[WorkflowResult]:
        results = []
        for worker in self.workers:
            workflow = worker.workflow(pending.integration_type, pending.changed_types)
            if workflow is None:
                continue
            changed_ids = pending.changed_ids if worker.incremental(pending.changed_types) else None
            try:
                results.append(await self.engine.run(
                    workflow,
                    pending.tenant_id,
                    pending.data_source_id,
                    pending.integration_type,
                    changed_entity_ids=changed_ids,
                ))
            except WorkflowNodeError:
                # Already logged and recorded by the engine; other workers still run
                continue
        return results

    async def close(self) -> None:
        for pending in self._pending.values():
            if pending.task is not None:
                pending.task.cancel()
        self._pending.clear()
