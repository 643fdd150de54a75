"""Workflow composition and execution."""

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from sync_engine import metrics
from sync_engine.analysis.alerts import AlertManager
from sync_engine.analysis.batch import WriteBatch
from sync_engine.analysis.context import AnalysisContext, ContextLoader
from sync_engine.analysis.nodes import Node
from sync_engine.db.store import DocumentStore, StoreOp
from sync_engine.errors import WorkflowNodeError, WorkflowOrderError
from sync_engine.utils import utcnow

logger = logging.getLogger(__name__)


class Workflow:
    """An ordered node list whose requirements are checked at construction."""

    def __init__(self, nodes: Sequence[Node], name: str = "workflow"):
        self.nodes = tuple(nodes)
        self.name = name
        self.validate()

    def validate(self) -> None:
        available: set[str] = set()
        for position, node in enumerate(self.nodes):
            missing = node.requires - available
            if missing:
                raise WorkflowOrderError(
                    f"{self.name}: node '{node.name}' at position {position} requires "
                    f"{sorted(missing)} which no earlier node provides"
                )
            available |= node.provides

    @property
    def alert_types(self) -> frozenset[str]:
        return frozenset().union(*(n.alert_types for n in self.nodes))

    def run(self, ctx: AnalysisContext, batch: Optional[WriteBatch] = None) -> WriteBatch:
        """Thread the batch through every node. Any node failure aborts the run."""
        batch = batch or WriteBatch()
        for node in self.nodes:
            try:
                batch = node.run(ctx, batch)
            except Exception as e:
                raise WorkflowNodeError(node.name, e) from e
        return batch


@dataclass
class WorkflowResult:
    workflow: str
    tags_added: int = 0
    tags_removed: int = 0
    states_updated: int = 0
    alerts: dict[str, int] = field(default_factory=dict)
    context_queries: int = 0
    duration_ms: float = 0.0


def entity_ops(ctx: AnalysisContext, batch: WriteBatch) -> tuple[list[StoreOp], int, int]:
    """Collapse tag and state changes into one patch per entity."""
    patches: dict[str, dict] = {}
    added = removed = 0
    for entity_id in batch.tag_changes:
        entity = ctx.get(entity_id)
        if entity is None:
            continue
        stored = set(entity.get("tags") or [])
        new_tags = (stored | batch.tags_added(entity_id)) - batch.tags_removed(entity_id)
        if new_tags != stored:
            patches.setdefault(entity_id, {})["tags"] = sorted(new_tags)
            added += len(new_tags - stored)
            removed += len(stored - new_tags)
    for entity_id, state in batch.state_updates.items():
        if ctx.get(entity_id) is not None:
            patches.setdefault(entity_id, {})["state"] = state
    ops = [StoreOp("patch", "entities", values, id=entity_id) for entity_id, values in patches.items()]
    return ops, added, removed


class WorkflowEngine:
    """Loads context once, runs a workflow, flushes every write once."""

    def __init__(self, store: DocumentStore, loader: ContextLoader, alert_manager: AlertManager, history=None):
        self.store = store
        self.loader = loader
        self.alert_manager = alert_manager
        self.history = history

    async def run(
        self,
        workflow: Workflow,
        tenant_id: str,
        data_source_id: Optional[str],
        integration_type: Optional[str] = None,
        changed_entity_ids: Optional[Iterable[str]] = None,
    ) -> WorkflowResult:
        started_at = utcnow()
        started = time.perf_counter()
        ctx = await self.loader.load(tenant_id, data_source_id, changed_entity_ids, integration_type)

        try:
            batch = workflow.run(ctx)
        except WorkflowNodeError as e:
            # Partial batch is discarded; nothing was written
            metrics.record_workflow_run(workflow.name, success=False)
            logger.error(f"Workflow {workflow.name} aborted for {tenant_id}/{data_source_id}: {e}")
            await self._record(workflow, ctx, integration_type, started_at, "failed", error=str(e))
            raise

        ops, added, removed = entity_ops(ctx, batch)
        # Incremental runs only resolve alerts of the entities they analysed
        scope = None if ctx.changed_entity_ids is None else set(ctx.changed_entity_ids)
        plan = await self.alert_manager.plan(
            tenant_id,
            data_source_id,
            integration_type,
            batch.alerts,
            alert_types=workflow.alert_types,
            scope_entity_ids=scope,
        )
        await self.store.apply_batch(tenant_id, ops + plan.ops)

        result = WorkflowResult(
            workflow=workflow.name,
            tags_added=added,
            tags_removed=removed,
            states_updated=len(batch.state_updates),
            alerts=plan.summary(),
            context_queries=ctx.stats.queries,
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        metrics.record_workflow_run(workflow.name, success=True)
        logger.info(
            f"Workflow {workflow.name} for {tenant_id}/{data_source_id}: "
            f"+{added}/-{removed} tags, {result.states_updated} states, alerts {plan.summary()}"
        )
        await self._record(workflow, ctx, integration_type, started_at, "completed", result=result)
        return result

    async def _record(self, workflow, ctx, integration_type, started_at, status, error=None, result=None):
        if self.history is None:
            return
        details = None
        if result is not None:
            details = {
                "tags_added": result.tags_added,
                "tags_removed": result.tags_removed,
                "states_updated": result.states_updated,
                "alerts": result.alerts,
                "store_queries": result.context_queries,
            }
        await self.history.record(
            tenant_id=ctx.tenant_id,
            integration_type=integration_type or "",
            data_source_id=ctx.data_source_id,
            action=f"analyze.{workflow.name}",
            status=status,
            started_at=started_at,
            metrics=details,
            error=error,
        )
