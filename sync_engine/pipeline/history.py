"""Per-job metrics and Job History persistence."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Optional

from sync_engine import metrics as prom
from sync_engine.db.store import DocumentStore
from sync_engine.utils import utcnow

logger = logging.getLogger(__name__)

_COUNTERS = (
    "api_calls",
    "store_queries",
    "store_mutations",
    "records_fetched",
    "entities_created",
    "entities_updated",
    "entities_unchanged",
    "entities_deleted",
    "normalization_failures",
    "relationships_created",
    "relationships_removed",
)


@dataclass
class JobMetrics:
    """Accumulated across stages and persisted once with the Job History record."""

    stage_durations_ms: dict[str, float] = field(default_factory=dict)
    api_calls: int = 0
    store_queries: int = 0
    store_mutations: int = 0
    records_fetched: int = 0
    entities_created: int = 0
    entities_updated: int = 0
    entities_unchanged: int = 0
    entities_deleted: int = 0
    normalization_failures: int = 0
    relationships_created: int = 0
    relationships_removed: int = 0
    error: Optional[dict[str, Any]] = None

    def merge(self, other: "JobMetrics") -> "JobMetrics":
        """New metrics combining both; durations of the same stage add up."""
        durations = dict(self.stage_durations_ms)
        for stage, ms in other.stage_durations_ms.items():
            durations[stage] = durations.get(stage, 0.0) + ms
        merged = JobMetrics(stage_durations_ms=durations, error=other.error or self.error)
        for name in _COUNTERS:
            setattr(merged, name, getattr(self, name) + getattr(other, name))
        return merged

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "JobMetrics":
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class MetricsCollector:
    """Stage timers and counters for one stage invocation."""

    def __init__(self, previous: Optional[dict[str, Any]] = None):
        self.previous = JobMetrics.from_dict(previous)
        self.current = JobMetrics()

    @contextmanager
    def stage(self, name: str, entity_type: str = ""):
        started = time.perf_counter()
        try:
            yield self
        finally:
            elapsed = time.perf_counter() - started
            durations = self.current.stage_durations_ms
            durations[name] = durations.get(name, 0.0) + elapsed * 1000
            prom.record_stage_duration(name, entity_type, elapsed)

    def track(self, counter: str, amount: int = 1) -> None:
        setattr(self.current, counter, getattr(self.current, counter) + amount)

    def track_store(self, store: DocumentStore) -> None:
        self.track("store_queries", store.stats.queries)
        self.track("store_mutations", store.stats.mutations)

    def track_error(self, error: dict[str, Any]) -> None:
        self.current.error = error

    def result(self) -> JobMetrics:
        """Previous stages' metrics merged with this stage's."""
        return self.previous.merge(self.current)


class JobHistoryManager:
    """Writes and summarizes Job History records."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def record(
        self,
        tenant_id: str,
        integration_type: str,
        data_source_id: Optional[str],
        action: str,
        status: str,
        started_at: datetime,
        completed_at: Optional[datetime] = None,
        metrics: Optional[JobMetrics | dict] = None,
        error: Optional[str] = None,
        sync_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> str:
        completed_at = completed_at or utcnow()
        if isinstance(metrics, JobMetrics):
            metrics = metrics.to_dict()
        duration_ms = int((completed_at - started_at).total_seconds() * 1000)
        [history_id] = await self.store.insert(
            "job_history",
            tenant_id,
            [{
                "integration_type": integration_type,
                "data_source_id": data_source_id,
                "action": action,
                "status": status,
                "started_at": started_at,
                "completed_at": completed_at,
                "duration_ms": max(duration_ms, 0),
                "error": error,
                "metrics": metrics,
                "sync_id": sync_id,
                "job_id": job_id,
            }],
        )
        logger.info(
            f"Job history: {integration_type} {action} {status} "
            f"({duration_ms}ms, data source {data_source_id})"
        )
        return history_id

    async def list(self, tenant_id: str, data_source_id: Optional[str] = None, limit: int = 50) -> list[dict]:
        filters = {"data_source_id": data_source_id} if data_source_id else None
        return await self.store.list(
            "job_history", tenant_id, filters=filters, order_by="started_at", descending=True, limit=limit
        )

    async def summary(self, tenant_id: str, data_source_id: Optional[str] = None, limit: int = 100) -> dict[str, Any]:
        """Aggregate recent runs: counts per status, average duration, last run."""
        rows = await self.list(tenant_id, data_source_id, limit)
        counts: dict[str, int] = {}
        for row in rows:
            counts[row["status"]] = counts.get(row["status"], 0) + 1
        durations = [row["duration_ms"] for row in rows if row["duration_ms"] is not None]
        last = rows[0] if rows else None
        return {
            "total": len(rows),
            "by_status": counts,
            "avg_duration_ms": round(sum(durations) / len(durations), 1) if durations else None,
            "last_run_at": last["started_at"] if last else None,
            "last_status": last["status"] if last else None,
            "last_error": next((r["error"] for r in rows if r["error"]), None),
        }
