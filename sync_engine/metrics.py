"""Prometheus metrics for the sync engine."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("sync_engine", "Sync engine application info")
app_info.info({"version": "0.1.0", "name": "sync-engine"})

# Job queue metrics
jobs_scheduled_total = Counter(
    "sync_jobs_scheduled_total",
    "Total number of jobs scheduled",
    ["integration_type", "entity_type", "origin"],
)

jobs_completed_total = Counter(
    "sync_jobs_completed_total",
    "Total number of jobs completed",
    ["integration_type", "entity_type"],
)

jobs_failed_total = Counter(
    "sync_jobs_failed_total",
    "Total number of job attempts that failed",
    ["integration_type", "entity_type", "terminal"],
)

jobs_retried_total = Counter(
    "sync_jobs_retried_total",
    "Total number of job retries",
    ["integration_type", "entity_type"],
)

jobs_stalled_total = Counter(
    "sync_jobs_stalled_total",
    "Total number of jobs failed by the stall watchdog",
)

jobs_processing = Gauge(
    "sync_jobs_processing",
    "Number of jobs currently processing",
)

# Stage metrics
stage_duration_seconds = Histogram(
    "sync_stage_duration_seconds",
    "Time spent in a pipeline stage per batch",
    ["stage", "entity_type"],
    buckets=[0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

records_fetched_total = Counter(
    "sync_records_fetched_total",
    "Total number of raw records fetched from connectors",
    ["integration_type", "entity_type"],
)

entity_changes_total = Counter(
    "sync_entity_changes_total",
    "Entity changes applied by the normalize stage",
    ["entity_type", "kind"],
)

relationships_upserted_total = Counter(
    "sync_relationships_upserted_total",
    "Relationship edges created or removed by the link stage",
    ["relationship_type", "kind"],
)

bus_handler_errors_total = Counter(
    "sync_bus_handler_errors_total",
    "Exceptions raised by bus subscribers",
    ["topic"],
)

# Analysis metrics
context_load_queries = Histogram(
    "sync_context_load_queries",
    "Bulk reads issued per context load",
    buckets=[1, 2, 4, 8, 16, 32],
)

context_load_duration_seconds = Histogram(
    "sync_context_load_duration_seconds",
    "Time spent loading an analysis context",
    buckets=[0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0],
)

workflow_runs_total = Counter(
    "sync_workflow_runs_total",
    "Analysis workflow runs",
    ["worker", "status"],
)

alerts_total = Counter(
    "sync_alerts_total",
    "Alert lifecycle events",
    ["alert_type", "action"],
)


def record_job_scheduled(integration_type: str, entity_type: str, origin: str = "adhoc"):
    """Record a job entering the queue."""
    jobs_scheduled_total.labels(
        integration_type=integration_type, entity_type=entity_type, origin=origin
    ).inc()


def record_job_completed(integration_type: str, entity_type: str):
    """Record a successful job."""
    jobs_completed_total.labels(integration_type=integration_type, entity_type=entity_type).inc()


def record_job_failed(integration_type: str, entity_type: str, terminal: bool):
    """Record a failed job attempt."""
    jobs_failed_total.labels(
        integration_type=integration_type,
        entity_type=entity_type,
        terminal="true" if terminal else "false",
    ).inc()


def record_job_retried(integration_type: str, entity_type: str):
    jobs_retried_total.labels(integration_type=integration_type, entity_type=entity_type).inc()


def record_job_stalled():
    jobs_stalled_total.inc()


def update_jobs_processing(count: int):
    jobs_processing.set(count)


def record_stage_duration(stage: str, entity_type: str, duration: float):
    """Record how long a stage took for one batch."""
    stage_duration_seconds.labels(stage=stage, entity_type=entity_type).observe(duration)


def record_records_fetched(integration_type: str, entity_type: str, count: int):
    records_fetched_total.labels(
        integration_type=integration_type, entity_type=entity_type
    ).inc(count)


def record_entity_changes(entity_type: str, created: int, updated: int, unchanged: int):
    """Record normalize stage change counts."""
    for kind, count in (("created", created), ("updated", updated), ("unchanged", unchanged)):
        if count:
            entity_changes_total.labels(entity_type=entity_type, kind=kind).inc(count)


def record_relationships(relationship_type: str, created: int, removed: int):
    if created:
        relationships_upserted_total.labels(relationship_type=relationship_type, kind="created").inc(created)
    if removed:
        relationships_upserted_total.labels(relationship_type=relationship_type, kind="removed").inc(removed)


def record_bus_handler_error(topic: str):
    bus_handler_errors_total.labels(topic=topic).inc()


def record_context_load(queries: int, duration: float):
    """Record one context load."""
    context_load_queries.observe(queries)
    context_load_duration_seconds.observe(duration)


def record_workflow_run(worker: str, success: bool):
    workflow_runs_total.labels(worker=worker, status="success" if success else "failure").inc()


def record_alert(alert_type: str, action: str, count: int = 1):
    if count:
        alerts_total.labels(alert_type=alert_type, action=action).inc(count)
