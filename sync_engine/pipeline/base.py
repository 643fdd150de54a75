"""Shared stage plumbing: failure reporting."""

import logging
from typing import Optional

from sync_engine.bus.base import MessageBus
from sync_engine.bus.events import EventEnvelope, Stage, build_topic
from sync_engine.errors import StageError

logger = logging.getLogger(__name__)


async def publish_failure(
    bus: MessageBus,
    envelope: EventEnvelope,
    exc: Exception,
    stage: str,
    queue=None,
    metrics: Optional[dict] = None,
) -> StageError:
    """Publish ``failed.{entityType}`` for a batch-level exception.

    When ``queue`` is given the failure is also reported to it, which
    retries the sync or records a terminal failure.
    """
    error = StageError.from_exception(exc, stage=stage)
    failed = envelope.child(
        Stage.FAILED,
        {"error": error.to_dict(), "failed_stage": stage},
        metrics=metrics or envelope.metrics,
    )
    logger.error(
        f"{stage} failed for {envelope.integration_type}.{envelope.entity_type} "
        f"(job {envelope.job_id}, trace {envelope.trace_id}): {error.message}"
    )
    await bus.publish(build_topic(Stage.FAILED, envelope.entity_type), failed)
    if queue is not None:
        await queue.report_failure(failed)
    return error
