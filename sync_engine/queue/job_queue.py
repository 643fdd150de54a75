"""Job queue: scheduling, dispatch, retry with backoff and stall recovery."""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger

from sync_engine import metrics
from sync_engine.bus.base import MessageBus
from sync_engine.bus.events import EventEnvelope, Stage, build_topic
from sync_engine.config import Settings, settings as default_settings
from sync_engine.errors import NotFoundError, StageError
from sync_engine.queue.models import Job, JobStatus
from sync_engine.queue.store import JobStore
from sync_engine.utils import new_id, utcnow

logger = logging.getLogger(__name__)


def backoff_seconds(attempt: int, base: float, maximum: float) -> float:
    """Delay before retrying after failed attempt number ``attempt`` (1-based)."""
    return min(base * 2 ** max(attempt - 1, 0), maximum)


class JobQueue:
    """Generic priority/retry substrate.

    The queue never interprets job payloads. Dispatching a job means
    marking it processing and publishing a ``sync`` envelope on
    ``{integrationType}.sync.{entityType}``; the owning stage then calls
    ``complete_job`` or ``fail_job``.
    """

    def __init__(
        self,
        store: JobStore,
        bus: MessageBus,
        history=None,
        settings: Settings = default_settings,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.store = store
        self.bus = bus
        self.history = history
        self.settings = settings
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._claim_lock = asyncio.Lock()
        self._dispatcher: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()
        self._recurring: dict[str, Job] = {}

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def schedule(self, job: Job, origin: str = "adhoc") -> str:
        """Enqueue a job and return its id."""
        if job.status != JobStatus.PENDING:
            job = job.spawn()
        if job.max_attempts <= 0:
            job.max_attempts = self.settings.queue_max_attempts
        await self.store.save(job)
        metrics.record_job_scheduled(job.integration_type, job.entity_type, origin)
        logger.debug(
            f"Scheduled job {job.id} ({job.integration_type}.{job.entity_type}, "
            f"priority {job.priority}, sync {job.sync_id})"
        )
        return job.id

    def schedule_recurring(self, name: str, cron_pattern: str | BaseTrigger, template: Job) -> None:
        """Register a recurring job; each firing enqueues a fresh copy with a new sync id.

        ``cron_pattern`` is a crontab string, or a ready trigger for periods
        cron cannot express evenly.
        """
        self._recurring[name] = template
        if isinstance(cron_pattern, str):
            trigger = CronTrigger.from_crontab(cron_pattern, timezone="UTC")
        else:
            trigger = cron_pattern
        self.scheduler.add_job(
            self._fire_recurring,
            trigger,
            args=[name],
            id=name,
            name=name,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
            replace_existing=True,
        )
        logger.info(f"Registered recurring job '{name}' ({trigger})")

    async def _fire_recurring(self, name: str) -> Optional[str]:
        template = self._recurring.get(name)
        if template is None:
            return None
        try:
            return await self.schedule(template.spawn(sync_id=new_id(), batch_number=1), origin="recurring")
        except Exception:
            # Each occurrence is independent; the next firing still runs
            logger.exception(f"Recurring job '{name}' failed to enqueue")
            return None

    def recurring_jobs(self) -> list[str]:
        return list(self._recurring)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def get_status(self, job_id: str) -> dict[str, Any]:
        """Return ``{status, attempt, error}`` for a job."""
        return (await self.get_job(job_id)).status_view()

    async def get_stats(self) -> dict[str, Any]:
        counts = await self.store.count_by_status()
        processing = counts.get(JobStatus.PROCESSING.value, 0)
        return {
            **counts,
            "concurrency": self.settings.queue_concurrency,
            "available": max(self.settings.queue_concurrency - processing, 0),
            "recurring": len(self._recurring),
        }

    async def health_check(self) -> dict[str, Any]:
        store_ok = await self.store.ping()
        dispatcher_ok = self._dispatcher is not None and not self._dispatcher.done()
        return {
            "healthy": store_ok,
            "store": "ok" if store_ok else "unreachable",
            "dispatcher": "running" if dispatcher_ok else "stopped",
            "scheduler": "running" if self.scheduler.running else "stopped",
        }

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def complete_job(self, job_id: str) -> Job:
        job = await self.get_job(job_id)
        job.transition(JobStatus.COMPLETED)
        await self.store.save(job)
        metrics.record_job_completed(job.integration_type, job.entity_type)
        await self.store.prune(JobStatus.COMPLETED, self.settings.queue_keep_completed)
        return job

    async def fail_job(self, job_id: str, error: str, retryable: bool = True) -> Job:
        """Fail the current attempt; retry with backoff or record a terminal failure."""
        job = await self.get_job(job_id)
        job.retryable = retryable
        job.transition(JobStatus.FAILED, error=error)

        if job.can_retry:
            delay = backoff_seconds(
                job.attempt,
                self.settings.queue_backoff_base_seconds,
                self.settings.queue_backoff_max_seconds,
            )
            job.transition(JobStatus.PENDING)
            job.run_at = utcnow() + timedelta(seconds=delay)
            await self.store.save(job)
            metrics.record_job_failed(job.integration_type, job.entity_type, terminal=False)
            metrics.record_job_retried(job.integration_type, job.entity_type)
            logger.warning(
                f"Job {job.id} attempt {job.attempt}/{job.max_attempts} failed: {error}. "
                f"Retrying in {delay:.1f}s"
            )
            return job

        await self.store.save(job)
        metrics.record_job_failed(job.integration_type, job.entity_type, terminal=True)
        logger.error(
            f"Job {job.id} failed terminally after {job.attempt} attempt(s) "
            f"(retryable={retryable}): {error}"
        )
        await self._record_terminal(job)
        await self.store.prune(JobStatus.FAILED, self.settings.queue_keep_failed)
        return job

    async def report_failure(self, envelope: EventEnvelope) -> Optional[Job]:
        """Handle a downstream stage failure for a job the adapter already closed.

        The sync is resubmitted as a new job carrying the next attempt number,
        or recorded as a terminal failure once attempts are exhausted.
        """
        error = StageError.from_dict(envelope.payload.get("error") or {})
        original = await self.store.get(envelope.job_id) if envelope.job_id else None
        if original is None:
            # Pruned or never stored; the envelope still identifies the sync
            logger.error(
                f"Stage failure for unknown job {envelope.job_id} "
                f"({envelope.integration_type}.{envelope.entity_type}): {error.message}"
            )
            await self._record_terminal(Job(
                id=envelope.job_id or new_id(),
                tenant_id=envelope.tenant_id,
                integration_type=envelope.integration_type,
                entity_type=envelope.entity_type,
                data_source_id=envelope.data_source_id,
                sync_id=envelope.sync_id or new_id(),
                batch_number=envelope.batch_number,
                status=JobStatus.FAILED,
                retryable=False,
                error=error.message,
                started_at=envelope.created_at,
                finished_at=utcnow(),
            ))
            metrics.record_job_failed(envelope.integration_type, envelope.entity_type, terminal=True)
            return None

        if error.retryable and original.attempt < original.max_attempts:
            delay = backoff_seconds(
                original.attempt,
                self.settings.queue_backoff_base_seconds,
                self.settings.queue_backoff_max_seconds,
            )
            retry = original.spawn(
                attempt=original.attempt,
                run_at=utcnow() + timedelta(seconds=delay),
                metadata={**original.metadata, "retry_of": original.id, "trace_id": envelope.trace_id},
            )
            await self.schedule(retry, origin="retry")
            metrics.record_job_retried(original.integration_type, original.entity_type)
            logger.warning(
                f"{error.stage or 'stage'} failed for job {original.id}: {error.message}. "
                f"Resubmitted as {retry.id} (attempt {retry.attempt + 1}/{retry.max_attempts})"
            )
            return retry

        # The fetch job itself already completed; only the sync outcome is terminal
        failed = original.spawn(
            id=original.id,
            status=JobStatus.FAILED,
            attempt=original.attempt,
            retryable=error.retryable,
            error=error.message,
            finished_at=utcnow(),
            started_at=original.started_at,
            history=list(original.history),
        )
        metrics.record_job_failed(original.integration_type, original.entity_type, terminal=True)
        logger.error(f"Job {original.id} failed terminally in {error.stage or 'stage'}: {error.message}")
        await self._record_terminal(failed)
        return failed

    async def _record_terminal(self, job: Job) -> None:
        if self.history is None:
            return
        await self.history.record(
            tenant_id=job.tenant_id,
            integration_type=job.integration_type,
            data_source_id=job.data_source_id,
            action=f"{job.action}.{job.entity_type}",
            status="failed",
            started_at=job.started_at or job.created_at,
            completed_at=job.finished_at,
            error=job.error,
            sync_id=job.sync_id,
            job_id=job.id,
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def recover_stalled(self) -> int:
        """Fail (retryably) jobs processing longer than the job timeout."""
        cutoff = utcnow() - timedelta(seconds=self.settings.queue_job_timeout_seconds)
        stalled = [
            j for j in await self.store.list_by_status(JobStatus.PROCESSING)
            if j.started_at and j.started_at < cutoff
        ]
        for job in stalled:
            metrics.record_job_stalled()
            await self.fail_job(job.id, "Job stalled (processing timeout exceeded)", retryable=True)
        return len(stalled)

    async def _claim(self) -> list[Job]:
        async with self._claim_lock:
            counts = await self.store.count_by_status()
            capacity = self.settings.queue_concurrency - counts.get(JobStatus.PROCESSING.value, 0)
            if capacity <= 0:
                return []
            claimed = []
            for job in await self.store.ready(utcnow(), capacity):
                job.transition(JobStatus.PROCESSING)
                # The lock covers this process only; the store arbitrates between dispatchers
                if await self.store.claim(job):
                    claimed.append(job)
            metrics.update_jobs_processing(counts.get(JobStatus.PROCESSING.value, 0) + len(claimed))
            return claimed

    def _sync_envelope(self, job: Job) -> EventEnvelope:
        trace_id = job.metadata.get("trace_id") or new_id()
        return EventEnvelope(
            trace_id=trace_id,
            tenant_id=job.tenant_id,
            integration_type=job.integration_type,
            entity_type=job.entity_type,
            data_source_id=job.data_source_id,
            stage=Stage.SYNC,
            job_id=job.id,
            sync_id=job.sync_id,
            batch_number=job.batch_number,
            payload={"action": job.action, "attempt": job.attempt, "metadata": job.metadata},
        )

    async def dispatch_once(self) -> list[Job]:
        """Claim ready jobs up to capacity and publish their sync envelopes."""
        await self.recover_stalled()
        claimed = await self._claim()
        await asyncio.gather(*(self._publish(job) for job in claimed))
        return claimed

    async def _publish(self, job: Job) -> None:
        topic = build_topic(Stage.SYNC, job.entity_type, job.integration_type)
        await self.bus.publish(topic, self._sync_envelope(job))

    async def _dispatch_loop(self) -> None:
        while True:
            try:
                await self.recover_stalled()
                for job in await self._claim():
                    task = asyncio.create_task(self._publish(job))
                    self._inflight.add(task)
                    task.add_done_callback(self._inflight.discard)
            except Exception:
                logger.exception("Dispatcher iteration failed")
            await asyncio.sleep(self.settings.queue_poll_interval_seconds)

    async def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
        if self._dispatcher is None:
            self._dispatcher = asyncio.create_task(self._dispatch_loop())
        logger.info(f"Job queue started (concurrency {self.settings.queue_concurrency})")

    async def close(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        if self._dispatcher:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        for task in list(self._inflight):
            task.cancel()
        await self.store.close()
