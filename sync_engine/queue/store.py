"""Job stores: in-memory and Redis-backed."""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

import redis.asyncio as redis

from sync_engine.config import settings
from sync_engine.errors import StorageError
from sync_engine.queue.models import Job, JobStatus

logger = logging.getLogger(__name__)

# Take a job off the pending zset and store it as processing, or do nothing
# when another dispatcher already took it.
# KEYS: pending zset, job key, pending status set, processing status set
# ARGV: job id, job JSON
CLAIM_SCRIPT = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then
    return 0
end
redis.call('SET', KEYS[2], ARGV[2])
redis.call('SREM', KEYS[3], ARGV[1])
redis.call('SADD', KEYS[4], ARGV[1])
return 1
"""


def _order_key(job: Job) -> tuple:
    return (job.priority, job.run_at, job.created_at)


class JobStore(ABC):
    """Persistence for jobs. Claiming order is (priority, run_at)."""

    @abstractmethod
    async def save(self, job: Job) -> None:
        """Insert or replace a job and index it by status."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        """Load a job by id."""

    @abstractmethod
    async def ready(self, now: datetime, limit: int) -> list[Job]:
        """Pending jobs due at ``now``, highest priority first."""

    async def claim(self, job: Job) -> bool:
        """Persist ``job`` (already moved to processing) unless another
        dispatcher claimed it first. Returns whether this caller owns it."""
        await self.save(job)
        return True

    @abstractmethod
    async def list_by_status(self, status: JobStatus) -> list[Job]:
        """Every job currently in ``status``."""

    @abstractmethod
    async def count_by_status(self) -> dict[str, int]:
        """Job counts keyed by status value."""

    @abstractmethod
    async def prune(self, status: JobStatus, keep: int) -> int:
        """Drop the oldest finished jobs in ``status`` beyond ``keep``."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class MemoryJobStore(JobStore):
    """Process-local store for tests and single-process deployments."""

    def __init__(self):
        self._jobs: dict[str, Job] = {}

    async def save(self, job: Job) -> None:
        self._jobs[job.id] = job

    async def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    async def ready(self, now: datetime, limit: int) -> list[Job]:
        due = [j for j in self._jobs.values() if j.status == JobStatus.PENDING and j.run_at <= now]
        due.sort(key=_order_key)
        return due[:limit]

    async def list_by_status(self, status: JobStatus) -> list[Job]:
        return [j for j in self._jobs.values() if j.status == status]

    async def count_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return counts

    async def prune(self, status: JobStatus, keep: int) -> int:
        finished = sorted(
            (j for j in self._jobs.values() if j.status == status and j.is_terminal),
            key=lambda j: j.finished_at or j.created_at,
            reverse=True,
        )
        stale = finished[keep:]
        for job in stale:
            del self._jobs[job.id]
        return len(stale)


class RedisJobStore(JobStore):
    """Redis store.

    Layout:
        {prefix}job:{id}            JSON job document
        {prefix}pending             zset of pending job ids scored by run_at
        {prefix}status:{status}     set of job ids per status
    """

    def __init__(self, redis_url: Optional[str] = None, prefix: str = "sync:queue:"):
        self.redis_url = redis_url or settings.redis_url
        self.prefix = prefix
        self._redis: Optional[redis.Redis] = None
        self._claim_script = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = await redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}job:{job_id}"

    def _status_key(self, status: JobStatus | str) -> str:
        return f"{self.prefix}status:{JobStatus(status).value}"

    async def save(self, job: Job) -> None:
        client = await self._get_redis()
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(job.id), json.dumps(job.to_dict()))
                for status in JobStatus:
                    if status != job.status:
                        pipe.srem(self._status_key(status), job.id)
                pipe.sadd(self._status_key(job.status), job.id)
                if job.status == JobStatus.PENDING:
                    pipe.zadd(f"{self.prefix}pending", {job.id: job.run_at.timestamp()})
                else:
                    pipe.zrem(f"{self.prefix}pending", job.id)
                await pipe.execute()
        except redis.RedisError as e:
            raise StorageError(f"Failed to save job {job.id}: {e}") from e

    async def get(self, job_id: str) -> Optional[Job]:
        client = await self._get_redis()
        raw = await client.get(self._job_key(job_id))
        return Job.from_dict(json.loads(raw)) if raw else None

    async def _load_many(self, job_ids) -> list[Job]:
        if not job_ids:
            return []
        client = await self._get_redis()
        raws = await client.mget([self._job_key(i) for i in job_ids])
        return [Job.from_dict(json.loads(r)) for r in raws if r]

    async def ready(self, now: datetime, limit: int) -> list[Job]:
        client = await self._get_redis()
        due_ids = await client.zrangebyscore(f"{self.prefix}pending", "-inf", now.timestamp())
        due = [j for j in await self._load_many(due_ids) if j.status == JobStatus.PENDING]
        due.sort(key=_order_key)
        return due[:limit]

    async def claim(self, job: Job) -> bool:
        client = await self._get_redis()
        if self._claim_script is None:
            self._claim_script = client.register_script(CLAIM_SCRIPT)
        try:
            won = await self._claim_script(
                keys=[
                    f"{self.prefix}pending",
                    self._job_key(job.id),
                    self._status_key(JobStatus.PENDING),
                    self._status_key(job.status),
                ],
                args=[job.id, json.dumps(job.to_dict())],
            )
        except redis.RedisError as e:
            raise StorageError(f"Failed to claim job {job.id}: {e}") from e
        return bool(won)

    async def list_by_status(self, status: JobStatus) -> list[Job]:
        client = await self._get_redis()
        ids = await client.smembers(self._status_key(status))
        return await self._load_many(list(ids))

    async def count_by_status(self) -> dict[str, int]:
        client = await self._get_redis()
        return {s.value: await client.scard(self._status_key(s)) for s in JobStatus}

    async def prune(self, status: JobStatus, keep: int) -> int:
        finished = [j for j in await self.list_by_status(status) if j.is_terminal]
        finished.sort(key=lambda j: j.finished_at or j.created_at, reverse=True)
        stale = finished[keep:]
        if stale:
            client = await self._get_redis()
            async with client.pipeline(transaction=True) as pipe:
                for job in stale:
                    pipe.delete(self._job_key(job.id))
                    pipe.srem(self._status_key(status), job.id)
                await pipe.execute()
        return len(stale)

    async def ping(self) -> bool:
        try:
            client = await self._get_redis()
            return bool(await client.ping())
        except redis.RedisError:
            logger.warning("Redis job store ping failed", exc_info=True)
            return False

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._claim_script = None
