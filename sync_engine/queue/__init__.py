"""Priority job queue with retry and recurring scheduling."""

from sync_engine.queue.models import Job, JobStatus

__all__ = ["Job", "JobStatus"]
