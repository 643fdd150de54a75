"""Job model and status transitions."""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sync_engine.errors import InvalidTransitionError
from sync_engine.utils import new_id, utcnow


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    # failed -> pending is a retry and is further gated in Job.transition
    JobStatus.FAILED: {JobStatus.PENDING},
    JobStatus.COMPLETED: set(),
}

_DATETIME_FIELDS = ("run_at", "created_at", "started_at", "finished_at")


@dataclass
class Job:
    """One unit of scheduled work.

    ``attempt`` counts attempts started; it is incremented when the job is
    claimed for processing.
    """

    tenant_id: str
    integration_type: str
    entity_type: str
    action: str = "sync"
    data_source_id: Optional[str] = None
    priority: int = 5  # Lower number = higher priority
    metadata: dict[str, Any] = field(default_factory=dict)

    id: str = field(default_factory=new_id)
    sync_id: str = field(default_factory=new_id)
    batch_number: int = 1
    status: JobStatus = JobStatus.PENDING
    attempt: int = 0
    max_attempts: int = 3
    retryable: bool = True
    error: Optional[str] = None

    run_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        if self.status == JobStatus.COMPLETED:
            return True
        return self.status == JobStatus.FAILED and not self.can_retry

    @property
    def can_retry(self) -> bool:
        return self.retryable and self.attempt < self.max_attempts

    def transition(self, new_status: JobStatus, error: Optional[str] = None) -> None:
        """Move to ``new_status`` or raise InvalidTransitionError."""
        new_status = JobStatus(new_status)
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Job {self.id}: illegal transition {self.status.value} -> {new_status.value}"
            )
        if self.status == JobStatus.FAILED and not self.can_retry:
            raise InvalidTransitionError(
                f"Job {self.id}: failure is terminal (attempt {self.attempt}/{self.max_attempts})"
            )

        now = utcnow()
        if new_status == JobStatus.PROCESSING:
            self.attempt += 1
            self.started_at = now
            self.finished_at = None
        elif new_status in (JobStatus.COMPLETED, JobStatus.FAILED):
            self.finished_at = now
        if error is not None or new_status == JobStatus.COMPLETED:
            self.error = error

        self.history.append(
            {"from": self.status.value, "to": new_status.value, "at": now.isoformat(), "attempt": self.attempt}
        )
        self.status = new_status

    def spawn(self, **overrides) -> "Job":
        """Fresh pending job from this one used as a template."""
        values = {
            "id": new_id(),
            "status": JobStatus.PENDING,
            "attempt": 0,
            "retryable": True,
            "error": None,
            "run_at": utcnow(),
            "created_at": utcnow(),
            "started_at": None,
            "finished_at": None,
            "history": [],
            "metadata": dict(self.metadata),
        }
        values.update(overrides)
        return replace(self, **values)

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["status"] = self.status.value
        for name in _DATETIME_FIELDS:
            value = data[name]
            data[name] = value.isoformat() if value else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        values = dict(data)
        values["status"] = JobStatus(values.get("status", JobStatus.PENDING))
        for name in _DATETIME_FIELDS:
            if values.get(name):
                values[name] = datetime.fromisoformat(values[name])
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})

    def status_view(self) -> dict[str, Any]:
        """Status query wire shape: {status, attempt, error}."""
        return {"status": self.status.value, "attempt": self.attempt, "error": self.error}
