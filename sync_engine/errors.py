"""Exception hierarchy for the sync engine."""

from dataclasses import asdict, dataclass
from typing import Optional


class SyncEngineError(Exception):
    """Base class for every engine error."""

    code = "sync_engine_error"
    retryable = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class ConnectorError(SyncEngineError):
    """Vendor API call failed. Retryable unless stated otherwise."""

    code = "connector_error"
    retryable = True


class ConnectorConfigError(ConnectorError):
    """Authentication or configuration problem; retrying will not help."""

    code = "connector_config_error"
    retryable = False


class UnsupportedOperationError(SyncEngineError):
    """Entity type or action not implemented by a stage component."""

    code = "unsupported_operation"
    retryable = False


class StorageError(SyncEngineError):
    """Document store read or write failed."""

    code = "storage_error"
    retryable = True


class WriteConflictError(StorageError):
    """A conditional write matched no row; another writer got there first."""

    code = "write_conflict"
    retryable = False


class NormalizationError(SyncEngineError):
    """A single raw record could not be normalized."""

    code = "normalization_error"


class InvalidTransitionError(SyncEngineError):
    """Illegal job or alert status change."""

    code = "invalid_transition"


class WorkflowOrderError(SyncEngineError):
    """A node consumes something no earlier node provides."""

    code = "workflow_order"


class WorkflowNodeError(SyncEngineError):
    """A node failed during a workflow run."""

    code = "workflow_node"

    def __init__(self, node: str, cause: Exception):
        super().__init__(f"Node '{node}' failed: {cause}")
        self.node = node
        self.cause = cause


class AlertStateError(InvalidTransitionError):
    """Suppress/unsuppress requested from the wrong alert status."""

    code = "alert_state"


class NotFoundError(SyncEngineError):
    code = "not_found"


@dataclass
class StageError:
    """Structured failure published on failed.{entityType} and reported to the queue."""

    message: str
    code: str
    retryable: bool
    stage: str = ""

    @classmethod
    def from_exception(cls, exc: Exception, stage: str = "") -> "StageError":
        if isinstance(exc, SyncEngineError):
            return cls(message=exc.message, code=exc.code, retryable=exc.retryable, stage=stage)
        # Unknown failures are treated as transient
        return cls(message=str(exc) or exc.__class__.__name__, code="unexpected", retryable=True, stage=stage)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "StageError":
        return cls(
            message=data.get("message", ""),
            code=data.get("code", "unexpected"),
            retryable=bool(data.get("retryable", True)),
            stage=data.get("stage", ""),
        )
