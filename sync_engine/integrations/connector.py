"""Connector interface consumed by the fetch stage."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from sync_engine.errors import UnsupportedOperationError


@dataclass
class FetchPage:
    """One page of raw vendor records."""

    records: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


class Connector(ABC):
    """Opaque per-integration capability for reading vendor data.

    Implementations raise ConnectorError (retryable) for transient failures
    and ConnectorConfigError for authentication/configuration problems.
    """

    integration_type: str = ""
    supported_entity_types: frozenset[str] = frozenset()

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}
        self.api_calls = 0

    @abstractmethod
    async def check_health(self) -> bool:
        """Verify credentials and reachability."""

    @abstractmethod
    async def fetch(self, entity_type: str, cursor: Optional[str] = None) -> FetchPage:
        """Fetch one page of raw records for ``entity_type``."""

    def supports(self, entity_type: str) -> bool:
        return entity_type in self.supported_entity_types

    def ensure_supported(self, entity_type: str) -> None:
        if not self.supports(entity_type):
            raise UnsupportedOperationError(
                f"{self.integration_type} does not support entity type '{entity_type}'"
            )

    def external_id(self, entity_type: str, record: dict[str, Any]) -> str:
        """Vendor identifier of a raw record."""
        return str(record["id"])

    def resolve_site(self, entity_type: str, record: dict[str, Any]) -> Optional[str]:
        """Optional tenant-site association for a raw record."""
        return None

    async def close(self) -> None:
        pass
