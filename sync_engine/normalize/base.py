"""Normalizer interface."""

from abc import ABC, abstractmethod
from typing import Any

from sync_engine.errors import NormalizationError


class Normalizer(ABC):
    """Maps one vendor's raw record of one entity type into ``normalizedData``."""

    entity_type: str = ""

    @abstractmethod
    def normalize(self, record: dict[str, Any]) -> dict[str, Any]:
        """Return the canonical shape or raise NormalizationError."""

    @staticmethod
    def require(record: dict[str, Any], *keys: str) -> None:
        if not isinstance(record, dict):
            raise NormalizationError(f"Expected an object, got {type(record).__name__}")
        missing = [k for k in keys if record.get(k) in (None, "")]
        if missing:
            raise NormalizationError(f"Record missing required field(s): {', '.join(missing)}")


def as_id_list(values) -> list[str]:
    """Normalize a list of ids or objects carrying an ``id`` into strings."""
    result = []
    for value in values or []:
        if isinstance(value, dict):
            value = value.get("id")
        if value not in (None, ""):
            result.append(str(value))
    return result
