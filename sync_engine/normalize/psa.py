"""PSA / RMM company normalizers."""

from typing import Any

from sync_engine.normalize.base import Normalizer


def _optional_id(value) -> str | None:
    if value in (None, "", 0, "0", -1):
        return None
    return str(value)


class HaloPSACompanyNormalizer(Normalizer):
    entity_type = "companies"

    def normalize(self, record: dict[str, Any]) -> dict[str, Any]:
        self.require(record, "id", "name")
        return {
            "name": record["name"],
            "enabled": not record.get("inactive", False),
            "parent_id": _optional_id(record.get("parent_id")),
            "website": record.get("website"),
            "phone": record.get("main_phone"),
        }


class DattoRMMCompanyNormalizer(Normalizer):
    """Datto RMM sites map onto companies."""

    entity_type = "companies"

    def normalize(self, record: dict[str, Any]) -> dict[str, Any]:
        self.require(record, "name")
        return {
            "name": record["name"],
            "enabled": not record.get("onDemand", False),
            "parent_id": _optional_id(record.get("parentUid")),
            "description": record.get("description"),
            "site_uid": record.get("uid"),
        }
