"""Static scheduling configuration per integration."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class EntityTypeConfig:
    """How often, and how urgently, one entity type is synced."""

    type: str
    is_global: bool = False
    priority: int = 5
    rate_minutes: int = 60


@dataclass(frozen=True)
class IntegrationConfig:
    slug: str
    name: str
    category: str
    supported_types: tuple[EntityTypeConfig, ...]
    is_active: bool = True

    @property
    def entity_types(self) -> list[str]:
        return [t.type for t in self.supported_types]

    def entity_config(self, entity_type: str) -> Optional[EntityTypeConfig]:
        for type_config in self.supported_types:
            if type_config.type == entity_type:
                return type_config
        return None


INTEGRATIONS: dict[str, IntegrationConfig] = {
    "microsoft-365": IntegrationConfig(
        slug="microsoft-365",
        name="Microsoft 365",
        category="Identity",
        supported_types=(
            EntityTypeConfig("identities", priority=5, rate_minutes=30),
            EntityTypeConfig("policies", priority=10, rate_minutes=720),
            EntityTypeConfig("roles", priority=5, rate_minutes=1440),
            EntityTypeConfig("groups", priority=5, rate_minutes=360),
            EntityTypeConfig("licenses", priority=5, rate_minutes=360),
        ),
    ),
    "halopsa": IntegrationConfig(
        slug="halopsa",
        name="HaloPSA",
        category="PSA",
        supported_types=(
            EntityTypeConfig("companies", is_global=True, priority=5, rate_minutes=1440),
        ),
    ),
    "datto-rmm": IntegrationConfig(
        slug="datto-rmm",
        name="Datto RMM",
        category="RMM",
        supported_types=(
            EntityTypeConfig("companies", priority=5, rate_minutes=1440),
        ),
    ),
}


def get_integration(integration_type: str) -> Optional[IntegrationConfig]:
    return INTEGRATIONS.get(integration_type)
