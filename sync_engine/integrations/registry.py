"""Registries mapping integration keys to connector and normalizer implementations."""

import logging
from typing import Callable, Optional

from sync_engine.errors import UnsupportedOperationError
from sync_engine.integrations.connector import Connector
from sync_engine.normalize.base import Normalizer

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[dict], Connector]


class ConnectorRegistry:
    """Maps integration type -> connector factory ``(data_source_config) -> Connector``."""

    def __init__(self, factories: Optional[dict[str, ConnectorFactory]] = None):
        self._factories: dict[str, ConnectorFactory] = dict(factories or {})

    def register(self, integration_type: str, factory: ConnectorFactory) -> None:
        self._factories[integration_type] = factory
        logger.info(f"Registered connector for integration: {integration_type}")

    def create(self, integration_type: str, config: Optional[dict] = None) -> Connector:
        """
        Build a connector for one data source.

        Args:
            integration_type: Integration key, e.g. ``microsoft-365``
            config: Data source configuration

        Returns:
            Connector instance

        Raises:
            UnsupportedOperationError: If no connector is registered
        """
        factory = self._factories.get(integration_type)
        if factory is None:
            raise UnsupportedOperationError(
                f"No connector registered for {integration_type}. "
                f"Available: {self.list_integrations()}"
            )
        return factory(config or {})

    def list_integrations(self) -> list[str]:
        return sorted(self._factories)


class NormalizerRegistry:
    """Maps (integration type, entity type) -> normalizer."""

    def __init__(self):
        self._normalizers: dict[tuple[str, str], Normalizer] = {}

    def register(self, integration_type: str, normalizer: Normalizer) -> None:
        self._normalizers[(integration_type, normalizer.entity_type)] = normalizer

    def get(self, integration_type: str, entity_type: str) -> Normalizer:
        normalizer = self._normalizers.get((integration_type, entity_type))
        if normalizer is None:
            raise UnsupportedOperationError(
                f"No normalizer for {integration_type}/{entity_type}"
            )
        return normalizer

    def has(self, integration_type: str, entity_type: str) -> bool:
        return (integration_type, entity_type) in self._normalizers

    def entity_types(self) -> set[str]:
        return {entity_type for _, entity_type in self._normalizers}


def build_connector_registry(timeout: Optional[float] = None) -> ConnectorRegistry:
    """Registry with every built-in connector."""
    from sync_engine.integrations.halopsa import HaloPSAConnector
    from sync_engine.integrations.microsoft365 import Microsoft365Connector

    registry = ConnectorRegistry()
    registry.register("microsoft-365", lambda config: Microsoft365Connector(config, timeout=timeout))
    registry.register("halopsa", lambda config: HaloPSAConnector(config, timeout=timeout))
    return registry


def build_normalizer_registry() -> NormalizerRegistry:
    """Registry with every built-in normalizer."""
    from sync_engine.normalize import microsoft365, psa

    registry = NormalizerRegistry()
    for normalizer in microsoft365.NORMALIZERS:
        registry.register("microsoft-365", normalizer)
    registry.register("halopsa", psa.HaloPSACompanyNormalizer())
    registry.register("datto-rmm", psa.DattoRMMCompanyNormalizer())
    return registry
