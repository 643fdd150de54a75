"""Analysis context and its bulk loader.

The loader issues one read per entity type plus one relationship read,
concurrently. Query count therefore depends only on the number of entity
types, never on how many entities a data source holds.
"""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sync_engine import metrics
from sync_engine.db.store import DocumentStore
from sync_engine.utils import utcnow

logger = logging.getLogger(__name__)

ENTITY_TYPES = ("identities", "groups", "roles", "policies", "licenses", "companies")


def _index() -> defaultdict[str, set[str]]:
    return defaultdict(set)


@dataclass
class RelationshipMaps:
    """``entity id -> set of related entity ids``."""

    identity_to_groups: dict[str, set[str]] = field(default_factory=_index)
    group_to_members: dict[str, set[str]] = field(default_factory=_index)
    identity_to_roles: dict[str, set[str]] = field(default_factory=_index)
    role_to_assignees: dict[str, set[str]] = field(default_factory=_index)
    identity_to_licenses: dict[str, set[str]] = field(default_factory=_index)
    license_to_holders: dict[str, set[str]] = field(default_factory=_index)
    policy_to_targets: dict[str, set[str]] = field(default_factory=_index)
    target_to_policies: dict[str, set[str]] = field(default_factory=_index)
    company_to_children: dict[str, set[str]] = field(default_factory=_index)
    company_to_parent: dict[str, str] = field(default_factory=dict)

    def add(self, edge: dict) -> None:
        src, tgt = edge["source_entity_id"], edge["target_entity_id"]
        kind = edge["relationship_type"]
        if kind == "member":
            self.identity_to_groups[src].add(tgt)
            self.group_to_members[tgt].add(src)
        elif kind == "assigned_role":
            self.identity_to_roles[src].add(tgt)
            self.role_to_assignees[tgt].add(src)
        elif kind == "licensed":
            self.identity_to_licenses[src].add(tgt)
            self.license_to_holders[tgt].add(src)
        elif kind == "applies_to":
            self.policy_to_targets[src].add(tgt)
            self.target_to_policies[tgt].add(src)
        elif kind == "parent":
            self.company_to_children[tgt].add(src)
            self.company_to_parent[src] = tgt

    @staticmethod
    def lookup(index: dict[str, set[str]], key: str) -> set[str]:
        """Read without inserting into a defaultdict."""
        return index.get(key, set())


@dataclass
class EntityMaps:
    by_id: dict[str, dict] = field(default_factory=dict)
    by_external_id: dict[tuple[str, str], dict] = field(default_factory=dict)
    by_type: dict[str, list[dict]] = field(default_factory=dict)

    def add(self, entity: dict) -> None:
        self.by_id[entity["id"]] = entity
        self.by_external_id[(entity["entity_type"], entity["external_id"])] = entity
        self.by_type.setdefault(entity["entity_type"], []).append(entity)


@dataclass
class LoadStats:
    queries: int = 0
    duration_ms: float = 0.0
    total_entities: int = 0
    total_relationships: int = 0


@dataclass
class AnalysisContext:
    """Per-run snapshot of one tenant + data source. Never cached or shared."""

    tenant_id: str
    data_source_id: Optional[str]
    integration_type: Optional[str]
    entities: EntityMaps
    relationships: RelationshipMaps
    stats: LoadStats
    changed_entity_ids: Optional[frozenset[str]] = None
    loaded_at: datetime = field(default_factory=utcnow)

    def of_type(self, entity_type: str) -> list[dict]:
        return self.entities.by_type.get(entity_type, [])

    @property
    def identities(self) -> list[dict]:
        return self.of_type("identities")

    @property
    def groups(self) -> list[dict]:
        return self.of_type("groups")

    @property
    def roles(self) -> list[dict]:
        return self.of_type("roles")

    @property
    def policies(self) -> list[dict]:
        return self.of_type("policies")

    @property
    def licenses(self) -> list[dict]:
        return self.of_type("licenses")

    def get(self, entity_id: str) -> Optional[dict]:
        return self.entities.by_id.get(entity_id)

    def by_external_id(self, entity_type: str, external_id: str) -> Optional[dict]:
        return self.entities.by_external_id.get((entity_type, external_id))


class ContextLoader:
    def __init__(self, store: DocumentStore, entity_types: Iterable[str] = ENTITY_TYPES):
        self.store = store
        self.entity_types = tuple(entity_types)

    async def load(
        self,
        tenant_id: str,
        data_source_id: Optional[str],
        changed_entity_ids: Optional[Iterable[str]] = None,
        integration_type: Optional[str] = None,
    ) -> AnalysisContext:
        """
        Load every entity and relationship of a data source into memory.

        Args:
            tenant_id: Tenant scope
            data_source_id: Data source to load
            changed_entity_ids: Restricts which entities nodes analyze; loading is always complete
            integration_type: Carried through for nodes and alerts

        Returns:
            AnalysisContext with relationship and entity maps built
        """
        store = self.store.scoped()
        started = time.perf_counter()

        base = {"data_source_id": data_source_id}
        reads = [
            store.list("entities", tenant_id, filters={**base, "entity_type": entity_type})
            for entity_type in self.entity_types
        ]
        reads.append(store.list("entity_relationships", tenant_id, filters=base))
        *entity_lists, edges = await asyncio.gather(*reads)

        entity_maps = EntityMaps()
        for entities in entity_lists:
            for entity in entities:
                entity_maps.add(entity)

        relationship_maps = RelationshipMaps()
        for edge in edges:
            relationship_maps.add(edge)

        stats = LoadStats(
            queries=store.stats.queries,
            duration_ms=(time.perf_counter() - started) * 1000,
            total_entities=len(entity_maps.by_id),
            total_relationships=len(edges),
        )
        metrics.record_context_load(stats.queries, stats.duration_ms / 1000)
        logger.debug(
            f"Loaded context for {tenant_id}/{data_source_id}: {stats.total_entities} entities, "
            f"{stats.total_relationships} relationships, {stats.queries} queries in {stats.duration_ms:.1f}ms"
        )
        return AnalysisContext(
            tenant_id=tenant_id,
            data_source_id=data_source_id,
            integration_type=integration_type,
            entities=entity_maps,
            relationships=relationship_maps,
            stats=stats,
            changed_entity_ids=frozenset(changed_entity_ids) if changed_entity_ids is not None else None,
        )
