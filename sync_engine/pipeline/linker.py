"""Link stage: derive relationship edges from normalized data."""

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from sync_engine import metrics as prom
from sync_engine.bus.base import MessageBus
from sync_engine.bus.events import EventEnvelope, Stage, build_topic
from sync_engine.db.store import DocumentStore, StoreOp
from sync_engine.logging_config import envelope_logger
from sync_engine.pipeline.base import publish_failure
from sync_engine.pipeline.history import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinkRule:
    """``source_type.field`` holds external ids of ``target_type`` entities.

    The stored edge points from the holder to the referenced entity, or
    the other way round when ``inverse`` is set (a group's member list
    yields identity -> group edges).
    """

    integration_type: str
    source_type: str
    field: str
    target_type: str
    relationship_type: str
    inverse: bool = False

    def orient(self, holder: tuple[str, str], referenced: tuple[str, str]) -> tuple:
        """Edge key ``(src_type, src_id, tgt_type, tgt_id, relationship_type)``."""
        src, tgt = (referenced, holder) if self.inverse else (holder, referenced)
        return (src[0], src[1], tgt[0], tgt[1], self.relationship_type)


DEFAULT_RULES = (
    LinkRule("microsoft-365", "identities", "group_ids", "groups", "member"),
    LinkRule("microsoft-365", "identities", "role_ids", "roles", "assigned_role"),
    LinkRule("microsoft-365", "identities", "license_ids", "licenses", "licensed"),
    LinkRule("microsoft-365", "groups", "member_ids", "identities", "member", inverse=True),
    LinkRule("microsoft-365", "roles", "member_ids", "identities", "assigned_role", inverse=True),
    LinkRule("microsoft-365", "policies", "include_users", "identities", "applies_to"),
    LinkRule("microsoft-365", "policies", "include_groups", "groups", "applies_to"),
    LinkRule("halopsa", "companies", "parent_id", "companies", "parent"),
    LinkRule("datto-rmm", "companies", "parent_id", "companies", "parent"),
)


def referenced_ids(entity: dict, field: str) -> list[str]:
    value = (entity.get("normalized_data") or {}).get(field)
    if value in (None, ""):
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value if v not in (None, "")]
    return [str(value)]


def _edge_key(row: dict) -> tuple:
    return (
        row["source_entity_type"],
        row["source_entity_id"],
        row["target_entity_type"],
        row["target_entity_id"],
        row["relationship_type"],
    )


class Linker:
    """Subscribes to ``processed.*``; publishes ``linked.{entityType}``."""

    def __init__(
        self,
        rules: Iterable[LinkRule],
        bus: MessageBus,
        store: DocumentStore,
        queue=None,
    ):
        self.rules = tuple(rules)
        self.bus = bus
        self.store = store
        self.queue = queue

    async def start(self) -> None:
        await self.bus.subscribe(build_topic(Stage.PROCESSED, "*"), self.handle_processed)
        logger.info(f"Linker subscribed with {len(self.rules)} rule(s)")

    def forward_rules(self, integration_type: str, entity_type: str) -> list[LinkRule]:
        return [r for r in self.rules if r.integration_type == integration_type and r.source_type == entity_type]

    def reverse_rules(self, integration_type: str, entity_type: str) -> list[LinkRule]:
        return [r for r in self.rules if r.integration_type == integration_type and r.target_type == entity_type]

    async def handle_processed(self, envelope: EventEnvelope) -> None:
        collector = MetricsCollector(envelope.metrics)
        store = self.store.scoped()
        try:
            with collector.stage("linker", envelope.entity_type):
                payload = await self._link(envelope, store, collector)
            collector.track_store(store)
            result = collector.result()
        except Exception as e:
            collector.track_store(store)
            await publish_failure(
                self.bus, envelope, e, "linker", queue=self.queue, metrics=collector.result().to_dict()
            )
            return

        linked = envelope.child(Stage.LINKED, payload, metrics=result.to_dict())
        await self.bus.publish(build_topic(Stage.LINKED, envelope.entity_type), linked)

    async def _entities(self, store: DocumentStore, envelope: EventEnvelope, entity_type: str, external_ids=None) -> list[dict]:
        in_filters = {"external_id": external_ids} if external_ids is not None else None
        return await store.list(
            "entities",
            envelope.tenant_id,
            filters={
                "integration_type": envelope.integration_type,
                "data_source_id": envelope.data_source_id,
                "entity_type": entity_type,
            },
            in_filters=in_filters,
        )

    async def _edges(self, store: DocumentStore, envelope: EventEnvelope, rule: LinkRule, anchor: str, ids) -> list[dict]:
        return await store.list(
            "entity_relationships",
            envelope.tenant_id,
            filters={
                "data_source_id": envelope.data_source_id,
                "relationship_type": rule.relationship_type,
                "source_entity_type": rule.target_type if rule.inverse else rule.source_type,
                "target_entity_type": rule.source_type if rule.inverse else rule.target_type,
            },
            in_filters={anchor: ids},
            include_deleted=True,
        )

    async def _link(self, envelope: EventEnvelope, store: DocumentStore, collector: MetricsCollector) -> dict[str, Any]:
        log = envelope_logger(__name__, envelope)
        changed_ids = list(envelope.payload.get("changed_ids") or [])
        entity_type = envelope.entity_type

        desired: set[tuple] = set()
        removable: set[tuple] = set()
        existing: dict[tuple, dict] = {}

        changed = []
        if changed_ids:
            changed = await store.list("entities", envelope.tenant_id, in_filters={"id": changed_ids})

        # Forward: edges implied by the changed holders replace their old edges
        for rule in self.forward_rules(envelope.integration_type, entity_type) if changed else []:
            refs = {ref for entity in changed for ref in referenced_ids(entity, rule.field)}
            targets = {}
            if refs:
                targets = {t["external_id"]: t["id"] for t in await self._entities(store, envelope, rule.target_type, refs)}
            for entity in changed:
                for ref in referenced_ids(entity, rule.field):
                    if ref in targets:
                        desired.add(rule.orient((entity_type, entity["id"]), (rule.target_type, targets[ref])))

            anchor = "target_entity_id" if rule.inverse else "source_entity_id"
            for row in await self._edges(store, envelope, rule, anchor, [e["id"] for e in changed]):
                key = _edge_key(row)
                existing[key] = row
                if row["deleted_at"] is None:
                    removable.add(key)

        # Reverse: holders that already reference the changed entities gain their edges
        for rule in self.reverse_rules(envelope.integration_type, entity_type) if changed else []:
            by_external = {e["external_id"]: e["id"] for e in changed}
            holders = await self._entities(store, envelope, rule.source_type)
            found = set()
            for holder in holders:
                for ref in referenced_ids(holder, rule.field):
                    if ref in by_external:
                        key = rule.orient((rule.source_type, holder["id"]), (entity_type, by_external[ref]))
                        desired.add(key)
                        found.add(key)
            if found:
                anchor = "source_entity_id" if rule.inverse else "target_entity_id"
                for row in await self._edges(store, envelope, rule, anchor, list(by_external.values())):
                    existing.setdefault(_edge_key(row), row)

        ops: list[StoreOp] = []
        created_by_type: dict[str, int] = {}
        removed_by_type: dict[str, int] = {}
        touched: set[str] = set()

        for key in desired:
            row = existing.get(key)
            if row is None:
                ops.append(StoreOp("insert", "entity_relationships", {
                    "data_source_id": envelope.data_source_id,
                    "source_entity_type": key[0],
                    "source_entity_id": key[1],
                    "target_entity_type": key[2],
                    "target_entity_id": key[3],
                    "relationship_type": key[4],
                }))
            elif row["deleted_at"] is not None:
                ops.append(StoreOp("patch", "entity_relationships", {"deleted_at": None}, id=row["id"]))
            else:
                continue
            created_by_type[key[4]] = created_by_type.get(key[4], 0) + 1
            touched.update((key[1], key[3]))

        for key in removable - desired:
            ops.append(StoreOp("soft_delete", "entity_relationships", id=existing[key]["id"]))
            removed_by_type[key[4]] = removed_by_type.get(key[4], 0) + 1
            touched.update((key[1], key[3]))

        await store.apply_batch(envelope.tenant_id, ops)

        created = sum(created_by_type.values())
        removed = sum(removed_by_type.values())
        for rel_type in set(created_by_type) | set(removed_by_type):
            prom.record_relationships(rel_type, created_by_type.get(rel_type, 0), removed_by_type.get(rel_type, 0))
        collector.track("relationships_created", created)
        collector.track("relationships_removed", removed)
        log.info(f"Linked {len(changed)} {entity_type}: {created} edge(s) created, {removed} removed")

        return {
            "changed_ids": sorted(set(changed_ids) | touched),
            "relationship_changed_ids": sorted(touched),
            "relationships_created": created,
            "relationships_removed": removed,
            "has_more": envelope.payload.get("has_more", False),
            "sync_started_at": envelope.payload.get("sync_started_at"),
        }
