"""Deferred write accumulator threaded through workflow nodes.

A ``WriteBatch`` is immutable and indexed by entity id. A node opens a
``BatchDraft`` with ``batch.edit()``, records its writes on the draft and
returns ``draft.freeze()``: the base batch is never modified, and each
node pays one copy of the index rather than one per write. Nothing
reaches the store until the engine flushes the final batch.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping


def _frozen(mapping: dict) -> Mapping:
    return MappingProxyType(mapping)


def _empty() -> Mapping:
    return MappingProxyType({})


@dataclass(frozen=True)
class AlertDraft:
    entity_id: str
    alert_type: str
    severity: str = "medium"
    message: str = ""
    metadata: tuple[tuple[str, Any], ...] = ()

    @property
    def fingerprint(self) -> str:
        return f"{self.alert_type}:{self.entity_id}"

    def metadata_dict(self) -> dict[str, Any]:
        return dict(self.metadata)


@dataclass(frozen=True)
class WriteBatch:
    # entity id -> {tag: True to add, False to remove}
    tag_changes: Mapping[str, Mapping[str, bool]] = field(default_factory=_empty)
    state_updates: Mapping[str, str] = field(default_factory=_empty)
    alerts_by_entity: Mapping[str, tuple[AlertDraft, ...]] = field(default_factory=_empty)

    def edit(self) -> "BatchDraft":
        return BatchDraft(self)

    def add_tag(self, entity_id: str, tag: str) -> "WriteBatch":
        draft = self.edit()
        draft.add_tag(entity_id, tag)
        return draft.freeze()

    def remove_tag(self, entity_id: str, tag: str) -> "WriteBatch":
        draft = self.edit()
        draft.remove_tag(entity_id, tag)
        return draft.freeze()

    def set_state(self, entity_id: str, state: str) -> "WriteBatch":
        draft = self.edit()
        draft.set_state(entity_id, state)
        return draft.freeze()

    def raise_alert(self, alert: AlertDraft) -> "WriteBatch":
        draft = self.edit()
        draft.raise_alert(alert)
        return draft.freeze()

    def tags_added(self, entity_id: str) -> set[str]:
        return {tag for tag, on in self.tag_changes.get(entity_id, {}).items() if on}

    def tags_removed(self, entity_id: str) -> set[str]:
        return {tag for tag, on in self.tag_changes.get(entity_id, {}).items() if not on}

    def alerts_for(self, entity_id: str) -> list[AlertDraft]:
        return list(self.alerts_by_entity.get(entity_id, ()))

    @property
    def alerts(self) -> tuple[AlertDraft, ...]:
        return tuple(a for drafts in self.alerts_by_entity.values() for a in drafts)

    @property
    def is_empty(self) -> bool:
        return not (self.tag_changes or self.state_updates or self.alerts_by_entity)


class BatchDraft:
    """Writes layered over a base batch; reads see base plus draft."""

    def __init__(self, base: WriteBatch):
        self._base = base
        self._tags: dict[str, dict[str, bool]] = {}
        self._states: dict[str, str] = {}
        self._alerts: dict[str, list[AlertDraft]] = {}

    def _tag_map(self, entity_id: str) -> dict[str, bool]:
        if entity_id not in self._tags:
            self._tags[entity_id] = dict(self._base.tag_changes.get(entity_id, {}))
        return self._tags[entity_id]

    def add_tag(self, entity_id: str, tag: str) -> None:
        self._tag_map(entity_id)[tag] = True

    def remove_tag(self, entity_id: str, tag: str) -> None:
        self._tag_map(entity_id)[tag] = False

    def set_state(self, entity_id: str, state: str) -> None:
        self._states[entity_id] = state

    def raise_alert(self, alert: AlertDraft) -> None:
        if alert.entity_id not in self._alerts:
            self._alerts[alert.entity_id] = self._base.alerts_for(alert.entity_id)
        self._alerts[alert.entity_id].append(alert)

    def _changes(self, entity_id: str) -> Mapping[str, bool]:
        if entity_id in self._tags:
            return self._tags[entity_id]
        return self._base.tag_changes.get(entity_id, {})

    def tags_added(self, entity_id: str) -> set[str]:
        return {tag for tag, on in self._changes(entity_id).items() if on}

    def tags_removed(self, entity_id: str) -> set[str]:
        return {tag for tag, on in self._changes(entity_id).items() if not on}

    def alerts_for(self, entity_id: str) -> list[AlertDraft]:
        if entity_id in self._alerts:
            return list(self._alerts[entity_id])
        return self._base.alerts_for(entity_id)

    def freeze(self) -> WriteBatch:
        if not (self._tags or self._states or self._alerts):
            return self._base
        tags = dict(self._base.tag_changes)
        tags.update({eid: _frozen(dict(changes)) for eid, changes in self._tags.items()})
        alerts = dict(self._base.alerts_by_entity)
        alerts.update({eid: tuple(drafts) for eid, drafts in self._alerts.items()})
        return WriteBatch(
            tag_changes=_frozen(tags),
            state_updates=_frozen({**self._base.state_updates, **self._states}),
            alerts_by_entity=_frozen(alerts),
        )
