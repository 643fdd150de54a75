"""Tests for context loading, workflow ordering, nodes, the engine and alert lifecycle."""

import asyncio
import time
from datetime import timedelta

import pytest
import pytest_asyncio

from sync_engine.analysis import helpers
from sync_engine.analysis.alerts import AlertManager
from sync_engine.analysis.batch import AlertDraft, WriteBatch
from sync_engine.analysis.context import ENTITY_TYPES, ContextLoader
from sync_engine.analysis.engine import Workflow, WorkflowEngine
from sync_engine.analysis.nodes import (
    PARTIAL_MFA_TAG,
    EntityStateNode,
    EvaluateMFAEnforcementNode,
    LicenseOveruseNode,
    LicenseWasteNode,
    Node,
    PolicyGapNode,
    StaleIdentityNode,
    TagAdminNode,
)
from sync_engine.analysis.workers import AnalysisService, Microsoft365IdentityWorker
from sync_engine.bus.events import EventEnvelope, Stage
from sync_engine.errors import AlertStateError, NotFoundError, WorkflowNodeError, WorkflowOrderError
from sync_engine.utils import utcnow

from tests.conftest import TENANT, add_data_source

M365 = "microsoft-365"


def full_workflow() -> Workflow:
    return Workflow(
        [TagAdminNode(), EvaluateMFAEnforcementNode(), StaleIdentityNode(90), LicenseWasteNode(), EntityStateNode()],
        name="m365-identity",
    )


async def add_entity(store, ds, entity_type, external_id, **normalized) -> str:
    [entity_id] = await store.insert("entities", TENANT, [{
        "integration_type": M365,
        "data_source_id": ds,
        "entity_type": entity_type,
        "external_id": external_id,
        "data_hash": f"hash-{external_id}",
        "normalized_data": normalized,
        "raw_data": {},
        "tags": [],
        "state": "normal",
    }])
    return entity_id


async def add_edge(store, ds, source, source_type, target, target_type, relationship_type) -> None:
    await store.insert("entity_relationships", TENANT, [{
        "data_source_id": ds,
        "source_entity_type": source_type,
        "source_entity_id": source,
        "target_entity_type": target_type,
        "target_entity_id": target,
        "relationship_type": relationship_type,
    }])


@pytest_asyncio.fixture
async def directory(store):
    """Admin without MFA coverage, member covered through a group, disabled user with a license."""
    ds = await add_data_source(store)
    recent = (utcnow() - timedelta(days=2)).isoformat() + "Z"
    ids = {
        "ds": ds,
        "admin": await add_entity(store, ds, "identities", "admin", name="Admin", enabled=True, last_login_at=recent),
        "member": await add_entity(store, ds, "identities", "member", name="Member", enabled=True, last_login_at=recent),
        "disabled": await add_entity(store, ds, "identities", "disabled", name="Old", enabled=False, tags=["Disabled"]),
        "group": await add_entity(store, ds, "groups", "g1", name="MFA users"),
        "role": await add_entity(store, ds, "roles", "r1", name="Global Administrator"),
        "license": await add_entity(store, ds, "licenses", "sku-1", name="E3"),
        "policy": await add_entity(
            store, ds, "policies", "p1", name="Require MFA", status="enabled", requires_mfa=True,
            include_all_users=False, include_all_applications=True, include_groups=["g1"],
            exclude_users=[], exclude_groups=[],
        ),
    }
    await add_edge(store, ds, ids["admin"], "identities", ids["role"], "roles", "assigned_role")
    await add_edge(store, ds, ids["member"], "identities", ids["group"], "groups", "member")
    await add_edge(store, ds, ids["policy"], "policies", ids["group"], "groups", "applies_to")
    await add_edge(store, ds, ids["disabled"], "identities", ids["license"], "licenses", "licensed")
    return ids


@pytest.fixture
def engine(store, history):
    return WorkflowEngine(store, ContextLoader(store), AlertManager(store), history)


async def _entity(store, entity_id) -> dict:
    return await store.get("entities", TENANT, entity_id)


async def _alerts(store, ds) -> dict[tuple[str, str], dict]:
    rows = await store.list("entity_alerts", TENANT, filters={"data_source_id": ds})
    return {(a["entity_id"], a["alert_type"]): a for a in rows}


# --------------------------------------------------------------------------
# Workflow ordering
# --------------------------------------------------------------------------


def test_mfa_before_admin_tagging_is_rejected():
    with pytest.raises(WorkflowOrderError):
        Workflow([EvaluateMFAEnforcementNode(), TagAdminNode()])


def test_license_waste_requires_stale_tagging():
    with pytest.raises(WorkflowOrderError):
        Workflow([TagAdminNode(), LicenseWasteNode(), StaleIdentityNode()])


def test_valid_order_collects_alert_types():
    assert full_workflow().alert_types == {"mfa_not_enforced", "stale_user", "license_waste"}


def test_worker_skips_other_integrations():
    worker = Microsoft365IdentityWorker()
    assert worker.build_nodes("halopsa", {"companies"}) == []
    assert worker.workflow(M365, {"companies"}) is None
    assert worker.incremental({"identities"}) is True
    assert worker.incremental({"identities", "groups"}) is False


def test_write_batch_is_immutable():
    empty = WriteBatch()
    tagged = empty.add_tag("e1", "Admin")
    assert empty.is_empty
    assert tagged.tags_added("e1") == {"Admin"}
    assert tagged.remove_tag("e1", "Admin").tags_added("e1") == set()


def test_draft_reads_through_and_leaves_base_untouched():
    base = WriteBatch().add_tag("e1", "Admin").raise_alert(AlertDraft("e1", "stale_user"))

    draft = base.edit()
    draft.remove_tag("e1", "Admin")
    draft.add_tag("e2", "Stale")
    draft.set_state("e1", "warn")
    draft.raise_alert(AlertDraft("e1", "mfa_not_enforced"))
    assert draft.tags_removed("e1") == {"Admin"}
    assert [a.alert_type for a in draft.alerts_for("e1")] == ["stale_user", "mfa_not_enforced"]
    frozen = draft.freeze()

    assert base.tags_added("e1") == {"Admin"}
    assert base.tags_added("e2") == set()
    assert len(base.alerts) == 1
    assert dict(base.state_updates) == {}
    assert frozen.tags_removed("e1") == {"Admin"}
    assert frozen.tags_added("e2") == {"Stale"}
    assert dict(frozen.state_updates) == {"e1": "warn"}
    assert len(frozen.alerts) == 2
    assert base.edit().freeze() is base


def test_batch_writes_scale_linearly():
    ids = [f"e{i}" for i in range(20000)]
    started = time.perf_counter()
    draft = WriteBatch().edit()
    for entity_id in ids:
        draft.add_tag(entity_id, "Stale")
        draft.raise_alert(AlertDraft(entity_id, "stale_user"))
        assert "Stale" in helpers.effective_tags({"id": entity_id}, draft)
    batch = draft.freeze()
    elapsed = time.perf_counter() - started

    assert len(batch.tag_changes) == len(ids)
    assert len(batch.alerts) == len(ids)
    # Copying the index per write would take minutes at this size
    assert elapsed < 5


# --------------------------------------------------------------------------
# Context loading
# --------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_context_builds_relationship_maps(store, directory):
    ctx = await ContextLoader(store).load(TENANT, directory["ds"])

    assert ctx.relationships.identity_to_roles[directory["admin"]] == {directory["role"]}
    assert ctx.relationships.group_to_members[directory["group"]] == {directory["member"]}
    assert ctx.relationships.target_to_policies[directory["group"]] == {directory["policy"]}
    assert ctx.by_external_id("groups", "g1")["id"] == directory["group"]
    assert len(ctx.identities) == 3


@pytest.mark.asyncio
async def test_context_query_count_independent_of_size(store):
    small_ds = await add_data_source(store)
    large_ds = await add_data_source(store)
    await store.insert("entities", TENANT, [
        {"integration_type": M365, "data_source_id": small_ds, "entity_type": "identities",
         "external_id": f"u{i}", "data_hash": "h", "normalized_data": {}, "raw_data": {}, "tags": []}
        for i in range(10)
    ])
    await store.insert("entities", TENANT, [
        {"integration_type": M365, "data_source_id": large_ds, "entity_type": "identities",
         "external_id": f"u{i}", "data_hash": "h", "normalized_data": {}, "raw_data": {}, "tags": []}
        for i in range(2000)
    ])

    small = await ContextLoader(store).load(TENANT, small_ds)
    large = await ContextLoader(store).load(TENANT, large_ds)

    assert len(small.identities) == 10
    assert len(large.identities) == 2000
    assert small.stats.queries == large.stats.queries == len(ENTITY_TYPES) + 1


# --------------------------------------------------------------------------
# Engine
# --------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_engine_tags_alerts_and_states(store, directory, engine, history):
    result = await engine.run(full_workflow(), TENANT, directory["ds"], M365)

    admin = await _entity(store, directory["admin"])
    member = await _entity(store, directory["member"])
    disabled = await _entity(store, directory["disabled"])
    assert admin["tags"] == ["Admin"]
    assert admin["state"] == "critical"
    assert member["tags"] == ["MFA"]
    assert member["state"] == "normal"
    assert disabled["state"] == "warn"

    alerts = await _alerts(store, directory["ds"])
    assert alerts[(directory["admin"], "mfa_not_enforced")]["severity"] == "critical"
    assert alerts[(directory["disabled"], "license_waste")]["meta"]["reason"] == "disabled"
    assert (directory["member"], "mfa_not_enforced") not in alerts
    assert (directory["disabled"], "mfa_not_enforced") not in alerts
    assert result.alerts["created"] == len(alerts)
    assert result.context_queries == len(ENTITY_TYPES) + 1

    [row] = await history.list(TENANT, directory["ds"])
    assert row["action"] == "analyze.m365-identity"
    assert row["status"] == "completed"


@pytest.mark.asyncio
async def test_rerun_is_stable_and_resolves_cleared_alerts(store, directory, engine):
    await engine.run(full_workflow(), TENANT, directory["ds"], M365)
    again = await engine.run(full_workflow(), TENANT, directory["ds"], M365)
    assert again.alerts["created"] == 0
    assert again.tags_added == 0
    assert again.states_updated == 0

    # The admin gains MFA coverage through the group
    await add_edge(store, directory["ds"], directory["admin"], "identities", directory["group"], "groups", "member")
    result = await engine.run(full_workflow(), TENANT, directory["ds"], M365)

    alerts = await _alerts(store, directory["ds"])
    assert alerts[(directory["admin"], "mfa_not_enforced")]["status"] == "resolved"
    assert result.alerts["resolved"] == 1
    assert (await _entity(store, directory["admin"]))["state"] == "normal"


@pytest.mark.asyncio
async def test_incremental_run_only_touches_changed_identities(store, directory, engine):
    result = await engine.run(
        full_workflow(), TENANT, directory["ds"], M365, changed_entity_ids=[directory["admin"]]
    )

    alerts = await _alerts(store, directory["ds"])
    assert {entity_id for entity_id, _ in alerts} == {directory["admin"]}
    assert (await _entity(store, directory["disabled"]))["state"] == "normal"
    assert result.tags_added == 1


class ExplodingNode(Node):
    name = "exploding"

    def run(self, ctx, batch):
        raise RuntimeError("rule bug")


@pytest.mark.asyncio
async def test_node_failure_leaves_store_unchanged(store, directory, engine, history):
    before = await store.list("entities", TENANT)
    workflow = Workflow([TagAdminNode(), EvaluateMFAEnforcementNode(), ExplodingNode()], name="broken")

    with pytest.raises(WorkflowNodeError) as exc_info:
        await engine.run(workflow, TENANT, directory["ds"], M365)

    assert exc_info.value.node == "exploding"
    assert await store.list("entities", TENANT) == before
    assert await _alerts(store, directory["ds"]) == {}
    [row] = await history.list(TENANT, directory["ds"])
    assert row["status"] == "failed"
    assert "rule bug" in row["error"]


# --------------------------------------------------------------------------
# Alerts
# --------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_suppress_and_unsuppress_write_one_audit_each(store, directory, engine):
    await engine.run(full_workflow(), TENANT, directory["ds"], M365)
    alert = (await _alerts(store, directory["ds"]))[(directory["admin"], "mfa_not_enforced")]
    manager = AlertManager(store)

    suppressed = await manager.suppress(alert["id"], TENANT, "user-1", reason="break-glass account")
    assert suppressed["status"] == "suppressed"
    with pytest.raises(AlertStateError):
        await manager.suppress(alert["id"], TENANT, "user-1")

    # Analysis refreshes but never reactivates a suppressed alert
    await engine.run(full_workflow(), TENANT, directory["ds"], M365)
    stored = await manager.get(alert["id"], TENANT)
    assert stored["status"] == "suppressed"
    assert stored["suppression_reason"] == "break-glass account"

    restored = await manager.unsuppress(alert["id"], TENANT, "user-2")
    assert restored["status"] == "active"
    assert restored["suppressed_by"] is None
    with pytest.raises(AlertStateError):
        await manager.unsuppress(alert["id"], TENANT, "user-2")

    audit = await store.list("audit_log", TENANT, filters={"target_id": alert["id"]}, order_by="created_at")
    assert [a["action"] for a in audit] == ["alert.suppress", "alert.unsuppress"]
    assert audit[0]["user_id"] == "user-1"
    assert audit[0]["details"]["reason"] == "break-glass account"


@pytest.mark.asyncio
async def test_concurrent_suppress_has_one_winner(store, directory, engine):
    await engine.run(full_workflow(), TENANT, directory["ds"], M365)
    alert = (await _alerts(store, directory["ds"]))[(directory["admin"], "mfa_not_enforced")]
    manager = AlertManager(store)

    results = await asyncio.gather(
        manager.suppress(alert["id"], TENANT, "user-1", reason="first"),
        manager.suppress(alert["id"], TENANT, "user-2", reason="second"),
        return_exceptions=True,
    )

    assert sum(isinstance(r, AlertStateError) for r in results) == 1
    [winner] = [r for r in results if isinstance(r, dict)]
    stored = await manager.get(alert["id"], TENANT)
    assert stored["suppressed_by"] == winner["suppressed_by"]
    audit = await store.list("audit_log", TENANT, filters={"target_id": alert["id"]})
    assert len(audit) == 1


@pytest.mark.asyncio
async def test_suppress_after_status_moved_underneath_is_rejected(store, directory, engine, monkeypatch):
    await engine.run(full_workflow(), TENANT, directory["ds"], M365)
    alert = (await _alerts(store, directory["ds"]))[(directory["admin"], "mfa_not_enforced")]
    manager = AlertManager(store)
    # Another operator suppresses between our read and our write
    stale = dict(alert)
    await manager.suppress(alert["id"], TENANT, "user-1")

    async def stale_get(alert_id, tenant_id):
        return stale

    monkeypatch.setattr(manager, "get", stale_get)
    with pytest.raises(AlertStateError):
        await manager.suppress(alert["id"], TENANT, "user-2")

    audit = await store.list("audit_log", TENANT, filters={"target_id": alert["id"]})
    assert [a["user_id"] for a in audit] == ["user-1"]


@pytest.mark.asyncio
async def test_alert_of_other_tenant_is_not_found(store, directory, engine):
    await engine.run(full_workflow(), TENANT, directory["ds"], M365)
    alert = next(iter((await _alerts(store, directory["ds"])).values()))

    with pytest.raises(NotFoundError):
        await AlertManager(store).suppress(alert["id"], "tenant-b", "user-1")


# --------------------------------------------------------------------------
# Service
# --------------------------------------------------------------------------


def _linked(ds: str, entity_type: str, changed_ids: list[str]) -> EventEnvelope:
    return EventEnvelope(
        tenant_id=TENANT,
        integration_type=M365,
        entity_type=entity_type,
        data_source_id=ds,
        stage=Stage.LINKED,
        payload={"changed_ids": changed_ids, "has_more": False},
    )


@pytest.mark.asyncio
async def test_service_runs_on_linked(bus, store, directory, engine, test_settings):
    service = AnalysisService(bus, engine, [Microsoft365IdentityWorker()], test_settings)
    await service.start()

    await bus.publish("linked.identities", _linked(directory["ds"], "identities", [directory["admin"]]))

    alerts = await _alerts(store, directory["ds"])
    assert {entity_id for entity_id, _ in alerts} == {directory["admin"]}


@pytest.mark.asyncio
async def test_service_ignores_batches_without_changes(bus, store, directory, engine, test_settings):
    service = AnalysisService(bus, engine, [Microsoft365IdentityWorker()], test_settings)

    await service.handle_linked(_linked(directory["ds"], "identities", []))

    assert await _alerts(store, directory["ds"]) == {}


@pytest.mark.asyncio
async def test_service_debounces_into_one_full_run(bus, store, directory, engine, test_settings, history):
    test_settings.analysis_debounce_seconds = 60
    service = AnalysisService(bus, engine, [Microsoft365IdentityWorker()], test_settings)

    await service.handle_linked(_linked(directory["ds"], "identities", [directory["admin"]]))
    await service.handle_linked(_linked(directory["ds"], "groups", [directory["group"]]))
    assert await _alerts(store, directory["ds"]) == {}

    results = await service.flush_all()

    assert len(results) == 1
    alerts = await _alerts(store, directory["ds"])
    # Groups changed too, so every identity was analysed
    assert directory["disabled"] in {entity_id for entity_id, _ in alerts}
    assert len(await history.list(TENANT, directory["ds"])) == 1
    await service.close()


# --------------------------------------------------------------------------
# Coverage, policy gaps and licenses
# --------------------------------------------------------------------------


def worker_workflow() -> Workflow:
    return Microsoft365IdentityWorker().workflow(M365, {"identities", "policies", "licenses"})


@pytest.mark.asyncio
async def test_group_and_role_lookups(store, directory):
    ctx = await ContextLoader(store).load(TENANT, directory["ds"])

    assert helpers.is_in_group(ctx, directory["member"], directory["group"])
    assert not helpers.is_in_group(ctx, directory["admin"], directory["group"])
    assert helpers.has_role(ctx, directory["admin"], directory["role"])
    assert not helpers.has_role(ctx, directory["member"], directory["role"])
    assert helpers.is_admin(ctx, directory["admin"])


@pytest.mark.asyncio
async def test_policy_gap_flags_uncovered_identities(store, directory, engine):
    await engine.run(worker_workflow(), TENANT, directory["ds"], M365)

    alerts = await _alerts(store, directory["ds"])
    gap = alerts[(directory["admin"], "policy_gap")]
    assert gap["severity"] == "high"
    assert gap["message"] == "User Admin is not covered by any security policy"
    assert (directory["member"], "policy_gap") not in alerts
    assert (directory["disabled"], "policy_gap") not in alerts


@pytest.mark.asyncio
async def test_security_defaults_cover_admins_fully_and_members_partially(store, directory, engine):
    outsider = await add_entity(store, directory["ds"], "identities", "outsider", name="Outsider", enabled=True,
                                last_login_at=(utcnow() - timedelta(days=1)).isoformat() + "Z")
    await add_entity(
        store, directory["ds"], "policies", "security-defaults", name="Security Defaults", status="enabled",
        is_security_defaults=True, requires_mfa=True, include_all_users=True, include_all_applications=True,
    )

    await engine.run(worker_workflow(), TENANT, directory["ds"], M365)

    assert "MFA" in (await _entity(store, directory["admin"]))["tags"]
    assert (await _entity(store, directory["member"]))["tags"] == ["MFA"]
    assert (await _entity(store, outsider))["tags"] == [PARTIAL_MFA_TAG]
    alert_types = {alert_type for _, alert_type in await _alerts(store, directory["ds"])}
    assert "mfa_not_enforced" not in alert_types
    assert "policy_gap" not in alert_types


@pytest.mark.asyncio
async def test_app_scoped_policy_is_partial_coverage(store, directory, engine):
    await store.patch("entities", TENANT, [(directory["policy"], {"normalized_data": {
        "name": "Require MFA for mail", "status": "enabled", "requires_mfa": True,
        "include_all_users": False, "include_all_applications": False, "include_groups": ["g1"],
    }})])

    await engine.run(worker_workflow(), TENANT, directory["ds"], M365)

    assert (await _entity(store, directory["member"]))["tags"] == [PARTIAL_MFA_TAG]
    alerts = await _alerts(store, directory["ds"])
    assert (directory["member"], "mfa_not_enforced") not in alerts
    assert (directory["member"], "policy_gap") not in alerts


@pytest.mark.asyncio
async def test_license_overuse_raised_and_resolved(store, directory, engine):
    sku = await add_entity(store, directory["ds"], "licenses", "sku-2", name="E5", total_units=10, consumed_units=12)

    await engine.run(worker_workflow(), TENANT, directory["ds"], M365)
    alert = (await _alerts(store, directory["ds"]))[(sku, "license_overuse")]
    assert alert["severity"] == "high"
    assert alert["message"] == "License E5 is overused: 12 consumed / 10 available"
    assert alert["meta"]["overage"] == 2
    assert (directory["license"], "license_overuse") not in await _alerts(store, directory["ds"])

    await store.patch("entities", TENANT, [(sku, {"normalized_data": {"name": "E5", "total_units": 15, "consumed_units": 12}})])
    await engine.run(worker_workflow(), TENANT, directory["ds"], M365)

    assert (await _alerts(store, directory["ds"]))[(sku, "license_overuse")]["status"] == "resolved"


@pytest.mark.asyncio
async def test_incremental_run_leaves_license_alerts_alone(store, directory, engine):
    sku = await add_entity(store, directory["ds"], "licenses", "sku-2", name="E5", total_units=1, consumed_units=3)
    await engine.run(worker_workflow(), TENANT, directory["ds"], M365)

    await engine.run(worker_workflow(), TENANT, directory["ds"], M365, changed_entity_ids=[directory["admin"]])

    assert (await _alerts(store, directory["ds"]))[(sku, "license_overuse")]["status"] == "active"


def test_worker_orders_coverage_nodes():
    nodes = [node.name for node in worker_workflow().nodes]
    assert nodes.index("tag-admin") < nodes.index("policy-gap")
    assert {"policy_gap", "license_overuse"} <= worker_workflow().alert_types
    assert isinstance(worker_workflow().nodes[-1], EntityStateNode)
    assert any(isinstance(n, (PolicyGapNode, LicenseOveruseNode)) for n in worker_workflow().nodes)
