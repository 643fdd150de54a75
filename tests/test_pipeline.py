"""End-to-end pipeline tests: queue -> adapter -> processor -> linker -> sweeper."""

import pytest
import pytest_asyncio

from sync_engine.bus.local import LocalEventBus
from sync_engine.config import Settings
from sync_engine.db.store import DocumentStore
from sync_engine.errors import ConnectorError
from sync_engine.pipeline.adapter import Adapter
from sync_engine.queue.models import Job, JobStatus
from sync_engine.queue.store import MemoryJobStore
from sync_engine.runtime import Runtime

from tests.conftest import TENANT, FakeConnector, add_data_source, fake_registry, m365_user


def _job(data_source_id: str, entity_type: str, integration_type: str = "microsoft-365") -> Job:
    return Job(
        tenant_id=TENANT,
        integration_type=integration_type,
        entity_type=entity_type,
        data_source_id=data_source_id,
    )


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector({
        "identities": [[m365_user("u1", groups=["g1"]), m365_user("u2")]],
        "groups": [[{"id": "g1", "displayName": "Sales", "securityEnabled": True, "members": ["u1"]}]],
    })


@pytest_asyncio.fixture
async def runtime(session_factory, test_settings, connector):
    rt = Runtime(
        test_settings,
        session_factory=session_factory,
        bus=LocalEventBus(history_size=1000),
        job_store=MemoryJobStore(),
        connectors=fake_registry(connector),
    )
    await rt.subscribe()
    yield rt
    await rt.close()


async def _sync(runtime: Runtime, data_source_id: str, entity_type: str) -> str:
    job_id = await runtime.queue.schedule(_job(data_source_id, entity_type))
    # Keep dispatching until every continuation batch has run
    while await runtime.queue.dispatch_once():
        pass
    return job_id


async def _entities(runtime: Runtime, entity_type: str, include_deleted: bool = False) -> dict[str, dict]:
    rows = await runtime.store.list(
        "entities", TENANT, filters={"entity_type": entity_type}, include_deleted=include_deleted
    )
    return {row["external_id"]: row for row in rows}


async def _edges(runtime: Runtime, include_deleted: bool = False) -> list[dict]:
    return await runtime.store.list("entity_relationships", TENANT, include_deleted=include_deleted)


@pytest.mark.asyncio
async def test_sync_creates_entities_and_member_edge(runtime):
    ds = await add_data_source(runtime.store)

    identities_job = await _sync(runtime, ds, "identities")
    await _sync(runtime, ds, "groups")

    identities = await _entities(runtime, "identities")
    groups = await _entities(runtime, "groups")
    assert set(identities) == {"u1", "u2"}
    assert identities["u1"]["normalized_data"]["group_ids"] == ["g1"]

    edges = await _edges(runtime)
    assert [(e["source_entity_id"], e["target_entity_id"], e["relationship_type"]) for e in edges] == [
        (identities["u1"]["id"], groups["g1"]["id"], "member")
    ]

    assert (await runtime.queue.get_status(identities_job))["status"] == "completed"
    stages = [topic.split(".")[0] for topic, _ in runtime.bus.published]
    assert stages[:5] == ["microsoft-365", "fetched", "processed", "linked", "completed"]


@pytest.mark.asyncio
async def test_edge_created_once_regardless_of_sync_order(runtime):
    ds = await add_data_source(runtime.store)

    await _sync(runtime, ds, "groups")
    assert await _edges(runtime) == []
    await _sync(runtime, ds, "identities")

    edges = await _edges(runtime)
    assert len(edges) == 1
    assert edges[0]["relationship_type"] == "member"


@pytest.mark.asyncio
async def test_replay_is_idempotent(runtime):
    ds = await add_data_source(runtime.store)
    await _sync(runtime, ds, "identities")
    await _sync(runtime, ds, "groups")
    before = await _entities(runtime, "identities")

    await _sync(runtime, ds, "identities")
    await _sync(runtime, ds, "groups")

    after = await _entities(runtime, "identities")
    assert set(after) == set(before)
    assert all(after[k]["id"] == before[k]["id"] for k in before)
    assert all(after[k]["updated_at"] == before[k]["updated_at"] for k in before)
    assert len(await _edges(runtime, include_deleted=True)) == 1

    [processed] = runtime.bus.published_on("processed.identities")[-1:]
    assert processed.payload["changed_ids"] == []


@pytest.mark.asyncio
async def test_changed_membership_replaces_edge(runtime, connector):
    ds = await add_data_source(runtime.store)
    connector.pages["groups"] = [[
        {"id": "g1", "displayName": "Sales", "members": []},
        {"id": "g2", "displayName": "Ops", "members": []},
    ]]
    await _sync(runtime, ds, "groups")
    await _sync(runtime, ds, "identities")

    connector.pages["identities"] = [[m365_user("u1", groups=["g2"]), m365_user("u2")]]
    await _sync(runtime, ds, "identities")

    groups = await _entities(runtime, "groups")
    live = await _edges(runtime)
    assert [e["target_entity_id"] for e in live] == [groups["g2"]["id"]]
    assert len(await _edges(runtime, include_deleted=True)) == 2


@pytest.mark.asyncio
async def test_paginated_fetch_schedules_continuations(runtime, connector):
    ds = await add_data_source(runtime.store)
    connector.pages["identities"] = [[m365_user("u1")], [m365_user("u2")], [m365_user("u3")]]

    await _sync(runtime, ds, "identities")

    fetched = runtime.bus.published_on("fetched.identities")
    assert [e.batch_number for e in fetched] == [1, 2, 3]
    assert len({e.sync_id for e in fetched}) == 1
    assert len({e.trace_id for e in fetched}) == 1
    assert [e.payload["has_more"] for e in fetched] == [True, True, False]
    assert set(await _entities(runtime, "identities")) == {"u1", "u2", "u3"}

    # Only the final batch closes the sync
    assert len(runtime.bus.published_on("completed.identities")) == 1
    rows = [r for r in await runtime.history.list(TENANT, ds) if r["action"].startswith("sync.")]
    assert [r["action"] for r in rows] == ["sync.identities"]
    assert rows[0]["metrics"]["entities_created"] == 3
    assert rows[0]["metrics"]["records_fetched"] == 3


@pytest.mark.asyncio
async def test_unsupported_entity_type_fails_without_retry(runtime):
    ds = await add_data_source(runtime.store)

    job_id = await _sync(runtime, ds, "devices")

    status = await runtime.queue.get_status(job_id)
    assert status["status"] == "failed"
    assert status["attempt"] == 1
    assert "devices" in status["error"]
    [failed] = runtime.bus.published_on("failed.devices")
    assert failed.payload["error"]["retryable"] is False
    assert failed.payload["failed_stage"] == "adapter"
    rows = await runtime.history.list(TENANT, ds)
    assert [r["status"] for r in rows] == ["failed"]


@pytest.mark.asyncio
async def test_retryable_connector_error_exhausts_attempts(runtime, connector):
    ds = await add_data_source(runtime.store)
    connector.error = ConnectorError("Graph request failed (503)")

    job_id = await _sync(runtime, ds, "identities")

    job = await runtime.queue.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempt == 3
    assert connector.fetch_calls == 3
    rows = await runtime.history.list(TENANT, ds)
    assert len(rows) == 1
    assert rows[0]["status"] == "failed"


@pytest.mark.asyncio
async def test_unhealthy_connector_is_not_retried(runtime, connector):
    ds = await add_data_source(runtime.store)
    connector.healthy = False

    job_id = await _sync(runtime, ds, "identities")

    job = await runtime.queue.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempt == 1
    assert connector.fetch_calls == 0


@pytest.mark.asyncio
async def test_missing_data_source_fails_job(runtime):
    job_id = await _sync(runtime, "missing", "identities")
    assert (await runtime.queue.get_status(job_id))["status"] == "failed"


@pytest.mark.asyncio
async def test_malformed_record_is_skipped(runtime, connector):
    ds = await add_data_source(runtime.store)
    connector.pages["licenses"] = [[{"skuId": "sku-1", "skuPartNumber": "E3"}, {"id": "no-sku", "skuId": ""}]]

    await _sync(runtime, ds, "licenses")

    assert set(await _entities(runtime, "licenses")) == {"sku-1"}


@pytest.mark.asyncio
async def test_record_missing_its_id_is_skipped_and_the_rest_kept(runtime, connector):
    ds = await add_data_source(runtime.store)
    connector.pages["identities"] = [[m365_user("u1"), {"displayName": "no id"}]]

    job_id = await _sync(runtime, ds, "identities")

    assert list(await _entities(runtime, "identities")) == ["u1"]
    assert (await runtime.queue.get_status(job_id))["status"] == "completed"
    [completed] = runtime.bus.published_on("completed.identities")
    assert completed.metrics["normalization_failures"] == 1


@pytest.mark.asyncio
async def test_concurrently_created_entity_is_updated_in_place(runtime, connector, monkeypatch):
    ds = await add_data_source(runtime.store)
    await _sync(runtime, ds, "identities")
    before = await _entities(runtime, "identities")
    await runtime.store.patch("entities", TENANT, [(before["u1"]["id"], {"tags": ["Admin"]})])

    # Another worker inserted the rows after this batch looked them up
    original_list = DocumentStore.list

    async def stale_lookup(self, table, tenant_id, filters=None, in_filters=None, include_deleted=False, **kwargs):
        if table == "entities" and include_deleted and in_filters and "external_id" in in_filters:
            return []
        return await original_list(self, table, tenant_id, filters, in_filters, include_deleted, **kwargs)

    monkeypatch.setattr(DocumentStore, "list", stale_lookup)
    connector.pages["identities"] = [[m365_user("u1", groups=["g1"], department="Sales"), m365_user("u2")]]
    job_id = await _sync(runtime, ds, "identities")
    monkeypatch.undo()

    assert (await runtime.queue.get_status(job_id))["status"] == "completed"
    after = await _entities(runtime, "identities")
    assert {k: v["id"] for k, v in after.items()} == {k: v["id"] for k, v in before.items()}
    assert after["u1"]["tags"] == ["Admin"]
    assert after["u1"]["raw_data"]["department"] == "Sales"
    assert len(await runtime.store.list("entities", TENANT, filters={"entity_type": "identities"})) == 2


@pytest.mark.asyncio
async def test_sweep_soft_deletes_missing_and_revives_on_sighting(runtime, connector):
    ds = await add_data_source(runtime.store)
    await _sync(runtime, ds, "groups")
    await _sync(runtime, ds, "identities")

    connector.pages["identities"] = [[m365_user("u2")]]
    await _sync(runtime, ds, "identities")

    all_identities = await _entities(runtime, "identities", include_deleted=True)
    assert all_identities["u1"]["deleted_at"] is not None
    assert all_identities["u2"]["deleted_at"] is None
    assert await _edges(runtime) == []
    [completed] = runtime.bus.published_on("completed.identities")[-1:]
    assert completed.payload["deleted_ids"] == [all_identities["u1"]["id"]]
    assert completed.metrics["entities_deleted"] == 1

    data_source = await runtime.store.get("data_sources", TENANT, ds)
    assert data_source["last_sync_at"] is not None

    connector.pages["identities"] = [[m365_user("u1", groups=["g1"]), m365_user("u2")]]
    await _sync(runtime, ds, "identities")

    revived = await _entities(runtime, "identities")
    assert revived["u1"]["id"] == all_identities["u1"]["id"]
    assert revived["u1"]["deleted_at"] is None
    assert len(await _edges(runtime)) == 1


@pytest.mark.asyncio
async def test_tenants_are_isolated(runtime, connector):
    ds = await add_data_source(runtime.store)
    await _sync(runtime, ds, "identities")

    assert await runtime.store.list("entities", "tenant-b") == []
    assert await runtime.store.get("data_sources", "tenant-b", ds) is None


@pytest.mark.asyncio
async def test_worker_roles_select_stages(session_factory, connector):
    rt = Runtime(
        Settings(worker_roles=["adapter"], _env_file=None),
        session_factory=session_factory,
        bus=LocalEventBus(),
        job_store=MemoryJobStore(),
        connectors=fake_registry(connector),
    )
    assert rt.stages and all(isinstance(stage, Adapter) for stage in rt.stages)

    rt.settings = Settings(worker_roles=["linker", "janitor"], _env_file=None)
    with pytest.raises(ValueError, match="janitor"):
        rt.stages
    await rt.close()
