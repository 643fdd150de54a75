"""Sync close-out across batches linked out of order."""

from datetime import timedelta

import pytest

from sync_engine.bus.events import EventEnvelope, Stage
from sync_engine.pipeline.sweeper import CLOSED_MARKER, Sweeper, all_batches_linked
from sync_engine.utils import utcnow

from tests.conftest import TENANT, add_data_source

SYNC = "sync-2"


def _linked(ds: str, batch_number: int, has_more: bool, started_at, created: int = 1) -> EventEnvelope:
    return EventEnvelope(
        tenant_id=TENANT,
        integration_type="microsoft-365",
        entity_type="identities",
        data_source_id=ds,
        stage=Stage.LINKED,
        job_id=f"job-{batch_number}",
        sync_id=SYNC,
        batch_number=batch_number,
        payload={"has_more": has_more, "sync_started_at": started_at.isoformat()},
        metrics={"entities_created": created, "records_fetched": created},
    )


async def _seed(store, ds: str, started_at) -> dict[str, str]:
    ids = {}
    for external_id, sync_id, seen in (
        ("gone", "sync-1", started_at - timedelta(hours=1)),
        ("kept", SYNC, started_at + timedelta(seconds=1)),
    ):
        [ids[external_id]] = await store.insert("entities", TENANT, [{
            "integration_type": "microsoft-365",
            "data_source_id": ds,
            "entity_type": "identities",
            "external_id": external_id,
            "data_hash": "h",
            "normalized_data": {},
            "raw_data": {},
            "sync_id": sync_id,
            "last_seen_at": seen,
        }])
    return ids


@pytest.fixture
def sweeper(bus, store, history, test_settings):
    return Sweeper(bus, store, history, test_settings)


def test_all_batches_linked_needs_every_number_up_to_final():
    assert not all_batches_linked([{"batch_number": 2, "is_final": True}])
    assert not all_batches_linked([{"batch_number": 1, "is_final": False}])
    assert all_batches_linked([{"batch_number": 2, "is_final": True}, {"batch_number": 1, "is_final": False}])
    assert not all_batches_linked([
        {"batch_number": 1, "is_final": True},
        {"batch_number": CLOSED_MARKER, "is_final": False},
    ])


@pytest.mark.asyncio
async def test_final_batch_first_waits_for_earlier_batches(sweeper, store, bus, history):
    ds = await add_data_source(store)
    started_at = utcnow()
    ids = await _seed(store, ds, started_at)

    await sweeper.handle_linked(_linked(ds, 2, has_more=False, started_at=started_at, created=2))

    assert (await store.get("entities", TENANT, ids["gone"]))["deleted_at"] is None
    assert bus.published_on("completed.*") == []
    assert await history.list(TENANT, ds) == []

    await sweeper.handle_linked(_linked(ds, 1, has_more=True, started_at=started_at, created=3))

    assert (await store.get("entities", TENANT, ids["gone"]))["deleted_at"] is not None
    assert (await store.get("entities", TENANT, ids["kept"]))["deleted_at"] is None
    [completed] = bus.published_on("completed.identities")
    assert completed.payload["deleted_ids"] == [ids["gone"]]
    assert completed.payload["batches"] == 2
    [row] = await history.list(TENANT, ds)
    assert row["action"] == "sync.identities"
    assert row["job_id"] == "job-1"
    assert row["metrics"]["entities_created"] == 5
    assert row["metrics"]["records_fetched"] == 5
    assert row["metrics"]["entities_deleted"] == 1


@pytest.mark.asyncio
async def test_replayed_final_batch_closes_once(sweeper, store, bus, history):
    ds = await add_data_source(store)
    started_at = utcnow()
    await _seed(store, ds, started_at)
    last = _linked(ds, 1, has_more=False, started_at=started_at)

    for _ in range(3):
        await sweeper.handle_linked(last)

    assert len(bus.published_on("completed.identities")) == 1
    assert bus.published_on("failed.*") == []
    [row] = await history.list(TENANT, ds)
    assert row["metrics"]["entities_created"] == 1
