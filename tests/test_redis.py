"""Tests for the Redis job store and bus. Skipped without a reachable Redis."""

import asyncio

import pytest
import redis.asyncio as redis

from sync_engine.bus.events import EventEnvelope, Stage
from sync_engine.bus.redis_bus import RedisEventBus
from sync_engine.config import settings
from sync_engine.queue.models import Job, JobStatus
from sync_engine.queue.store import RedisJobStore
from sync_engine.utils import new_id, utcnow


async def _redis_available() -> bool:
    try:
        client = await redis.from_url(settings.redis_url, decode_responses=True)
        await client.ping()
        await client.aclose()
        return True
    except Exception:
        return False


@pytest.mark.asyncio
async def test_job_store_orders_ready_jobs_and_tracks_status():
    if not await _redis_available():
        pytest.skip("Redis not available")

    store = RedisJobStore(settings.redis_url, prefix=f"test:{new_id()}:")
    low = Job(tenant_id="t1", integration_type="microsoft-365", entity_type="groups", priority=10)
    high = Job(tenant_id="t1", integration_type="microsoft-365", entity_type="identities", priority=1)
    await store.save(low)
    await store.save(high)

    ready = await store.ready(utcnow(), 10)
    assert [j.id for j in ready] == [high.id, low.id]

    high.transition(JobStatus.PROCESSING)
    await store.save(high)
    counts = await store.count_by_status()
    assert counts["pending"] == 1
    assert counts["processing"] == 1
    assert [j.id for j in await store.ready(utcnow(), 10)] == [low.id]

    restored = await store.get(high.id)
    assert restored.attempt == 1
    assert restored.status == JobStatus.PROCESSING
    assert await store.ping() is True

    client = await store._get_redis()
    keys = [key async for key in client.scan_iter(f"{store.prefix}*")]
    if keys:
        await client.delete(*keys)
    await store.close()


@pytest.mark.asyncio
async def test_bus_delivers_only_single_segment_matches():
    if not await _redis_available():
        pytest.skip("Redis not available")

    bus = RedisEventBus(settings.redis_url, channel_prefix=f"test:{new_id()}:")
    received: list[str] = []
    done = asyncio.Event()

    async def handler(envelope):
        received.append(envelope.entity_type)
        done.set()

    await bus.subscribe("fetched.*", handler)
    await bus.start()
    await asyncio.sleep(0.1)

    envelope = EventEnvelope(
        tenant_id="t1", integration_type="microsoft-365", entity_type="identities", stage=Stage.FETCHED
    )
    await bus.publish("fetched.extra.identities", envelope)
    await bus.publish("fetched.identities", envelope)
    await asyncio.wait_for(done.wait(), timeout=5)

    assert received == ["identities"]
    await bus.close()


@pytest.mark.asyncio
async def test_two_dispatchers_claim_a_job_once():
    if not await _redis_available():
        pytest.skip("Redis not available")

    prefix = f"test:{new_id()}:"
    first, second = RedisJobStore(settings.redis_url, prefix=prefix), RedisJobStore(settings.redis_url, prefix=prefix)
    job = Job(tenant_id="t1", integration_type="microsoft-365", entity_type="identities")
    await first.save(job)

    [mine] = await first.ready(utcnow(), 10)
    [theirs] = await second.ready(utcnow(), 10)
    mine.transition(JobStatus.PROCESSING)
    theirs.transition(JobStatus.PROCESSING)
    won = await asyncio.gather(first.claim(mine), second.claim(theirs))

    assert sorted(won) == [False, True]
    assert await first.ready(utcnow(), 10) == []
    assert (await first.count_by_status())["processing"] == 1
    assert (await second.get(job.id)).status == JobStatus.PROCESSING

    client = await first._get_redis()
    keys = [key async for key in client.scan_iter(f"{prefix}*")]
    if keys:
        await client.delete(*keys)
    await first.close()
    await second.close()


@pytest.mark.asyncio
async def test_bus_bounds_concurrent_handlers():
    if not await _redis_available():
        pytest.skip("Redis not available")

    bus = RedisEventBus(settings.redis_url, channel_prefix=f"test:{new_id()}:", max_concurrency=1)
    active = 0
    peak = 0
    handled = 0
    done = asyncio.Event()

    async def handler(envelope):
        nonlocal active, peak, handled
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.05)
        active -= 1
        handled += 1
        if handled == 3:
            done.set()

    await bus.subscribe("fetched.*", handler)
    await bus.start()
    await asyncio.sleep(0.1)

    envelope = EventEnvelope(
        tenant_id="t1", integration_type="microsoft-365", entity_type="identities", stage=Stage.FETCHED
    )
    for _ in range(3):
        await bus.publish("fetched.identities", envelope)
    await asyncio.wait_for(done.wait(), timeout=5)

    assert peak == 1
    await bus.close()
