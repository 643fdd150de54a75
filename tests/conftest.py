"""Shared fixtures: SQLite-backed store, local bus, memory queue."""

from typing import Any, Optional

import pytest
import pytest_asyncio

from sync_engine.bus.local import LocalEventBus
from sync_engine.config import Settings
from sync_engine.db.models import Base
from sync_engine.db.session import create_session_factory
from sync_engine.db.store import DocumentStore
from sync_engine.integrations.connector import Connector, FetchPage
from sync_engine.integrations.registry import ConnectorRegistry
from sync_engine.pipeline.history import JobHistoryManager
from sync_engine.queue.job_queue import JobQueue
from sync_engine.queue.store import MemoryJobStore

TENANT = "tenant-a"


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        queue_backoff_base_seconds=0.0,
        queue_backoff_max_seconds=0.0,
        queue_max_attempts=3,
        analysis_debounce_seconds=0.0,
        _env_file=None,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine, factory = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield factory
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> DocumentStore:
    return DocumentStore(session_factory)


@pytest.fixture
def bus() -> LocalEventBus:
    return LocalEventBus(history_size=1000)


@pytest.fixture
def history(store) -> JobHistoryManager:
    return JobHistoryManager(store)


@pytest_asyncio.fixture
async def queue(bus, history, test_settings):
    job_queue = JobQueue(MemoryJobStore(), bus, history=history, settings=test_settings)
    yield job_queue
    await job_queue.close()


async def add_data_source(
    store: DocumentStore,
    integration_type: str = "microsoft-365",
    tenant_id: str = TENANT,
    config: Optional[dict] = None,
    **values: Any,
) -> str:
    [data_source_id] = await store.insert("data_sources", tenant_id, [{
        "integration_type": integration_type,
        "name": f"{integration_type} test",
        "config": config or {},
        "status": "active",
        "is_primary": False,
        **values,
    }])
    return data_source_id


class FakeConnector(Connector):
    """Serves canned pages per entity type; pages are consumed in order."""

    integration_type = "microsoft-365"
    supported_entity_types = frozenset({"identities", "groups", "roles", "policies", "licenses"})

    def __init__(self, pages: dict[str, list[list[dict]]], error: Optional[Exception] = None, healthy: bool = True):
        super().__init__({})
        self.pages = pages
        self.error = error
        self.healthy = healthy
        self.fetch_calls = 0

    async def check_health(self) -> bool:
        return self.healthy

    async def fetch(self, entity_type: str, cursor: Optional[str] = None) -> FetchPage:
        self.fetch_calls += 1
        self.api_calls += 1
        if self.error is not None:
            raise self.error
        pages = self.pages.get(entity_type) or [[]]
        index = int(cursor or 0)
        next_cursor = str(index + 1) if index + 1 < len(pages) else None
        return FetchPage(records=pages[index], next_cursor=next_cursor)

    def external_id(self, entity_type, record):
        if entity_type == "licenses":
            return str(record["skuId"])
        return str(record["id"])


def fake_registry(connector: Connector, integration_type: str = "microsoft-365") -> ConnectorRegistry:
    registry = ConnectorRegistry()
    registry.register(integration_type, lambda config: connector)
    return registry


def m365_user(user_id: str, groups=(), roles=(), licenses=(), enabled: bool = True, last_sign_in=None, **extra) -> dict:
    member_of = [{"@odata.type": "#microsoft.graph.group", "id": g} for g in groups]
    member_of += [{"@odata.type": "#microsoft.graph.directoryRole", "id": r} for r in roles]
    record = {
        "id": user_id,
        "displayName": f"User {user_id}",
        "userPrincipalName": f"{user_id}@contoso.com",
        "accountEnabled": enabled,
        "userType": "Member",
        "memberOf": member_of,
        "assignedLicenses": [{"skuId": s} for s in licenses],
    }
    if last_sign_in is not None:
        record["signInActivity"] = {"lastSignInDateTime": last_sign_in}
    record.update(extra)
    return record
