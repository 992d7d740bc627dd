"""
Pytest configuration and shared fixtures.

Provides an in-memory local store, a queue over it, an in-memory remote
authority double and helpers to build orchestrators and services.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Any

import pytest

from tillsync.core.config.loader import clear_cache
from tillsync.core.config.models import TillsyncConfig
from tillsync.core.store.connection import Database
from tillsync.core.store.entities import EntityStore
from tillsync.core.sync.connectivity import ConnectivityMonitor
from tillsync.core.sync.models import PullChanges, RemoteRecord, business_fields
from tillsync.core.sync.orchestrator import SyncOrchestrator
from tillsync.core.sync.publisher import StatusPublisher
from tillsync.core.sync.pull import PullMerger
from tillsync.core.sync.queue import PersistentQueue
from tillsync.core.sync.retry import RetryPolicy
from tillsync.core.sync.service import SyncService
from tillsync.core.sync.state import SyncStateStore
from tillsync.utils.timestamps import utcnow

# ==============================================================================
# Environment Isolation
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep user config, TILLSYNC_* variables and the config cache out of tests."""
    for var in (
        "TILLSYNC_API_URL",
        "TILLSYNC_API_TOKEN",
        "TILLSYNC_DB_PATH",
        "TILLSYNC_SYNC_INTERVAL",
        "TILLSYNC_PULL_ENABLED",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    clear_cache()
    yield
    clear_cache()


# ==============================================================================
# Remote Authority Double
# ==============================================================================


class FakeRemote:
    """
    In-memory remote authority.

    - ``records`` holds the authoritative copies
    - ``push_failures`` queues exceptions raised by create/update/delete
    - ``fetch_failures`` queues exceptions raised by fetch
    - ``pull_failures`` queues exceptions raised by pull_changes
    - ``delay`` makes every call yield to the loop for that long
    - ``on_call`` runs before each call (used to mutate mid-flight)
    """

    def __init__(self) -> None:
        self.records: dict[tuple[str, str], RemoteRecord] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.pushed: list[tuple[str, str, str, dict[str, Any] | None]] = []
        self.push_failures: dict[tuple[str, str], list[BaseException]] = {}
        self.fetch_failures: dict[tuple[str, str], list[BaseException]] = {}
        self.pull_response: PullChanges | None = None
        self.pull_failures: list[BaseException] = []
        self.pull_requests: list[tuple[datetime | None, str]] = []
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_call: Callable[[str, str, str], None] | None = None

    def seed(
        self,
        entity_type: str,
        entity_id: str,
        fields: dict[str, Any],
        updated_at: datetime | None = None,
    ) -> RemoteRecord:
        record = RemoteRecord(
            entity_id=entity_id,
            fields=fields,
            updated_at=updated_at or utcnow(),
        )
        self.records[(entity_type, entity_id)] = record
        return record

    def fail_push(self, entity_type: str, entity_id: str, *errors: BaseException) -> None:
        self.push_failures.setdefault((entity_type, entity_id), []).extend(errors)

    def push_count(self, entity_type: str, entity_id: str) -> int:
        return sum(1 for op, t, i, _ in self.pushed if (t, i) == (entity_type, entity_id))

    async def _enter(self, op: str, entity_type: str, entity_id: str) -> None:
        self.calls.append((op, entity_type, entity_id))
        if self.on_call is not None:
            self.on_call(op, entity_type, entity_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
        finally:
            self.in_flight -= 1

        failures = self.fetch_failures if op == "fetch" else self.push_failures
        pending = failures.get((entity_type, entity_id))
        if pending:
            raise pending.pop(0)

    async def fetch(self, entity_type: str, entity_id: str) -> RemoteRecord | None:
        await self._enter("fetch", entity_type, entity_id)
        return self.records.get((entity_type, entity_id))

    async def create(
        self, entity_type: str, entity_id: str, payload: dict[str, Any]
    ) -> RemoteRecord | None:
        await self._enter("create", entity_type, entity_id)
        self.pushed.append(("create", entity_type, entity_id, dict(payload)))
        return self.seed(entity_type, entity_id, business_fields(payload))

    async def update(
        self, entity_type: str, entity_id: str, payload: dict[str, Any]
    ) -> RemoteRecord | None:
        await self._enter("update", entity_type, entity_id)
        self.pushed.append(("update", entity_type, entity_id, dict(payload)))
        existing = self.records.get((entity_type, entity_id))
        fields = {**(existing.fields if existing else {}), **business_fields(payload)}
        return self.seed(entity_type, entity_id, fields)

    async def delete(self, entity_type: str, entity_id: str) -> None:
        await self._enter("delete", entity_type, entity_id)
        self.pushed.append(("delete", entity_type, entity_id, None))
        self.records.pop((entity_type, entity_id), None)

    async def pull_changes(self, since: datetime | None, device_id: str) -> PullChanges:
        await self._enter("pull", "sync", device_id)
        self.pull_requests.append((since, device_id))
        if self.pull_failures:
            raise self.pull_failures.pop(0)
        return self.pull_response or PullChanges(synced_at=utcnow())


# ==============================================================================
# Store Fixtures
# ==============================================================================


@pytest.fixture
def db():
    """Provide an in-memory database with the schema applied."""
    database = Database.open(":memory:")
    yield database
    database.close()


@pytest.fixture
def entities(db):
    return EntityStore(db)


@pytest.fixture
def queue(db, entities):
    return PersistentQueue(db, entities)


@pytest.fixture
def sync_state(db):
    return SyncStateStore(db)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def monitor():
    return ConnectivityMonitor(initially_online=True)


@pytest.fixture
def publisher():
    return StatusPublisher()


@pytest.fixture
def make_orchestrator(queue, entities, sync_state, remote, monitor, publisher):
    """Factory building an orchestrator over the shared fixtures."""

    def _make(**overrides: Any) -> SyncOrchestrator:
        options: dict[str, Any] = {
            "connectivity": monitor,
            "publisher": publisher,
            "state": sync_state,
            "puller": PullMerger(remote, queue, entities, sync_state),
            "retry_policy": RetryPolicy(base_delay=2.0, multiplier=2.0, max_delay=300.0),
            "auto_sync_interval": 0,
            "call_timeout": 5.0,
        }
        options.update(overrides)
        return SyncOrchestrator(queue, remote, **options)

    return _make


# ==============================================================================
# Service Fixtures
# ==============================================================================


@pytest.fixture
def service_config(tmp_path) -> TillsyncConfig:
    """Configuration pointing at a temporary database with no background work."""
    return TillsyncConfig(
        storage={"db_path": str(tmp_path / "sync.db")},
        sync={"auto_sync_interval_seconds": 0, "call_timeout_seconds": 5.0},
        connectivity={"probe_interval_seconds": 0},
    )


@pytest.fixture
def service(service_config, remote):
    """SyncService over a temporary database and the fake remote."""
    svc = SyncService.open(service_config, remote=remote)
    yield svc
    svc.db.close()
