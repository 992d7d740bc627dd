"""
Tests for the SyncService facade.

Tests cover:
- Construction from configuration (database, recovery, device id)
- record_mutation (entity write and enqueue in one transaction)
- Status publishing and connectivity
- Sync, retry, conflicts and discard through the facade
- Lifecycle (start, close, async context manager)
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from tillsync.core.sync.exceptions import (
    ConflictPendingError,
    InvalidTransitionError,
    PermanentValidationError,
    TransientNetworkError,
)
from tillsync.core.sync.models import (
    ConflictResolution,
    Operation,
    RemoteRecord,
    ServiceStatus,
    SyncStatus,
)
from tillsync.core.sync.queue import INTERRUPTED_MESSAGE
from tillsync.core.sync.service import SyncService
from tillsync.core.sync.transport import HttpRemoteAuthority
from tillsync.utils.timestamps import utcnow


def _conflict(service: SyncService, entity_id: str = "p-1"):
    entry = service.record_mutation("products", entity_id, Operation.UPDATE, {"price": 10})
    remote = RemoteRecord(
        entity_id=entity_id,
        fields={"price": 12},
        updated_at=entry.captured_updated_at + timedelta(minutes=1),
    )
    return service.queue.mark_conflict(entry.id, remote)


class TestOpen:
    """Tests for SyncService.open."""

    def test_initial_status(self, service):
        status = service.get_status()
        assert status.is_online is True
        assert status.is_syncing is False
        assert status.device_id.startswith("device-")
        assert service.last_synced_at() is None
        assert service.last_result is None

    def test_device_id_stable_across_reopen(self, service_config, remote):
        first = SyncService.open(service_config, remote=remote)
        device_id = first.get_status().device_id
        first.db.close()

        second = SyncService.open(service_config, remote=remote)
        try:
            assert second.get_status().device_id == device_id
        finally:
            second.db.close()

    def test_recovers_interrupted_entries(self, service_config, remote):
        first = SyncService.open(service_config, remote=remote)
        entry = first.record_mutation("products", "p-1", Operation.CREATE, {"name": "Mate"})
        first.queue.mark_in_flight(entry.id)
        first.db.close()

        second = SyncService.open(service_config, remote=remote)
        try:
            recovered = second.queue.get(entry.id)
            assert recovered.status == SyncStatus.ERROR
            assert recovered.last_error == INTERRUPTED_MESSAGE
            assert second.entities.get("products", "p-1").sync_status == SyncStatus.ERROR
        finally:
            second.db.close()

    def test_default_remote_is_http(self, service_config):
        svc = SyncService.open(service_config)
        try:
            assert isinstance(svc.remote, HttpRemoteAuthority)
            assert svc.orchestrator.probe is None
        finally:
            svc.db.close()

    @pytest.mark.asyncio
    async def test_probe_built_for_default_remote(self, service_config):
        config = service_config.model_copy(
            update={"connectivity": service_config.connectivity.model_copy(update={"probe_interval_seconds": 15})}
        )
        svc = SyncService.open(config)

        probe = svc.orchestrator.probe
        assert probe is not None
        assert probe.url == f"{config.remote.base_url}/health"
        assert probe.interval == 15
        await svc.close()

    def test_assume_offline(self, service_config, remote):
        config = service_config.model_copy(
            update={"connectivity": service_config.connectivity.model_copy(update={"assume_online": False})}
        )
        svc = SyncService.open(config, remote=remote)
        try:
            assert svc.get_status().is_online is False
        finally:
            svc.db.close()


class TestRecordMutation:
    """Tests for record_mutation."""

    def test_writes_entity_and_enqueues(self, service):
        entry = service.record_mutation("products", "p-1", "create", {"name": "Mate", "price": 10})

        record = service.entities.get("products", "p-1")
        assert record.fields == {"name": "Mate", "price": 10}
        assert record.sync_status == SyncStatus.PENDING
        assert entry.payload == record.fields
        assert entry.captured_updated_at == record.updated_at
        assert service.count() == 1

    def test_update_merges_over_stored_fields(self, service):
        service.record_mutation("products", "p-1", Operation.CREATE, {"name": "Mate", "price": 100})
        entry = service.record_mutation("products", "p-1", Operation.UPDATE, {"price": 120})

        assert service.entities.get("products", "p-1").fields == {"name": "Mate", "price": 120}
        assert entry.operation == Operation.CREATE
        assert entry.payload == {"name": "Mate", "price": 120}

    @pytest.mark.asyncio
    async def test_partial_update_pushes_full_record(self, service, remote):
        earlier = utcnow() - timedelta(minutes=5)
        remote.seed("products", "p-1", {"name": "Mate", "price": 100}, updated_at=earlier)
        service.entities.apply_remote("products", "p-1", {"name": "Mate", "price": 100}, earlier)

        service.record_mutation("products", "p-1", Operation.UPDATE, {"price": 120})
        result = await service.sync(pull=False)

        assert result.synced == 1
        assert remote.pushed == [("update", "products", "p-1", {"name": "Mate", "price": 120})]

    def test_delete_carries_no_payload(self, service):
        service.record_mutation("products", "p-1", Operation.CREATE, {"name": "Mate"})
        entry = service.record_mutation("products", "p-1", Operation.DELETE)

        assert entry.operation == Operation.DELETE
        assert entry.payload is None
        assert service.entities.get("products", "p-1").deleted is True

    def test_unknown_type_rolls_back(self, service):
        with pytest.raises(ValueError):
            service.record_mutation("widgets", "w-1", Operation.CREATE, {"name": "Widget"})

        assert service.entities.get("widgets", "w-1") is None
        assert service.count() == 0

    def test_conflict_rejects_and_rolls_back(self, service):
        _conflict(service)

        with pytest.raises(ConflictPendingError):
            service.record_mutation("products", "p-1", Operation.UPDATE, {"price": 99})

        assert service.entities.get("products", "p-1").fields == {"price": 10}


class TestStatus:
    """Tests for status publishing."""

    def test_connectivity_reflected_in_status(self, service):
        seen: list[ServiceStatus] = []
        unsubscribe = service.subscribe(seen.append)

        service.set_online(False)
        service.set_online(False)
        service.set_online(True)
        unsubscribe()

        assert [s.is_online for s in seen] == [False, True]

    @pytest.mark.asyncio
    async def test_sync_updates_status_and_last_sync(self, service, remote):
        service.record_mutation("products", "p-1", Operation.CREATE, {"name": "Mate"})
        syncing = []
        service.subscribe(lambda status: syncing.append(status.is_syncing))

        result = await service.sync()

        assert result.synced == 1
        assert syncing == [True, False]
        assert service.last_result is result
        assert service.last_synced_at() is not None
        assert service.counts() == {"pending": 0, "error": 0, "conflict": 0}
        assert service.entities.get("products", "p-1").sync_status == SyncStatus.SYNCED


class TestQueueManagement:
    """Tests for retry, conflicts and discard through the facade."""

    @pytest.mark.asyncio
    async def test_retry_failed_operations(self, service, remote):
        service.record_mutation("products", "p-1", Operation.CREATE, {"price": -1})
        remote.fail_push("products", "p-1", PermanentValidationError("invalid price", status_code=422))
        await service.sync()

        assert service.count([SyncStatus.ERROR]) == 1
        assert service.retry_failed_operations() == 1
        assert service.retry_failed_operations() == 0

        result = await service.sync()
        assert result.synced == 1

    @pytest.mark.asyncio
    async def test_discard(self, service, remote):
        earlier = utcnow() - timedelta(minutes=5)
        remote.seed("products", "p-1", {"name": "Mate", "price": 100}, updated_at=earlier)
        service.entities.apply_remote("products", "p-1", {"name": "Mate", "price": 100}, earlier)
        service.record_mutation("products", "p-1", Operation.UPDATE, {"price": -1})
        remote.fail_push("products", "p-1", PermanentValidationError("invalid price", status_code=422))
        await service.sync(pull=False)
        entry = service.list_entries([SyncStatus.ERROR])[0]

        await service.discard(entry.id)

        assert service.count() == 0
        record = service.entities.get("products", "p-1")
        assert record.fields == {"name": "Mate", "price": 100}
        assert record.sync_status == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_discard_rejected_create_removes_entity(self, service, remote):
        service.record_mutation("products", "p-1", Operation.CREATE, {"price": -1})
        remote.fail_push("products", "p-1", PermanentValidationError("invalid price", status_code=422))
        await service.sync(pull=False)
        entry = service.list_entries([SyncStatus.ERROR])[0]

        await service.discard(entry.id)

        assert service.count() == 0
        assert service.entities.get("products", "p-1") is None

    @pytest.mark.asyncio
    async def test_discard_keeps_entry_when_fetch_fails(self, service, remote):
        service.record_mutation("products", "p-1", Operation.CREATE, {"price": -1})
        remote.fail_push("products", "p-1", PermanentValidationError("invalid price", status_code=422))
        await service.sync(pull=False)
        entry = service.list_entries([SyncStatus.ERROR])[0]
        remote.fetch_failures[("products", "p-1")] = [TransientNetworkError("HTTP 503")]

        with pytest.raises(TransientNetworkError):
            await service.discard(entry.id)

        assert service.queue.get(entry.id).status == SyncStatus.ERROR
        assert service.entities.get("products", "p-1").fields == {"price": -1}

    @pytest.mark.asyncio
    async def test_discard_pending_entry_rejected(self, service, remote):
        entry = service.record_mutation("products", "p-1", Operation.CREATE, {"name": "Mate"})

        with pytest.raises(InvalidTransitionError):
            await service.discard(entry.id)

        assert remote.calls == []

    def test_resolve_conflict_use_remote(self, service):
        entry = _conflict(service)
        assert service.list_conflicts() == [entry]

        assert service.resolve_conflict(entry.id, ConflictResolution.USE_REMOTE) is None

        assert service.list_conflicts() == []
        assert service.entities.get("products", "p-1").fields == {"price": 12}

    @pytest.mark.asyncio
    async def test_merge_then_sync(self, service, remote):
        entry = _conflict(service)
        remote.seed(
            "products",
            "p-1",
            {"price": 12},
            updated_at=RemoteRecord.from_snapshot(entry.remote_snapshot).updated_at,
        )

        service.resolve_conflict(entry.id, "merge", {"price": 11})
        result = await service.sync(pull=False)

        assert result.synced == 1
        assert remote.records[("products", "p-1")].fields == {"price": 11}


class TestLifecycle:
    """Tests for start/close."""

    @pytest.mark.asyncio
    async def test_async_context_manager(self, service_config, remote):
        async with SyncService.open(service_config, remote=remote) as svc:
            svc.record_mutation("products", "p-1", Operation.CREATE, {"name": "Mate"})
            result = await svc.sync()
            assert result.synced == 1

        assert svc._closed

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, service_config):
        svc = SyncService.open(service_config)
        await svc.close()
        await svc.close()

    @pytest.mark.asyncio
    async def test_reconnect_triggers_sync_once_started(self, service_config, remote):
        svc = SyncService.open(service_config, remote=remote)
        await svc.start()
        try:
            svc.set_online(False)
            svc.record_mutation("products", "p-1", Operation.CREATE, {"name": "Mate"})
            svc.set_online(True)

            deadline = utcnow() + timedelta(seconds=2)
            while svc.count() and utcnow() < deadline:
                await asyncio.sleep(0.01)

            assert svc.count() == 0
        finally:
            await svc.close()
