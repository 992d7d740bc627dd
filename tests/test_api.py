"""
Tests for the local FastAPI application.

Uses FastAPI's TestClient against an app built around a service with the
in-memory remote authority.
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from tillsync.core.api.app import ErrorCode, create_app
from tillsync.core.sync.exceptions import PermanentValidationError
from tillsync.core.sync.models import Operation, RemoteRecord


@pytest.fixture
def client(service):
    """Test client; the service lifecycle is owned by the fixtures."""
    with TestClient(create_app(service, manage_lifecycle=False)) as test_client:
        yield test_client


def _conflict(service, entity_id="p-1"):
    entry = service.record_mutation("products", entity_id, Operation.UPDATE, {"price": 10})
    remote = RemoteRecord(
        entity_id=entity_id,
        fields={"price": 12},
        updated_at=entry.captured_updated_at + timedelta(minutes=1),
    )
    return service.queue.mark_conflict(entry.id, remote)


class TestHealthAndStatus:
    """Tests for /health and /api/status."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_status(self, client, service):
        service.record_mutation("products", "p-1", Operation.CREATE, {"name": "Mate"})

        response = client.get("/api/status")

        assert response.status_code == 200
        data = response.json()
        assert data["is_online"] is True
        assert data["is_syncing"] is False
        assert data["device_id"] == service.get_status().device_id
        assert data["last_synced_at"] is None
        assert data["counts"] == {"pending": 1, "error": 0, "conflict": 0}

    def test_queue_counts(self, client, service):
        _conflict(service)
        response = client.get("/api/queue/counts")
        assert response.json() == {"pending": 0, "error": 0, "conflict": 1}


class TestSyncRoutes:
    """Tests for /api/sync and /api/retry."""

    def test_sync_without_body(self, client, service, remote):
        service.record_mutation("products", "p-1", Operation.CREATE, {"name": "Mate"})

        response = client.post("/api/sync")

        assert response.status_code == 200
        data = response.json()
        assert data["synced"] == 1
        assert data["aborted"] is False
        assert remote.push_count("products", "p-1") == 1

    def test_sync_without_pull(self, client, remote):
        response = client.post("/api/sync", json={"pull": False})
        assert response.status_code == 200
        assert remote.pull_requests == []

    def test_sync_offline_is_aborted(self, client, service):
        service.set_online(False)

        data = client.post("/api/sync").json()

        assert data["aborted"] is True
        assert data["abort_reason"] == "offline"

    def test_retry(self, client, service, remote):
        service.record_mutation("products", "p-1", Operation.CREATE, {"price": -1})
        remote.fail_push("products", "p-1", PermanentValidationError("invalid", status_code=422))
        first = client.post("/api/sync").json()
        assert first["failed"] == 1
        assert first["errors"][0]["message"] == "invalid"

        assert client.post("/api/retry").json() == {"retried": 1}
        assert client.post("/api/retry").json() == {"retried": 0}


class TestConflictRoutes:
    """Tests for /api/conflicts."""

    def test_list_conflicts(self, client, service):
        entry = _conflict(service)

        response = client.get("/api/conflicts")

        assert response.status_code == 200
        data = response.json()
        assert [item["id"] for item in data] == [entry.id]
        assert data[0]["remote_snapshot"]["fields"] == {"price": 12}

    def test_resolve_use_remote(self, client, service):
        entry = _conflict(service)

        response = client.post(
            f"/api/conflicts/{entry.id}/resolve", json={"resolution": "use_remote"}
        )

        assert response.status_code == 200
        assert response.json() == {
            "entry_id": entry.id,
            "resolution": "use_remote",
            "entry": None,
        }
        assert service.entities.get("products", "p-1").fields == {"price": 12}

    def test_resolve_merge(self, client, service):
        entry = _conflict(service)

        response = client.post(
            f"/api/conflicts/{entry.id}/resolve",
            json={"resolution": "merge", "merged_payload": {"price": 11}},
        )

        assert response.status_code == 200
        assert response.json()["entry"]["payload"] == {"price": 11}
        assert response.json()["entry"]["status"] == "pending"

    def test_resolve_unknown_entry(self, client):
        response = client.post("/api/conflicts/missing/resolve", json={"resolution": "use_local"})

        assert response.status_code == 404
        assert response.json()["error_code"] == ErrorCode.NOT_FOUND.value

    def test_resolve_non_conflict(self, client, service):
        entry = service.record_mutation("products", "p-1", Operation.CREATE, {"price": 1})

        response = client.post(f"/api/conflicts/{entry.id}/resolve", json={"resolution": "use_local"})

        assert response.status_code == 409
        assert response.json()["error_code"] == ErrorCode.INVALID_TRANSITION.value

    def test_merge_without_payload(self, client, service):
        entry = _conflict(service)

        response = client.post(f"/api/conflicts/{entry.id}/resolve", json={"resolution": "merge"})

        assert response.status_code == 400
        assert response.json()["error_code"] == ErrorCode.INVALID_REQUEST.value

    def test_invalid_resolution(self, client, service):
        entry = _conflict(service)

        response = client.post(f"/api/conflicts/{entry.id}/resolve", json={"resolution": "coin_flip"})

        assert response.status_code == 422
        body = response.json()
        assert body["error_code"] == ErrorCode.VALIDATION_ERROR.value
        assert "resolution" in body["detail"]


class TestLifespan:
    """The app starts and closes the service it manages."""

    def test_lifespan_closes_service(self, service):
        with TestClient(create_app(service)) as client:
            assert client.get("/health").status_code == 200
            assert service.orchestrator._started

        assert service._closed
