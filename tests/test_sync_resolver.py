"""
Tests for the conflict resolver.
"""

from datetime import timedelta

import pytest

from tillsync.core.sync.models import Operation, QueueEntry, RemoteRecord
from tillsync.core.sync.resolver import ConflictResolver, Outcome, differing_fields
from tillsync.utils.timestamps import utcnow

CAPTURED = utcnow()


def _entry(operation: Operation, payload: dict | None) -> QueueEntry:
    return QueueEntry(
        id="e-1",
        seq=1,
        entity_type="products",
        entity_id="p-1",
        operation=operation,
        payload=payload,
        captured_updated_at=CAPTURED,
        created_at=CAPTURED,
    )


def _remote(fields: dict, offset_seconds: int) -> RemoteRecord:
    return RemoteRecord(
        entity_id="p-1",
        fields=fields,
        updated_at=CAPTURED + timedelta(seconds=offset_seconds),
    )


@pytest.fixture
def resolver():
    return ConflictResolver()


class TestDifferingFields:
    """Tests for field comparison."""

    def test_only_local_keys_compared(self):
        assert differing_fields({"price": 10}, {"price": 10, "stock": 3}) == []

    def test_missing_remote_key_differs(self):
        assert differing_fields({"price": 10, "color": "red"}, {"price": 10}) == ["color"]

    def test_metadata_ignored(self):
        local = {"price": 10, "updatedAt": "2026-01-01T00:00:00Z", "id": "p-1"}
        remote = {"price": 10, "updatedAt": "2026-02-01T00:00:00Z", "id": "p-1"}
        assert differing_fields(local, remote) == []

    def test_sorted_output(self):
        assert differing_fields({"b": 1, "a": 1}, {"a": 2, "b": 2}) == ["a", "b"]


class TestDecide:
    """Tests for ConflictResolver.decide."""

    def test_no_remote_copy_creates(self, resolver):
        decision = resolver.decide(_entry(Operation.UPDATE, {"price": 10}), None)
        assert decision.outcome == Outcome.PUSH_CREATE
        assert decision.is_push

    def test_delete_without_remote_accepts(self, resolver):
        decision = resolver.decide(_entry(Operation.DELETE, None), None)
        assert decision.outcome == Outcome.ACCEPT_REMOTE
        assert not decision.is_push

    def test_remote_older_pushes_update(self, resolver):
        decision = resolver.decide(
            _entry(Operation.UPDATE, {"price": 10}), _remote({"price": 12}, -60)
        )
        assert decision.outcome == Outcome.PUSH_UPDATE

    def test_remote_newer_same_values_pushes(self, resolver):
        """A newer remote copy that agrees on every local field is not a conflict."""
        decision = resolver.decide(
            _entry(Operation.UPDATE, {"price": 10}),
            _remote({"price": 10, "stock": 7}, 60),
        )
        assert decision.outcome == Outcome.PUSH_UPDATE

    def test_remote_newer_different_values_conflicts(self, resolver):
        decision = resolver.decide(
            _entry(Operation.UPDATE, {"price": 10, "name": "Mate"}),
            _remote({"price": 12, "name": "Mate"}, 60),
        )
        assert decision.outcome == Outcome.CONFLICT
        assert decision.differing_fields == ("price",)

    def test_equal_timestamps_push(self, resolver):
        decision = resolver.decide(
            _entry(Operation.UPDATE, {"price": 10}), _remote({"price": 12}, 0)
        )
        assert decision.outcome == Outcome.PUSH_UPDATE

    def test_create_against_existing_remote_updates(self, resolver):
        decision = resolver.decide(
            _entry(Operation.CREATE, {"price": 10}), _remote({"price": 9}, -5)
        )
        assert decision.outcome == Outcome.PUSH_UPDATE

    def test_delete_remote_older(self, resolver):
        decision = resolver.decide(_entry(Operation.DELETE, None), _remote({"price": 1}, -5))
        assert decision.outcome == Outcome.PUSH_DELETE

    def test_delete_remote_newer_conflicts(self, resolver):
        decision = resolver.decide(_entry(Operation.DELETE, None), _remote({"price": 1}, 5))
        assert decision.outcome == Outcome.CONFLICT

    def test_missing_capture_never_conflicts(self, resolver):
        entry = _entry(Operation.UPDATE, {"price": 10}).model_copy(
            update={"captured_updated_at": None}
        )
        decision = resolver.decide(entry, _remote({"price": 12}, 3600))
        assert decision.outcome == Outcome.PUSH_UPDATE
