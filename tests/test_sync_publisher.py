"""
Tests for the status publisher.
"""

import logging

from tillsync.core.sync.models import ServiceStatus
from tillsync.core.sync.publisher import StatusPublisher


class TestStatusPublisher:
    """Tests for StatusPublisher."""

    def test_initial_status(self):
        publisher = StatusPublisher()
        assert publisher.current == ServiceStatus(is_online=True, is_syncing=False)

    def test_update_notifies(self):
        publisher = StatusPublisher()
        seen = []
        publisher.subscribe(seen.append)

        publisher.update(is_syncing=True)

        assert [s.is_syncing for s in seen] == [True]
        assert publisher.current.is_syncing is True

    def test_unchanged_update_is_silent(self):
        publisher = StatusPublisher()
        seen = []
        publisher.subscribe(seen.append)

        publisher.update(is_online=True)

        assert seen == []

    def test_unsubscribe_is_idempotent(self):
        publisher = StatusPublisher()
        seen = []
        other = []
        unsubscribe = publisher.subscribe(seen.append)
        publisher.subscribe(other.append)

        unsubscribe()
        unsubscribe()
        publisher.update(is_syncing=True)

        assert seen == []
        assert [s.is_syncing for s in other] == [True]

    def test_subscribe_during_notification_applies_next_time(self):
        """Listeners added while notifying only hear later changes."""
        publisher = StatusPublisher()
        late = []

        def add_late(status):
            publisher.subscribe(late.append)

        unsubscribe = publisher.subscribe(add_late)
        publisher.update(is_syncing=True)
        unsubscribe()

        assert late == []
        publisher.update(is_syncing=False)
        assert [s.is_syncing for s in late] == [False]

    def test_unsubscribe_during_notification(self):
        publisher = StatusPublisher()
        calls = []
        unsubscribers = {}

        def once(status):
            calls.append(status)
            unsubscribers["once"]()

        unsubscribers["once"] = publisher.subscribe(once)
        publisher.update(is_syncing=True)
        publisher.update(is_syncing=False)

        assert len(calls) == 1

    def test_raising_listener_does_not_stop_others(self, caplog):
        publisher = StatusPublisher()
        seen = []

        def broken(status):
            raise RuntimeError("listener bug")

        publisher.subscribe(broken)
        publisher.subscribe(seen.append)

        with caplog.at_level(logging.ERROR, logger="tillsync.core.sync.publisher"):
            publisher.update(is_online=False)

        assert len(seen) == 1
        assert "listener" in caplog.text.lower()
