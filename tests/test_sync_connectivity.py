"""
Tests for connectivity monitoring and the reachability probe.
"""

import asyncio

import httpx
import pytest

from tillsync.core.sync.connectivity import ConnectivityMonitor, ReachabilityProbe


class TestConnectivityMonitor:
    """Tests for edge-triggered notification."""

    def test_edges_only(self):
        monitor = ConnectivityMonitor()
        seen = []
        monitor.on_transition(seen.append)

        assert monitor.set_online(True) is False
        assert monitor.set_online(False) is True
        assert monitor.set_online(False) is False
        assert monitor.set_online(True) is True

        assert seen == [False, True]
        assert monitor.is_online is True

    def test_initially_offline(self):
        monitor = ConnectivityMonitor(initially_online=False)
        assert monitor.is_online is False
        assert monitor.set_online(True) is True

    def test_unsubscribe(self):
        monitor = ConnectivityMonitor()
        seen = []
        unsubscribe = monitor.on_transition(seen.append)
        unsubscribe()
        unsubscribe()

        monitor.set_online(False)
        assert seen == []

    def test_raising_listener_is_isolated(self):
        monitor = ConnectivityMonitor()
        seen = []

        def broken(online):
            raise RuntimeError("boom")

        monitor.on_transition(broken)
        monitor.on_transition(seen.append)
        monitor.set_online(False)

        assert seen == [False]

    @pytest.mark.asyncio
    async def test_transitions_iterator(self):
        monitor = ConnectivityMonitor()
        transitions = monitor.transitions()

        first = asyncio.create_task(transitions.__anext__())
        await asyncio.sleep(0)
        monitor.set_online(False)
        assert await first is False

        monitor.set_online(True)
        assert await transitions.__anext__() is True
        await transitions.aclose()


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestReachabilityProbe:
    """Tests for the HTTP reachability probe."""

    @pytest.mark.asyncio
    async def test_healthy_endpoint_is_online(self):
        monitor = ConnectivityMonitor(initially_online=False)
        client = _client(lambda request: httpx.Response(200, json={"status": "ok"}))
        probe = ReachabilityProbe(monitor, "http://backend/health", client=client)

        assert await probe.check() is True
        assert monitor.is_online is True
        await client.aclose()

    @pytest.mark.asyncio
    async def test_client_error_still_reachable(self):
        monitor = ConnectivityMonitor(initially_online=False)
        client = _client(lambda request: httpx.Response(401))
        probe = ReachabilityProbe(monitor, "http://backend/health", client=client)

        assert await probe.check() is True
        await client.aclose()

    @pytest.mark.asyncio
    async def test_server_error_is_offline(self):
        monitor = ConnectivityMonitor()
        client = _client(lambda request: httpx.Response(503))
        probe = ReachabilityProbe(monitor, "http://backend/health", client=client)

        assert await probe.check() is False
        assert monitor.is_online is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_connection_error_is_offline(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        monitor = ConnectivityMonitor()
        client = _client(refuse)
        probe = ReachabilityProbe(monitor, "http://backend/health", client=client)

        assert await probe.check() is False
        assert monitor.is_online is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        monitor = ConnectivityMonitor(initially_online=False)
        client = _client(lambda request: httpx.Response(200))
        probe = ReachabilityProbe(monitor, "http://backend/health", interval=0.01, client=client)

        probe.start()
        assert probe.running
        await asyncio.sleep(0.05)
        await probe.stop()

        assert not probe.running
        assert monitor.is_online is True
        # Caller-owned client stays open
        assert not client.is_closed
        await client.aclose()

    @pytest.mark.asyncio
    async def test_zero_interval_does_not_start(self):
        probe = ReachabilityProbe(ConnectivityMonitor(), "http://backend/health", interval=0)
        probe.start()
        assert not probe.running
        await probe.stop()
