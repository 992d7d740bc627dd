"""
Connectivity monitoring.

``ConnectivityMonitor`` tracks whether the remote authority is believed to
be reachable and fires listeners on online/offline edges only. The runtime
signal comes from whatever calls ``set_online``: the ``ReachabilityProbe``
below, an OS network hook, or a test.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable

import httpx

logger = logging.getLogger(__name__)

TransitionListener = Callable[[bool], None]


class ConnectivityMonitor:
    """
    Online/offline state with edge-triggered notification.

    Example:
        >>> monitor = ConnectivityMonitor()
        >>> monitor.on_transition(lambda online: print("online" if online else "offline"))
        >>> monitor.set_online(False)
        offline
        >>> monitor.set_online(False)  # no edge, no notification
    """

    def __init__(self, initially_online: bool = True) -> None:
        self._online = initially_online
        self._listeners: list[TransitionListener] = []
        self._watchers: list[asyncio.Queue[bool]] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> bool:
        """
        Feed a reachability signal.

        Returns:
            True if the signal was an edge (state changed)
        """
        online = bool(online)
        if online == self._online:
            return False
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")

        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:
                logger.exception("Connectivity listener %r raised", listener)
        for watcher in list(self._watchers):
            watcher.put_nowait(online)
        return True

    def on_transition(self, listener: TransitionListener) -> Callable[[], None]:
        """Register an edge listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    async def transitions(self) -> AsyncIterator[bool]:
        """
        Async iterator over edges observed after the call.

        Example:
            async for online in monitor.transitions():
                if online:
                    await orchestrator.sync()
        """
        queue: asyncio.Queue[bool] = asyncio.Queue()
        self._watchers.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            with contextlib.suppress(ValueError):
                self._watchers.remove(queue)


class ReachabilityProbe:
    """
    Periodically probes a health endpoint and feeds the monitor.

    Any 2xx-4xx answer counts as reachable (the backend is up even if it
    rejects the probe); connection errors, timeouts and 5xx count as
    unreachable.
    """

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        url: str,
        interval: float = 30.0,
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.monitor = monitor
        self.url = url
        self.interval = interval
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def check(self) -> bool:
        """Probe once and feed the result into the monitor."""
        client = self._get_client()
        try:
            response = await client.get(self.url, timeout=self.timeout)
            reachable = response.status_code < 500
        except httpx.HTTPError as e:
            logger.debug("Reachability probe to %s failed: %s", self.url, e)
            reachable = False
        self.monitor.set_online(reachable)
        return reachable

    def start(self) -> None:
        """Start probing in the background (requires a running loop)."""
        if self.interval <= 0 or self.running:
            return
        self._task = asyncio.create_task(self._run(), name="tillsync-reachability-probe")

    async def stop(self) -> None:
        """Stop probing and release the HTTP client if we created it."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def _run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.interval)
