"""
Sync orchestrator.

Drives passes over the persistent queue. The orchestrator is either
``IDLE`` or ``SYNCING``; at most one pass runs at a time. A trigger that
arrives while a pass is running is coalesced into a single follow-up pass,
and every caller awaits the result of the pass that covers its trigger.

A pass:

1. publishes ``is_syncing=True``
2. aborts immediately when offline
3. fixes a high-water sequence number and drains FIFO batches up to it
4. skips failed entries that are permanent or still backing off
5. pushes the rest with bounded concurrency; each entry is fetched,
   resolved, pushed, and its outcome applied through ``_apply_outcome``
6. pulls remote changes (optional)
7. records the last successful sync and publishes ``is_syncing=False``

Per-entry failures are recorded on the entry and in the ``SyncResult``; they
never escape ``sync()``. Only a failure to read the queue itself does.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from tillsync.core.sync.connectivity import ConnectivityMonitor, ReachabilityProbe
from tillsync.core.sync.exceptions import ConflictDetected, EntryNotFoundError
from tillsync.core.sync.models import (
    EntryError,
    FailureKind,
    QueueEntry,
    RemoteRecord,
    SyncResult,
    SyncStatus,
)
from tillsync.core.sync.publisher import StatusPublisher
from tillsync.core.sync.pull import PullMerger
from tillsync.core.sync.queue import PersistentQueue
from tillsync.core.sync.resolver import ConflictDecision, ConflictResolver, Outcome
from tillsync.core.sync.retry import RetryPolicy
from tillsync.core.sync.state import SyncStateStore
from tillsync.core.sync.transport import RemoteAuthority
from tillsync.utils.timestamps import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

OFFLINE_REASON = "offline"


class OrchestratorState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"


@dataclass
class _PassTally:
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    conflicted: int = 0
    pulled: int = 0
    errors: list[EntryError] = field(default_factory=list)
    aborted: bool = False
    abort_reason: str | None = None

    def abort(self, reason: str) -> None:
        if not self.aborted:
            self.aborted = True
            self.abort_reason = reason


def _describe(error: BaseException) -> str:
    text = str(error)
    if isinstance(error, asyncio.TimeoutError) and not text:
        return "remote call timed out"
    return text or type(error).__name__


class SyncOrchestrator:
    """
    Runs sync passes and owns the automatic triggers.

    Example:
        orchestrator = SyncOrchestrator(queue, remote, connectivity=monitor)
        async with orchestrator:
            result = await orchestrator.sync()
            print(result.summary())
    """

    def __init__(
        self,
        queue: PersistentQueue,
        remote: RemoteAuthority,
        *,
        resolver: ConflictResolver | None = None,
        retry_policy: RetryPolicy | None = None,
        connectivity: ConnectivityMonitor | None = None,
        publisher: StatusPublisher | None = None,
        state: SyncStateStore | None = None,
        puller: PullMerger | None = None,
        probe: ReachabilityProbe | None = None,
        batch_size: int = 50,
        concurrency: int = 4,
        call_timeout: float = 30.0,
        auto_sync_interval: float = 300.0,
        pull_enabled: bool = True,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        self.queue = queue
        self.remote = remote
        self.resolver = resolver or ConflictResolver()
        self.retry_policy = retry_policy or RetryPolicy()
        self.connectivity = connectivity or ConnectivityMonitor()
        self.publisher = publisher or StatusPublisher()
        self.sync_state = state
        self.puller = puller
        self.probe = probe
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.call_timeout = call_timeout
        self.auto_sync_interval = auto_sync_interval
        self.pull_enabled = pull_enabled

        self._state = OrchestratorState.IDLE
        self._last_result: SyncResult | None = None

        # Pass coalescing
        self._driver: asyncio.Task[None] | None = None
        self._current: asyncio.Future[SyncResult] | None = None
        self._current_pull = False
        self._next: asyncio.Future[SyncResult] | None = None
        self._next_pull = False

        # Lifecycle
        self._started = False
        self._timer: asyncio.Task[None] | None = None
        self._unsubscribe_connectivity: Any = None
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def last_result(self) -> SyncResult | None:
        """Result of the most recent completed pass."""
        return self._last_result

    async def sync(self, *, pull: bool | None = None) -> SyncResult:
        """
        Run a pass, or join the one that will cover this trigger.

        If idle, a pass starts now. If a pass is running, the caller waits
        for one follow-up pass shared by every trigger that arrived during
        the running pass (entries enqueued mid-pass are only picked up then).

        Args:
            pull: Override ``pull_enabled`` for this trigger

        Returns:
            The SyncResult of the covering pass
        """
        want_pull = self.pull_enabled if pull is None else pull
        loop = asyncio.get_running_loop()

        if self._current is None:
            self._current = loop.create_future()
            self._current_pull = want_pull
            self._driver = asyncio.create_task(self._drive(), name="tillsync-sync-pass")
            future = self._current
        else:
            if self._next is None:
                self._next = loop.create_future()
                self._next_pull = False
            self._next_pull = self._next_pull or want_pull
            future = self._next
            logger.debug("Sync requested during a pass; coalesced into the follow-up pass")

        return await asyncio.shield(future)

    def request_sync(self, reason: str = "manual") -> asyncio.Task[SyncResult | None]:
        """
        Fire-and-forget trigger (timer, connectivity edge).

        Must be called from inside the running event loop.
        """
        task = asyncio.create_task(self._background_sync(reason))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def start(self) -> None:
        """Start the periodic timer, the connectivity trigger and the probe."""
        if self._started:
            return
        self._started = True
        self._unsubscribe_connectivity = self.connectivity.on_transition(self._on_connectivity)
        if self.auto_sync_interval and self.auto_sync_interval > 0:
            self._timer = asyncio.create_task(self._timer_loop(), name="tillsync-sync-timer")
        if self.probe is not None:
            self.probe.start()
        logger.debug(
            "Orchestrator started (interval=%ss, concurrency=%d)",
            self.auto_sync_interval,
            self.concurrency,
        )

    async def stop(self) -> None:
        """Stop automatic triggers and wait for any running pass to finish."""
        if not self._started:
            return
        self._started = False
        if self._unsubscribe_connectivity is not None:
            self._unsubscribe_connectivity()
            self._unsubscribe_connectivity = None
        if self._timer is not None:
            self._timer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer
            self._timer = None
        if self.probe is not None:
            await self.probe.stop()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._driver is not None:
            await asyncio.gather(self._driver, return_exceptions=True)

    async def __aenter__(self) -> SyncOrchestrator:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def _on_connectivity(self, online: bool) -> None:
        if not online:
            return
        try:
            self.request_sync("connectivity restored")
        except RuntimeError:
            # set_online was called outside the event loop thread
            logger.warning("Connectivity restored outside the event loop; sync not scheduled")

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self.auto_sync_interval)
            if self.connectivity.is_online:
                self.request_sync("periodic")

    async def _background_sync(self, reason: str) -> SyncResult | None:
        logger.debug("Automatic sync triggered: %s", reason)
        try:
            return await self.sync()
        except Exception:
            logger.exception("Automatic sync (%s) failed", reason)
            return None

    # ------------------------------------------------------------------
    # Pass driver
    # ------------------------------------------------------------------

    async def _drive(self) -> None:
        while True:
            future = self._current
            assert future is not None
            try:
                result = await self._run_pass(self._current_pull)
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)

            if self._next is None:
                self._current = None
                self._driver = None
                return
            self._current, self._next = self._next, None
            self._current_pull = self._next_pull

    async def _run_pass(self, pull: bool) -> SyncResult:
        started_at = utcnow()
        tally = _PassTally()
        self._state = OrchestratorState.SYNCING
        self.publisher.update(is_syncing=True)
        try:
            if not self.connectivity.is_online:
                tally.abort(OFFLINE_REASON)
                logger.info("Sync skipped: offline")
            else:
                await self._push_phase(tally)
                if pull and self.puller is not None and not tally.aborted:
                    await self._pull_phase(tally)

            finished_at = utcnow()
            result = SyncResult(
                synced=tally.synced,
                skipped=tally.skipped,
                failed=tally.failed,
                conflicted=tally.conflicted,
                pulled=tally.pulled,
                errors=tally.errors,
                started_at=started_at,
                finished_at=finished_at,
                aborted=tally.aborted,
                abort_reason=tally.abort_reason,
            )
            # Entries still backing off count against a clean pass
            clean = (
                not result.aborted
                and not result.errors
                and self.queue.count([SyncStatus.ERROR]) == 0
            )
            if self.sync_state is not None and clean:
                self.sync_state.set_last_sync_at(finished_at)

            self._last_result = result
            logger.info("Sync pass finished: %s", result.summary())
            return result
        finally:
            self._state = OrchestratorState.IDLE
            self.publisher.update(is_syncing=False)

    async def _push_phase(self, tally: _PassTally) -> None:
        high_water = self.queue.max_seq()
        semaphore = asyncio.Semaphore(self.concurrency)
        cursor: int | None = None

        while True:
            batch = self.queue.dequeue_batch(self.batch_size, after_seq=cursor, up_to_seq=high_water)
            if not batch:
                return
            cursor = max(entry.seq for entry in batch)

            if tally.aborted:
                tally.skipped += len(batch)
                continue

            now = utcnow()
            eligible: list[QueueEntry] = []
            for entry in batch:
                if entry.status == SyncStatus.ERROR and not self.retry_policy.is_due(entry, now):
                    tally.skipped += 1
                else:
                    eligible.append(entry)

            await asyncio.gather(
                *(self._process_entry(entry, semaphore, tally) for entry in eligible)
            )

    async def _pull_phase(self, tally: _PassTally) -> None:
        assert self.puller is not None
        try:
            outcome = await self._call(self.puller.pull())
        except Exception as e:
            kind = self.retry_policy.classify(e)
            logger.warning("Pull failed (%s): %s", kind.value, _describe(e))
            tally.errors.append(
                EntryError(entity_type="sync/pull", kind=kind, message=_describe(e))
            )
            return
        tally.pulled += outcome.pulled
        tally.conflicted += outcome.conflicted

    async def _process_entry(
        self,
        entry: QueueEntry,
        semaphore: asyncio.Semaphore,
        tally: _PassTally,
    ) -> None:
        async with semaphore:
            if tally.aborted or not self.connectivity.is_online:
                tally.abort(OFFLINE_REASON)
                tally.skipped += 1
                return

            # The entry may have changed while it waited for a slot
            current = self.queue.get(entry.id)
            if current is None or current.status == SyncStatus.CONFLICT:
                tally.skipped += 1
                return
            current = self.queue.mark_in_flight(current.id)
            revision = current.revision

            try:
                remote = await self._call(self.remote.fetch(current.entity_type, current.entity_id))
                decision = self.resolver.decide(current, remote)
                try:
                    acknowledged = await self._push(current, decision)
                except ConflictDetected as conflict:
                    # The remote moved between our fetch and the push
                    remote = await self._call(
                        self.remote.fetch(current.entity_type, current.entity_id)
                    )
                    if remote is None:
                        raise
                    decision = ConflictDecision(Outcome.CONFLICT, reason=str(conflict))
                    acknowledged = None
            except Exception as e:
                self._apply_outcome(current, revision, tally, error=e)
                return

            self._apply_outcome(
                current,
                revision,
                tally,
                decision=decision,
                remote=remote,
                acknowledged=acknowledged,
            )

    async def _push(self, entry: QueueEntry, decision: ConflictDecision) -> RemoteRecord | None:
        payload = entry.payload or {}
        if decision.outcome == Outcome.PUSH_CREATE:
            return await self._call(self.remote.create(entry.entity_type, entry.entity_id, payload))
        if decision.outcome == Outcome.PUSH_UPDATE:
            return await self._call(self.remote.update(entry.entity_type, entry.entity_id, payload))
        if decision.outcome == Outcome.PUSH_DELETE:
            await self._call(self.remote.delete(entry.entity_type, entry.entity_id))
        return None

    async def _call(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.call_timeout)

    def _apply_outcome(
        self,
        entry: QueueEntry,
        revision: int,
        tally: _PassTally,
        *,
        decision: ConflictDecision | None = None,
        remote: RemoteRecord | None = None,
        acknowledged: RemoteRecord | None = None,
        error: BaseException | None = None,
    ) -> None:
        """
        Apply the result of one entry's remote exchange.

        Synchronous: it runs between awaits, so the queue row and the
        entity's status change together. A revision mismatch means a newer
        local mutation superseded the entry mid-flight; it stays pending and
        counts as skipped.
        """
        try:
            if error is not None:
                kind = self.retry_policy.classify(error)
                next_attempt_at = None
                if kind == FailureKind.TRANSIENT:
                    next_attempt_at = self.retry_policy.next_attempt_at(entry.attempts + 1)
                updated = self.queue.mark_failed(
                    entry.id,
                    _describe(error),
                    kind=kind,
                    next_attempt_at=next_attempt_at,
                    revision=revision,
                )
                if updated.revision != revision:
                    tally.skipped += 1
                    return
                tally.failed += 1
                tally.errors.append(
                    EntryError(
                        entry_id=entry.id,
                        entity_type=entry.entity_type,
                        entity_id=entry.entity_id,
                        kind=kind,
                        message=_describe(error),
                    )
                )
                logger.warning(
                    "Sync of %s/%s failed (%s): %s",
                    entry.entity_type,
                    entry.entity_id,
                    kind.value,
                    _describe(error),
                )
                return

            assert decision is not None
            if decision.outcome == Outcome.CONFLICT:
                assert remote is not None
                updated = self.queue.mark_conflict(entry.id, remote, revision=revision)
                if updated.revision != revision:
                    tally.skipped += 1
                    return
                tally.conflicted += 1
                logger.info(
                    "Conflict on %s/%s: %s", entry.entity_type, entry.entity_id, decision.reason
                )
                return

            if self.queue.mark_synced(
                entry.id,
                revision=revision,
                acknowledged_at=acknowledged.updated_at if acknowledged else None,
            ):
                tally.synced += 1
            else:
                tally.skipped += 1
        except EntryNotFoundError:
            logger.warning("Entry %s disappeared while its remote call was in flight", entry.id)
            tally.skipped += 1
