"""
Sync service facade.

``SyncService`` wires the store, queue, resolver, retry policy, transport,
connectivity monitor, publisher and orchestrator together from a
``TillsyncConfig``. It is constructed explicitly (there is no module-level
singleton) and is the single object the CLI, the local API and an embedding
application talk to.

Usage:
    service = SyncService.open(load_config())
    async with service:
        service.record_mutation("products", "p-1", Operation.UPDATE, {"price": 120})
        result = await service.sync()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from tillsync.core.config.loader import load_config
from tillsync.core.config.models import TillsyncConfig
from tillsync.core.store.connection import Database
from tillsync.core.store.entities import EntityStore
from tillsync.core.sync.connectivity import ConnectivityMonitor, ReachabilityProbe
from tillsync.core.sync.exceptions import TransientNetworkError
from tillsync.core.sync.models import (
    ConflictResolution,
    Operation,
    QueueEntry,
    ServiceStatus,
    SyncResult,
    SyncStatus,
)
from tillsync.core.sync.orchestrator import SyncOrchestrator
from tillsync.core.sync.publisher import StatusListener, StatusPublisher
from tillsync.core.sync.pull import PullMerger
from tillsync.core.sync.queue import PersistentQueue
from tillsync.core.sync.resolver import ConflictResolver
from tillsync.core.sync.retry import RetryPolicy
from tillsync.core.sync.state import SyncStateStore
from tillsync.core.sync.transport import HttpRemoteAuthority, RemoteAuthority

logger = logging.getLogger(__name__)


class SyncService:
    """
    Application-facing entry point to the sync engine.

    Prefer ``SyncService.open()``; the constructor takes fully built
    collaborators so tests can inject their own.
    """

    def __init__(
        self,
        config: TillsyncConfig,
        db: Database,
        queue: PersistentQueue,
        entities: EntityStore,
        state: SyncStateStore,
        remote: RemoteAuthority,
        connectivity: ConnectivityMonitor,
        publisher: StatusPublisher,
        orchestrator: SyncOrchestrator,
        *,
        owns_remote: bool = False,
    ) -> None:
        self.config = config
        self.db = db
        self.queue = queue
        self.entities = entities
        self.state = state
        self.remote = remote
        self.connectivity = connectivity
        self.publisher = publisher
        self.orchestrator = orchestrator
        self._owns_remote = owns_remote
        self._closed = False

        self._unsubscribe_online = connectivity.on_transition(
            lambda online: publisher.update(is_online=online)
        )

    @classmethod
    def open(
        cls,
        config: TillsyncConfig | None = None,
        remote: RemoteAuthority | None = None,
    ) -> SyncService:
        """
        Build a service from configuration.

        Opens (or creates) the local database, recovers entries interrupted
        by a previous crash, and loads the device id and last sync time.

        Args:
            config: Configuration (defaults to ``load_config()``)
            remote: Remote authority; defaults to an HTTP client for
                ``config.remote``. The reachability probe only runs for the
                default client.
        """
        config = config or load_config()

        db = Database.open(config.storage.db_path)
        entities = EntityStore(db)
        queue = PersistentQueue(db, entities, config.entity_types)
        recovered = queue.recover()
        if recovered:
            logger.info("Recovered %d interrupted entries from %s", recovered, db.path)

        state = SyncStateStore(db)
        device_id = state.device_id()

        owns_remote = remote is None
        if remote is None:
            remote = HttpRemoteAuthority.from_config(config.remote)

        connectivity = ConnectivityMonitor(initially_online=config.connectivity.assume_online)
        publisher = StatusPublisher(
            ServiceStatus(is_online=connectivity.is_online, is_syncing=False, device_id=device_id)
        )

        probe = None
        if owns_remote and config.connectivity.probe_interval_seconds > 0:
            probe = ReachabilityProbe(
                connectivity,
                f"{config.remote.base_url}{config.connectivity.probe_path}",
                interval=config.connectivity.probe_interval_seconds,
            )

        resolver = ConflictResolver()
        puller = PullMerger(
            remote,
            queue,
            entities,
            state,
            resolver=resolver,
            entity_types=config.entity_types,
        )
        orchestrator = SyncOrchestrator(
            queue,
            remote,
            resolver=resolver,
            retry_policy=RetryPolicy.from_config(config.retry),
            connectivity=connectivity,
            publisher=publisher,
            state=state,
            puller=puller,
            probe=probe,
            batch_size=config.sync.batch_size,
            concurrency=config.sync.concurrency,
            call_timeout=config.sync.call_timeout_seconds,
            auto_sync_interval=config.sync.auto_sync_interval_seconds,
            pull_enabled=config.sync.pull_enabled,
        )

        return cls(
            config,
            db,
            queue,
            entities,
            state,
            remote,
            connectivity,
            publisher,
            orchestrator,
            owns_remote=owns_remote,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> ServiceStatus:
        return self.publisher.current

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Subscribe to status changes; returns an unsubscribe callable."""
        return self.publisher.subscribe(listener)

    def last_synced_at(self) -> datetime | None:
        return self.state.last_sync_at()

    @property
    def last_result(self) -> SyncResult | None:
        return self.orchestrator.last_result

    def set_online(self, online: bool) -> None:
        """Feed an external connectivity signal (OS hook, UI)."""
        self.connectivity.set_online(online)

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------

    def record_mutation(
        self,
        entity_type: str,
        entity_id: str,
        operation: Operation | str,
        fields: dict[str, Any] | None = None,
    ) -> QueueEntry:
        """
        Write a local change and enqueue it in one transaction.

        An update carries only the changed fields; they are merged over the
        stored record and the queued payload is the full merged record.

        Raises:
            ConflictPendingError: If the entity has an unresolved conflict
            ValueError: If the entity type is not configured
        """
        operation = Operation(operation)
        deleted = operation == Operation.DELETE
        with self.db.transaction():
            record = self.entities.save_local(
                entity_type,
                entity_id,
                fields or {},
                deleted=deleted,
                merge=operation == Operation.UPDATE,
            )
            entry = self.queue.enqueue(
                entity_type,
                entity_id,
                operation,
                None if deleted else record.fields,
                captured_updated_at=record.updated_at,
            )
        return entry

    # ------------------------------------------------------------------
    # Sync and queue management
    # ------------------------------------------------------------------

    async def sync(self, *, pull: bool | None = None) -> SyncResult:
        """Run (or join) a sync pass."""
        return await self.orchestrator.sync(pull=pull)

    def retry_failed_operations(self) -> int:
        """Reset every failed entry to pending; returns how many moved."""
        return self.queue.retry_failed()

    def count(self, statuses: Iterable[SyncStatus | str] | None = None) -> int:
        return self.queue.count(statuses)

    def counts(self) -> dict[str, int]:
        return self.queue.counts_by_status()

    def list_entries(self, statuses: Iterable[SyncStatus | str] | None = None) -> list[QueueEntry]:
        return self.queue.list_entries(statuses)

    def list_conflicts(self) -> list[QueueEntry]:
        return self.queue.list_conflicts()

    def resolve_conflict(
        self,
        entry_id: str,
        resolution: ConflictResolution | str,
        merged_payload: dict[str, Any] | None = None,
    ) -> QueueEntry | None:
        return self.queue.resolve_conflict(entry_id, resolution, merged_payload=merged_payload)

    async def discard(self, entry_id: str) -> QueueEntry:
        """
        Drop a failed entry and put the entity back to the remote copy.

        The remote copy is fetched before anything changes locally, so a
        failed fetch leaves the entry and the entity as they were.

        Raises:
            EntryNotFoundError: Unknown entry
            InvalidTransitionError: Entry is not in error
            TransientNetworkError: The remote copy could not be fetched
        """
        entry = self.queue.check_discardable(entry_id)
        try:
            remote = await asyncio.wait_for(
                self.remote.fetch(entry.entity_type, entry.entity_id),
                timeout=self.orchestrator.call_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(
                f"Timed out fetching {entry.entity_type}/{entry.entity_id}"
            ) from e
        return self.queue.discard(entry_id, remote)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.orchestrator.start()

    async def stop(self) -> None:
        await self.orchestrator.stop()

    async def close(self) -> None:
        """Stop background work and release the remote client and database."""
        if self._closed:
            return
        self._closed = True
        await self.orchestrator.stop()
        if self.orchestrator.probe is not None:
            await self.orchestrator.probe.stop()
        self._unsubscribe_online()
        if self._owns_remote and isinstance(self.remote, HttpRemoteAuthority):
            await self.remote.aclose()
        self.db.close()

    async def __aenter__(self) -> SyncService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
