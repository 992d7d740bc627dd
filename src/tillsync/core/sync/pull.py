"""
Pull phase: merge remote changes into the local store.

After local changes are pushed, the orchestrator asks the remote authority
for everything that changed since the last merged pull and applies it:

- entities with no live queue entry take the remote copy (if it is not
  older than what we hold)
- entities with a pending or failed entry keep their local payload; if the
  remote diverged from the capture the entry is flagged as a conflict, the
  same rule the push path applies
- conflicted entities are left alone until the user resolves them
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tillsync.core.store.entities import EntityStore
from tillsync.core.sync.models import PullChanges, RemoteRecord, SyncStatus
from tillsync.core.sync.queue import PersistentQueue
from tillsync.core.sync.resolver import ConflictResolver, Outcome
from tillsync.core.sync.state import SyncStateStore
from tillsync.core.sync.transport import RemoteAuthority
from tillsync.utils.timestamps import ensure_aware

logger = logging.getLogger(__name__)

# Flags the backend uses for soft-deleted records
_DELETED_FLAGS = ("deleted", "isDeleted", "deletedAt")


@dataclass
class PullOutcome:
    """Counters for one pull."""

    pulled: int = 0
    conflicted: int = 0
    skipped: int = 0


def _is_deleted(record: dict) -> bool:
    return any(bool(record.get(flag)) for flag in _DELETED_FLAGS)


class PullMerger:
    """
    Fetches and merges remote changes.

    Args:
        remote: Remote authority
        queue: Local queue (consulted for live entries)
        entities: Local entity store
        state: Sync state (pull cursor and device id)
        resolver: Conflict resolver shared with the push path
        entity_types: Types to merge; others in the response are ignored
    """

    def __init__(
        self,
        remote: RemoteAuthority,
        queue: PersistentQueue,
        entities: EntityStore,
        state: SyncStateStore,
        resolver: ConflictResolver | None = None,
        entity_types: list[str] | None = None,
    ) -> None:
        self.remote = remote
        self.queue = queue
        self.entities = entities
        self.state = state
        self.resolver = resolver or ConflictResolver()
        self.entity_types = set(entity_types) if entity_types else None

    async def pull(self) -> PullOutcome:
        """
        Fetch changes since the last pull and merge them.

        Raises:
            SyncError: If the remote call fails (classified by the caller)
        """
        since = self.state.last_pull_at() or self.state.last_sync_at()
        changes = await self.remote.pull_changes(since, self.state.device_id())
        outcome = self.merge(changes)
        self.state.set_last_pull_at(changes.synced_at)
        logger.info(
            "Pulled %d changes (%d merged, %d conflicted, %d skipped)",
            changes.total,
            outcome.pulled,
            outcome.conflicted,
            outcome.skipped,
        )
        return outcome

    def merge(self, changes: PullChanges) -> PullOutcome:
        """Apply a change set to the local store (synchronous, no awaits)."""
        outcome = PullOutcome()
        for entity_type, records in changes.changes.items():
            if self.entity_types is not None and entity_type not in self.entity_types:
                logger.debug("Ignoring pulled changes for unknown type %s", entity_type)
                continue
            for raw in records:
                try:
                    remote = RemoteRecord.from_payload(raw)
                except ValueError as e:
                    logger.warning("Skipping malformed %s record from pull: %s", entity_type, e)
                    outcome.skipped += 1
                    continue
                self._merge_one(entity_type, remote, _is_deleted(raw), outcome)
        return outcome

    def _merge_one(
        self,
        entity_type: str,
        remote: RemoteRecord,
        deleted: bool,
        outcome: PullOutcome,
    ) -> None:
        entry = self.queue.find(entity_type, remote.entity_id)

        if entry is None:
            local = self.entities.get(entity_type, remote.entity_id)
            if local is not None and ensure_aware(local.updated_at) > ensure_aware(remote.updated_at):
                outcome.skipped += 1
                return
            self.entities.apply_remote(
                entity_type, remote.entity_id, remote.fields, remote.updated_at, deleted=deleted
            )
            outcome.pulled += 1
            return

        if entry.status == SyncStatus.CONFLICT:
            outcome.skipped += 1
            return

        decision = self.resolver.decide(entry, remote)
        if decision.outcome == Outcome.CONFLICT:
            self.queue.mark_conflict(entry.id, remote)
            outcome.conflicted += 1
        else:
            outcome.skipped += 1
