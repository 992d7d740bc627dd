"""
Persistent sync queue.

A durable, ordered store of outstanding reconciliation intents. There is at
most one live entry per entity: a new local mutation on an entity that
already has a pending or failed entry is coalesced into it in place
(payload, capture and operation replaced; position kept).

Every transition also updates the entity's ``sync_status`` in the same
transaction, so the entity and its queue entry never disagree:

    synced            <=> no live entry
    pending|error|conflict <=> exactly one live entry with that status

Usage:
    db = Database.open(".tillsync/sync.db")
    queue = PersistentQueue(db)
    queue.recover()

    entry = queue.enqueue("products", "p-1", Operation.UPDATE, {"name": "Mate"})
    for entry in queue.dequeue_batch(50):
        ...
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from tillsync.core.store.connection import Database, dump_json, load_json
from tillsync.core.store.entities import EntityStore
from tillsync.core.sync.exceptions import (
    ConflictPendingError,
    EntryNotFoundError,
    InvalidTransitionError,
)
from tillsync.core.sync.models import (
    ConflictResolution,
    FailureKind,
    Operation,
    QueueEntry,
    RemoteRecord,
    SyncStatus,
)
from tillsync.utils.timestamps import parse_timestamp, to_iso, utcnow

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "interrupted before acknowledgement"

# Queue rows only ever carry these statuses; "synced" means the row is gone
LIVE_STATUSES = (SyncStatus.PENDING, SyncStatus.ERROR, SyncStatus.CONFLICT)


def coalesce_operation(stored: Operation, incoming: Operation) -> Operation:
    """
    Effective operation after a new mutation lands on a live entry.

    - create then update stays a create (the remote never saw the record)
    - anything then delete becomes a delete
    - delete then create/update becomes an update (the record is back)
    - otherwise the incoming operation wins

    Example:
        >>> coalesce_operation(Operation.CREATE, Operation.UPDATE)
        <Operation.CREATE: 'create'>
    """
    if incoming == Operation.DELETE:
        return Operation.DELETE
    if stored == Operation.CREATE and incoming == Operation.UPDATE:
        return Operation.CREATE
    if stored == Operation.DELETE:
        return Operation.UPDATE
    return incoming


def _row_to_entry(row: dict[str, Any]) -> QueueEntry:
    return QueueEntry(
        id=row["id"],
        seq=row["seq"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        operation=Operation(row["operation"]),
        payload=load_json(row["payload"]),
        captured_updated_at=parse_timestamp(row["captured_updated_at"]),
        attempts=row["attempts"],
        status=SyncStatus(row["status"]),
        created_at=parse_timestamp(row["created_at"]),
        last_attempt_at=parse_timestamp(row["last_attempt_at"]),
        last_error=row["last_error"],
        failure_kind=FailureKind(row["failure_kind"]) if row["failure_kind"] else None,
        next_attempt_at=parse_timestamp(row["next_attempt_at"]),
        remote_snapshot=load_json(row["remote_snapshot"]),
        revision=row["revision"],
        in_flight=bool(row["in_flight"]),
    )


def _status_values(statuses: Iterable[SyncStatus | str]) -> list[str]:
    return [SyncStatus(s).value for s in statuses]


class PersistentQueue:
    """
    Durable, coalescing queue of local mutations backed by sqlite.

    Args:
        db: Shared database handle
        entities: Entity store kept in step with queue transitions
        entity_types: If given, only these entity types may be enqueued
    """

    def __init__(
        self,
        db: Database,
        entities: EntityStore | None = None,
        entity_types: Iterable[str] | None = None,
    ) -> None:
        self.db = db
        self.entities = entities or EntityStore(db)
        self.entity_types = frozenset(entity_types) if entity_types is not None else None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, entry_id: str) -> QueueEntry | None:
        """Return a live entry by id, or None."""
        row = self.db.query_one("SELECT * FROM sync_queue WHERE id = ?", (entry_id,))
        return _row_to_entry(row) if row else None

    def find(self, entity_type: str, entity_id: str) -> QueueEntry | None:
        """Return the live entry for an entity, or None."""
        row = self.db.query_one(
            "SELECT * FROM sync_queue WHERE entity_type = ? AND entity_id = ?",
            (entity_type, entity_id),
        )
        return _row_to_entry(row) if row else None

    def list_entries(self, statuses: Iterable[SyncStatus | str] | None = None) -> list[QueueEntry]:
        """List live entries in FIFO order, optionally filtered by status."""
        if statuses is None:
            rows = self.db.query("SELECT * FROM sync_queue ORDER BY seq")
        else:
            values = _status_values(statuses)
            if not values:
                return []
            placeholders = ", ".join("?" for _ in values)
            rows = self.db.query(
                f"SELECT * FROM sync_queue WHERE status IN ({placeholders}) "
                "ORDER BY seq",
                tuple(values),
            )
        return [_row_to_entry(row) for row in rows]

    def list_conflicts(self) -> list[QueueEntry]:
        """All entries awaiting an explicit conflict resolution."""
        return self.list_entries([SyncStatus.CONFLICT])

    def count(self, statuses: Iterable[SyncStatus | str] | None = None) -> int:
        """
        Count live entries with the given statuses (all live entries if None).

        ``synced`` never matches: synced entities have no queue entry.
        """
        if statuses is None:
            row = self.db.query_one("SELECT COUNT(*) AS n FROM sync_queue")
        else:
            values = _status_values(statuses)
            if not values:
                return 0
            placeholders = ", ".join("?" for _ in values)
            row = self.db.query_one(
                f"SELECT COUNT(*) AS n FROM sync_queue WHERE status IN ({placeholders})",
                tuple(values),
            )
        return int(row["n"]) if row else 0

    def counts_by_status(self) -> dict[str, int]:
        """Live entry counts keyed by status value (zero-filled)."""
        counts = {status.value: 0 for status in LIVE_STATUSES}
        for row in self.db.query("SELECT status, COUNT(*) AS n FROM sync_queue GROUP BY status"):
            counts[row["status"]] = int(row["n"])
        return counts

    def max_seq(self) -> int:
        """Highest live sequence number, or 0 when the queue is empty."""
        row = self.db.query_one("SELECT MAX(seq) AS seq FROM sync_queue")
        return int(row["seq"]) if row and row["seq"] is not None else 0

    def dequeue_batch(
        self,
        max_count: int,
        *,
        after_seq: int | None = None,
        up_to_seq: int | None = None,
    ) -> list[QueueEntry]:
        """
        Return up to ``max_count`` non-conflict entries in FIFO order.

        Entries are not removed; they leave the queue only through
        ``mark_synced``, ``discard`` or a ``use_remote`` resolution.

        Args:
            max_count: Batch size
            after_seq: Only entries with a greater sequence number (cursor)
            up_to_seq: Only entries with a sequence number up to this one
                (the high-water mark fixed at the start of a pass)
        """
        if max_count <= 0:
            return []
        clauses = ["status != 'conflict'"]
        params: list[Any] = []
        if after_seq is not None:
            clauses.append("seq > ?")
            params.append(after_seq)
        if up_to_seq is not None:
            clauses.append("seq <= ?")
            params.append(up_to_seq)
        params.append(max_count)
        rows = self.db.query(
            f"SELECT * FROM sync_queue WHERE {' AND '.join(clauses)} "
            "ORDER BY seq LIMIT ?",
            tuple(params),
        )
        return [_row_to_entry(row) for row in rows]

    # ------------------------------------------------------------------
    # Local mutation path
    # ------------------------------------------------------------------

    def enqueue(
        self,
        entity_type: str,
        entity_id: str,
        operation: Operation | str,
        payload: dict[str, Any] | None,
        *,
        captured_updated_at: datetime | None = None,
    ) -> QueueEntry:
        """
        Record an intent to reconcile an entity, coalescing with a live entry.

        Args:
            entity_type: Entity type
            entity_id: Entity identifier
            operation: create, update or delete
            payload: Snapshot of the business fields being pushed
            captured_updated_at: Local updatedAt at capture time (defaults to now)

        Returns:
            The inserted or coalesced entry

        Raises:
            ConflictPendingError: If the entity's entry is in conflict
            ValueError: If the entity type is not synchronizable
        """
        operation = Operation(operation)
        if self.entity_types is not None and entity_type not in self.entity_types:
            raise ValueError(f"Unknown entity type: {entity_type}")

        now = utcnow()
        captured = to_iso(captured_updated_at or now)

        with self.db.transaction() as conn:
            existing = self.find(entity_type, entity_id)

            if existing is None:
                entry_id = uuid.uuid4().hex
                conn.execute(
                    """
                    INSERT INTO sync_queue (
                        id, entity_type, entity_id, operation, payload,
                        captured_updated_at, attempts, status, created_at, revision
                    ) VALUES (?, ?, ?, ?, ?, ?, 0, 'pending', ?, 1)
                    """,
                    (
                        entry_id,
                        entity_type,
                        entity_id,
                        operation.value,
                        dump_json(payload),
                        captured,
                        to_iso(now),
                    ),
                )
                logger.debug("Enqueued %s %s/%s as %s", operation.value, entity_type, entity_id, entry_id)
            elif existing.status == SyncStatus.CONFLICT:
                raise ConflictPendingError(entity_type, entity_id, existing.id)
            else:
                entry_id = existing.id
                effective = coalesce_operation(existing.operation, operation)
                # A fresh delete starts its own retry budget
                keep_attempts = effective == existing.operation and operation != Operation.DELETE
                attempts = existing.attempts if keep_attempts else 0
                conn.execute(
                    """
                    UPDATE sync_queue SET
                        operation = ?, payload = ?, captured_updated_at = ?,
                        attempts = ?, status = 'pending', last_error = NULL,
                        failure_kind = NULL, next_attempt_at = NULL,
                        remote_snapshot = NULL, revision = revision + 1
                    WHERE id = ?
                    """,
                    (effective.value, dump_json(payload), captured, attempts, entry_id),
                )
                logger.debug(
                    "Coalesced %s into %s/%s (%s -> %s)",
                    operation.value,
                    entity_type,
                    entity_id,
                    existing.operation.value,
                    effective.value,
                )

            self.entities.set_sync_status(entity_type, entity_id, SyncStatus.PENDING)

        return self._require(entry_id)

    # ------------------------------------------------------------------
    # Orchestrator transitions
    # ------------------------------------------------------------------

    def mark_in_flight(self, entry_id: str) -> QueueEntry:
        """Flag an entry whose remote call is about to start."""
        with self.db.transaction() as conn:
            self._execute_for(conn, entry_id, "UPDATE sync_queue SET in_flight = 1 WHERE id = ?")
        return self._require(entry_id)

    def mark_synced(
        self,
        entry_id: str,
        *,
        revision: int | None = None,
        acknowledged_at: datetime | None = None,
    ) -> bool:
        """
        Remove an acknowledged entry and mark its entity synced.

        Args:
            entry_id: Entry id
            revision: Revision the remote call was made with; if the entry
                was coalesced since, it stays pending and False is returned
            acknowledged_at: Remote updatedAt of the acknowledged write. A
                superseded entry moves its capture up to it, so our own
                write is not mistaken for a remote change next pass.

        Returns:
            True if the entry was removed
        """
        with self.db.transaction() as conn:
            entry = self._require(entry_id)
            if revision is not None and entry.revision != revision:
                captured = entry.captured_updated_at
                if acknowledged_at is not None and (captured is None or acknowledged_at > captured):
                    captured = acknowledged_at
                conn.execute(
                    "UPDATE sync_queue SET in_flight = 0, captured_updated_at = ? WHERE id = ?",
                    (to_iso(captured), entry_id),
                )
                logger.debug("Entry %s superseded while in flight; kept pending", entry_id)
                return False

            conn.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,))
            self.entities.set_sync_status(
                entry.entity_type, entry.entity_id, SyncStatus.SYNCED, synced_at=utcnow()
            )
        return True

    def mark_failed(
        self,
        entry_id: str,
        error: str,
        *,
        kind: FailureKind,
        next_attempt_at: datetime | None = None,
        revision: int | None = None,
    ) -> QueueEntry:
        """
        Record a failed attempt.

        A superseded entry (revision mismatch) only loses its in-flight flag:
        the failure belongs to a payload that no longer exists.
        """
        with self.db.transaction() as conn:
            entry = self._require(entry_id)
            if revision is not None and entry.revision != revision:
                conn.execute("UPDATE sync_queue SET in_flight = 0 WHERE id = ?", (entry_id,))
            else:
                conn.execute(
                    """
                    UPDATE sync_queue SET
                        attempts = attempts + 1, status = 'error', in_flight = 0,
                        last_attempt_at = ?, last_error = ?, failure_kind = ?,
                        next_attempt_at = ?
                    WHERE id = ?
                    """,
                    (
                        to_iso(utcnow()),
                        error,
                        FailureKind(kind).value,
                        to_iso(next_attempt_at),
                        entry_id,
                    ),
                )
                self.entities.set_sync_status(entry.entity_type, entry.entity_id, SyncStatus.ERROR)
        return self._require(entry_id)

    def mark_conflict(
        self,
        entry_id: str,
        remote_snapshot: RemoteRecord | dict[str, Any],
        *,
        revision: int | None = None,
    ) -> QueueEntry:
        """Flag an entry as conflicted and keep the remote copy beside it."""
        if isinstance(remote_snapshot, RemoteRecord):
            remote_snapshot = remote_snapshot.to_snapshot()
        with self.db.transaction() as conn:
            entry = self._require(entry_id)
            if revision is not None and entry.revision != revision:
                conn.execute("UPDATE sync_queue SET in_flight = 0 WHERE id = ?", (entry_id,))
            else:
                conn.execute(
                    """
                    UPDATE sync_queue SET
                        status = 'conflict', in_flight = 0, last_attempt_at = ?,
                        remote_snapshot = ?, last_error = NULL, failure_kind = NULL,
                        next_attempt_at = NULL
                    WHERE id = ?
                    """,
                    (to_iso(utcnow()), dump_json(remote_snapshot), entry_id),
                )
                self.entities.set_sync_status(
                    entry.entity_type, entry.entity_id, SyncStatus.CONFLICT
                )
        return self._require(entry_id)

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def resolve_conflict(
        self,
        entry_id: str,
        resolution: ConflictResolution | str,
        *,
        merged_payload: dict[str, Any] | None = None,
    ) -> QueueEntry | None:
        """
        Resolve a conflicted entry.

        - use_local: back to pending with the same payload; the capture moves
          to the remote copy's timestamp so the push is not flagged again
        - use_remote: the entity takes the remote copy verbatim and is synced;
          the entry is removed
        - merge: entity and payload become ``merged_payload`` (an update)

        Returns:
            The pending entry, or None for use_remote

        Raises:
            EntryNotFoundError: Unknown entry id
            InvalidTransitionError: Entry is not in conflict
            ValueError: merge without a merged payload
        """
        resolution = ConflictResolution(resolution)
        with self.db.transaction() as conn:
            entry = self._require(entry_id)
            if entry.status != SyncStatus.CONFLICT:
                raise InvalidTransitionError(
                    f"Entry {entry_id} is {entry.status.value}, not conflict",
                    entry_id=entry_id,
                    status=entry.status.value,
                )
            if entry.remote_snapshot is None:
                raise InvalidTransitionError(
                    f"Entry {entry_id} has no remote snapshot", entry_id=entry_id
                )
            remote = RemoteRecord.from_snapshot(entry.remote_snapshot)

            if resolution == ConflictResolution.USE_REMOTE:
                conn.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,))
                self.entities.apply_remote(
                    entry.entity_type, entry.entity_id, remote.fields, remote.updated_at
                )
                logger.info("Resolved %s/%s with remote copy", entry.entity_type, entry.entity_id)
                return None

            operation = entry.operation
            payload = entry.payload
            if resolution == ConflictResolution.MERGE:
                if merged_payload is None:
                    raise ValueError("merge resolution requires a merged payload")
                operation = Operation.UPDATE
                payload = merged_payload
                self.entities.replace_fields(entry.entity_type, entry.entity_id, merged_payload)

            conn.execute(
                """
                UPDATE sync_queue SET
                    operation = ?, payload = ?, captured_updated_at = ?,
                    attempts = 0, status = 'pending', remote_snapshot = NULL,
                    last_error = NULL, failure_kind = NULL, next_attempt_at = NULL,
                    revision = revision + 1
                WHERE id = ?
                """,
                (operation.value, dump_json(payload), to_iso(remote.updated_at), entry_id),
            )
            self.entities.set_sync_status(entry.entity_type, entry.entity_id, SyncStatus.PENDING)
            logger.info(
                "Resolved %s/%s with %s", entry.entity_type, entry.entity_id, resolution.value
            )
        return self._require(entry_id)

    def retry_failed(self) -> int:
        """
        Move every ``error`` entry back to ``pending`` with attempts reset.

        Idempotent: a second call finds nothing to move.

        Returns:
            Number of entries moved
        """
        with self.db.transaction() as conn:
            failed = self.list_entries([SyncStatus.ERROR])
            conn.execute(
                """
                UPDATE sync_queue SET
                    status = 'pending', attempts = 0, next_attempt_at = NULL,
                    failure_kind = NULL, last_error = NULL
                WHERE status = 'error'
                """
            )
            for entry in failed:
                self.entities.set_sync_status(entry.entity_type, entry.entity_id, SyncStatus.PENDING)
        if failed:
            logger.info("Reset %d failed entries to pending", len(failed))
        return len(failed)

    def check_discardable(self, entry_id: str) -> QueueEntry:
        """
        Return the entry if it may be discarded.

        Raises:
            EntryNotFoundError: Unknown entry
            InvalidTransitionError: Entry is not in error
        """
        entry = self._require(entry_id)
        if entry.status != SyncStatus.ERROR:
            raise InvalidTransitionError(
                f"Only failed entries can be discarded; {entry_id} is {entry.status.value}",
                entry_id=entry_id,
                status=entry.status.value,
            )
        return entry

    def discard(self, entry_id: str, remote: RemoteRecord | None) -> QueueEntry:
        """
        Drop a failed entry, abandoning the local intent.

        The entity is put back to the remote authority's copy. When the
        remote never had it (a rejected create), the local row is removed.

        Args:
            entry_id: Entry to drop
            remote: Current remote copy, fetched by the caller

        Raises:
            EntryNotFoundError: Unknown entry
            InvalidTransitionError: Entry is not in error
        """
        with self.db.transaction() as conn:
            entry = self.check_discardable(entry_id)
            conn.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,))
            if remote is None:
                self.entities.purge(entry.entity_type, entry.entity_id)
            else:
                self.entities.apply_remote(
                    entry.entity_type, entry.entity_id, remote.fields, remote.updated_at
                )
        logger.info("Discarded entry %s for %s/%s", entry_id, entry.entity_type, entry.entity_id)
        return entry

    # ------------------------------------------------------------------
    # Crash recovery
    # ------------------------------------------------------------------

    def recover(self) -> int:
        """
        Turn entries left in flight by a crash into transient failures.

        The remote may or may not have applied the call; the next pass
        re-fetches and lets the resolver decide.

        Returns:
            Number of recovered entries
        """
        with self.db.transaction() as conn:
            stranded = [
                _row_to_entry(row)
                for row in self.db.query("SELECT * FROM sync_queue WHERE in_flight = 1")
            ]
            for entry in stranded:
                conn.execute(
                    """
                    UPDATE sync_queue SET
                        status = 'error', in_flight = 0, attempts = attempts + 1,
                        failure_kind = 'transient', last_error = ?,
                        last_attempt_at = ?, next_attempt_at = NULL
                    WHERE id = ?
                    """,
                    (INTERRUPTED_MESSAGE, to_iso(utcnow()), entry.id),
                )
                self.entities.set_sync_status(entry.entity_type, entry.entity_id, SyncStatus.ERROR)
        if stranded:
            logger.warning("Recovered %d entries interrupted before acknowledgement", len(stranded))
        return len(stranded)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, entry_id: str) -> QueueEntry:
        entry = self.get(entry_id)
        if entry is None:
            raise EntryNotFoundError(entry_id)
        return entry

    def _execute_for(self, conn: sqlite3.Connection, entry_id: str, sql: str) -> None:
        cursor = conn.execute(sql, (entry_id,))
        if cursor.rowcount == 0:
            raise EntryNotFoundError(entry_id)
