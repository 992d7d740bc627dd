"""
Entity store for synchronizable records.

Holds the business fields of every entity the application edits locally,
together with the sync metadata the engine maintains (sync_status,
updated_at, synced_at and a tombstone flag for local deletes).

All writes go through ``Database.transaction()``; when called from inside an
outer transaction (the queue does this) they join it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from tillsync.core.store.connection import Database, dump_json, load_json
from tillsync.core.sync.models import EntityRecord, SyncStatus, business_fields
from tillsync.utils.timestamps import parse_timestamp, to_iso, utcnow

logger = logging.getLogger(__name__)


def _row_to_record(row: dict[str, Any]) -> EntityRecord:
    return EntityRecord(
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        fields=load_json(row["fields"]) or {},
        sync_status=SyncStatus(row["sync_status"]),
        updated_at=parse_timestamp(row["updated_at"]),
        synced_at=parse_timestamp(row["synced_at"]),
        deleted=bool(row["deleted"]),
    )


class EntityStore:
    """
    Local persistence for synchronizable records.

    Example:
        >>> store = EntityStore(Database.open(":memory:"))
        >>> record = store.save_local("products", "p-1", {"name": "Mate"})
        >>> record.sync_status
        <SyncStatus.PENDING: 'pending'>
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def get(self, entity_type: str, entity_id: str) -> EntityRecord | None:
        """Return the record for an entity, or None if it was never stored."""
        row = self.db.query_one(
            "SELECT * FROM entities WHERE entity_type = ? AND entity_id = ?",
            (entity_type, entity_id),
        )
        return _row_to_record(row) if row else None

    def list(
        self,
        entity_type: str | None = None,
        statuses: Iterable[SyncStatus] | None = None,
    ) -> list[EntityRecord]:
        """
        List records, optionally filtered by type and sync status.

        Args:
            entity_type: Restrict to one entity type
            statuses: Restrict to these sync statuses

        Returns:
            Records ordered by type then id
        """
        clauses: list[str] = []
        params: list[Any] = []
        if entity_type is not None:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        if statuses is not None:
            values = [SyncStatus(s).value for s in statuses]
            if not values:
                return []
            clauses.append(f"sync_status IN ({', '.join('?' for _ in values)})")
            params.extend(values)

        sql = "SELECT * FROM entities"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY entity_type, entity_id"
        return [_row_to_record(row) for row in self.db.query(sql, tuple(params))]

    def save_local(
        self,
        entity_type: str,
        entity_id: str,
        fields: dict[str, Any],
        *,
        deleted: bool = False,
        merge: bool = False,
        updated_at: datetime | None = None,
    ) -> EntityRecord:
        """
        Record a local mutation.

        Writes the business fields and a fresh ``updated_at``, and marks the
        entity ``pending``. With ``merge`` the fields are laid over the stored
        ones, so a partial update keeps the rest of the record. A delete keeps
        the last known fields and sets the tombstone.

        Args:
            entity_type: Entity type
            entity_id: Entity identifier
            fields: Business fields (sync metadata keys are dropped)
            deleted: True for a local delete
            merge: Overlay fields on the existing record instead of replacing it
            updated_at: Mutation timestamp (defaults to now)

        Returns:
            The stored record
        """
        stamp = to_iso(updated_at or utcnow())
        with self.db.transaction() as conn:
            existing = self.get(entity_type, entity_id)
            if deleted and existing is not None and not fields:
                stored_fields = existing.fields
            elif merge and existing is not None:
                stored_fields = {**existing.fields, **business_fields(fields)}
            else:
                stored_fields = business_fields(fields)
            conn.execute(
                """
                INSERT INTO entities (entity_type, entity_id, fields, sync_status, updated_at, deleted)
                VALUES (?, ?, ?, 'pending', ?, ?)
                ON CONFLICT(entity_type, entity_id) DO UPDATE SET
                    fields = excluded.fields,
                    sync_status = 'pending',
                    updated_at = excluded.updated_at,
                    deleted = excluded.deleted
                """,
                (entity_type, entity_id, dump_json(stored_fields), stamp, int(deleted)),
            )
        logger.debug("Saved local %s/%s (deleted=%s)", entity_type, entity_id, deleted)
        record = self.get(entity_type, entity_id)
        assert record is not None
        return record

    def apply_remote(
        self,
        entity_type: str,
        entity_id: str,
        fields: dict[str, Any],
        updated_at: datetime,
        *,
        deleted: bool = False,
    ) -> EntityRecord:
        """
        Overwrite an entity with the remote authority's copy.

        The business fields become exactly ``fields``; the entity is marked
        ``synced`` with ``synced_at`` set to now.
        """
        now = to_iso(utcnow())
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO entities (entity_type, entity_id, fields, sync_status, updated_at, synced_at, deleted)
                VALUES (?, ?, ?, 'synced', ?, ?, ?)
                ON CONFLICT(entity_type, entity_id) DO UPDATE SET
                    fields = excluded.fields,
                    sync_status = 'synced',
                    updated_at = excluded.updated_at,
                    synced_at = excluded.synced_at,
                    deleted = excluded.deleted
                """,
                (
                    entity_type,
                    entity_id,
                    dump_json(business_fields(fields)),
                    to_iso(updated_at),
                    now,
                    int(deleted),
                ),
            )
        record = self.get(entity_type, entity_id)
        assert record is not None
        return record

    def replace_fields(self, entity_type: str, entity_id: str, fields: dict[str, Any]) -> None:
        """Overwrite business fields without touching sync metadata."""
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE entities SET fields = ? WHERE entity_type = ? AND entity_id = ?",
                (dump_json(business_fields(fields)), entity_type, entity_id),
            )

    def set_sync_status(
        self,
        entity_type: str,
        entity_id: str,
        status: SyncStatus,
        *,
        synced_at: datetime | None = None,
    ) -> None:
        """
        Update an entity's sync status.

        Missing entities are ignored: the queue may carry intents for records
        the application keeps elsewhere.
        """
        with self.db.transaction() as conn:
            if synced_at is not None:
                conn.execute(
                    """
                    UPDATE entities SET sync_status = ?, synced_at = ?
                    WHERE entity_type = ? AND entity_id = ?
                    """,
                    (SyncStatus(status).value, to_iso(synced_at), entity_type, entity_id),
                )
            else:
                conn.execute(
                    "UPDATE entities SET sync_status = ? WHERE entity_type = ? AND entity_id = ?",
                    (SyncStatus(status).value, entity_type, entity_id),
                )

    def purge(self, entity_type: str, entity_id: str) -> bool:
        """Remove an entity row entirely (a discarded create the remote never saw)."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM entities WHERE entity_type = ? AND entity_id = ?",
                (entity_type, entity_id),
            )
            return cursor.rowcount > 0
