"""
Process-wide sync state persisted in the ``sync_state`` table.

Keeps the timestamp of the last successful pass (read back on startup) and
this installation's device id, which the backend uses to attribute pulls.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from tillsync.core.store.connection import Database
from tillsync.utils.timestamps import parse_timestamp, to_iso

logger = logging.getLogger(__name__)

LAST_SYNC_AT = "last_sync_at"
LAST_PULL_AT = "last_pull_at"
DEVICE_ID = "device_id"


class SyncStateStore:
    """Tiny key/value store over ``sync_state``."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def get(self, key: str) -> str | None:
        row = self.db.query_one("SELECT value FROM sync_state WHERE key = ?", (key,))
        return row["value"] if row else None

    def set(self, key: str, value: str | None) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO sync_state (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, value),
            )

    def last_sync_at(self) -> datetime | None:
        """When the last pass finished without failures, or None."""
        return parse_timestamp(self.get(LAST_SYNC_AT))

    def set_last_sync_at(self, value: datetime) -> None:
        self.set(LAST_SYNC_AT, to_iso(value))

    def last_pull_at(self) -> datetime | None:
        """Server cut-off of the last merged pull, or None."""
        return parse_timestamp(self.get(LAST_PULL_AT))

    def set_last_pull_at(self, value: datetime) -> None:
        self.set(LAST_PULL_AT, to_iso(value))

    def device_id(self) -> str:
        """
        Return this installation's device id, generating it on first use.
        """
        existing = self.get(DEVICE_ID)
        if existing:
            return existing
        device_id = f"device-{uuid.uuid4().hex[:12]}"
        self.set(DEVICE_ID, device_id)
        logger.info("Generated device id %s", device_id)
        return device_id
