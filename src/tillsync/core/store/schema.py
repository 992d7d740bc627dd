"""
SQLite schema for the tillsync local store.

One database file holds everything the sync engine must keep across process
restarts:

Schema Design:
- entities: Synchronizable records (business fields as JSON) and their sync
  metadata (sync_status, updated_at, synced_at, tombstone flag)
- sync_queue: One live row per entity with an outstanding intent to
  reconcile; coalesced in place, removed once synced
- sync_state: Process-wide key/value pairs (last successful sync, device id)
- schema_info: Version tracking for migrations

Sync statuses:
- pending: Waiting to be pushed
- synced: Acknowledged by the remote authority (no queue row)
- error: Last attempt failed (transient or permanent)
- conflict: Remote diverged; waits for explicit resolution
"""

import sqlite3

# Schema version for migrations
SCHEMA_VERSION = 1

SYNC_STATUSES = ["pending", "synced", "error", "conflict"]

OPERATIONS = ["create", "update", "delete"]


SCHEMA_DDL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_info (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    description TEXT
);

-- Synchronizable records
CREATE TABLE IF NOT EXISTS entities (
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    fields JSON NOT NULL DEFAULT '{}',
    sync_status TEXT NOT NULL DEFAULT 'pending'
        CHECK(sync_status IN ('pending', 'synced', 'error', 'conflict')),
    updated_at TEXT NOT NULL,
    synced_at TEXT,
    deleted INTEGER NOT NULL DEFAULT 0,

    PRIMARY KEY (entity_type, entity_id)
);

-- Outstanding reconciliation intents, one per entity
CREATE TABLE IF NOT EXISTS sync_queue (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    operation TEXT NOT NULL CHECK(operation IN ('create', 'update', 'delete')),
    payload JSON,
    captured_updated_at TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK(status IN ('pending', 'error', 'conflict')),
    created_at TEXT NOT NULL,
    last_attempt_at TEXT,
    last_error TEXT,
    failure_kind TEXT CHECK(failure_kind IS NULL OR failure_kind IN ('transient', 'permanent')),
    next_attempt_at TEXT,
    remote_snapshot JSON,
    revision INTEGER NOT NULL DEFAULT 1,
    in_flight INTEGER NOT NULL DEFAULT 0,

    -- Coalescing: at most one live entry per entity
    UNIQUE(entity_type, entity_id)
);

-- Process-wide sync state
CREATE TABLE IF NOT EXISTS sync_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_entities_sync_status ON entities(sync_status);
CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status);
"""


def create_schema(conn: sqlite3.Connection) -> None:
    """
    Create the database schema.

    Executes all DDL statements to create tables and indexes.
    This is idempotent - safe to call multiple times.

    Args:
        conn: SQLite database connection

    Example:
        >>> import sqlite3
        >>> conn = sqlite3.connect(":memory:")
        >>> create_schema(conn)
        >>> cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        >>> tables = [row[0] for row in cursor.fetchall()]
        >>> assert "sync_queue" in tables
    """
    conn.executescript(SCHEMA_DDL)

    conn.execute(
        """
        INSERT OR REPLACE INTO schema_info (version, description)
        VALUES (?, ?)
        """,
        (SCHEMA_VERSION, "Entities, sync queue and sync state"),
    )

    conn.commit()


def get_schema_version(conn: sqlite3.Connection) -> int | None:
    """
    Get the current schema version from the database.

    Args:
        conn: SQLite database connection

    Returns:
        Current schema version, or None if schema_info table doesn't exist
    """
    try:
        cursor = conn.execute("SELECT MAX(version) AS version FROM schema_info")
        row = cursor.fetchone()
    except sqlite3.OperationalError:
        # schema_info table doesn't exist
        return None

    if row is None:
        return None
    version = row["version"] if isinstance(row, dict) else row[0]
    return int(version) if version is not None else None


def needs_migration(conn: sqlite3.Connection) -> bool:
    """
    Check if database needs migration to current schema version.

    Args:
        conn: SQLite database connection

    Returns:
        True if migration is needed, False otherwise
    """
    current_version = get_schema_version(conn)
    return current_version is None or current_version < SCHEMA_VERSION
