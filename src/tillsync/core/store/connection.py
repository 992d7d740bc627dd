"""
Database connection management for the tillsync local store.

Wraps a single SQLite connection shared by the queue, the entity store and
the sync state store. Every read-modify-write on an entity's sync metadata
runs inside ``Database.transaction()`` so the local-mutation path and the
orchestrator never interleave writes to the same entity.

The connection follows SQLite best practices:
- WAL mode so readers do not block the writer
- Foreign key enforcement
- Row factory for dict-like access
- Explicit ``BEGIN IMMEDIATE`` transactions (autocommit otherwise)

Usage:
    from tillsync.core.store import Database

    db = Database.open(Path(".tillsync/sync.db"))

    with db.transaction() as conn:
        conn.execute("UPDATE entities SET sync_status = ? WHERE ...", ("synced",))

    rows = db.query("SELECT * FROM sync_queue WHERE status = ?", ("pending",))
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from tillsync.core.store.schema import create_schema, needs_migration

logger = logging.getLogger(__name__)

MEMORY = ":memory:"


def dict_factory(cursor: sqlite3.Cursor, row: tuple[Any, ...]) -> dict[str, Any]:
    """
    Row factory that returns rows as dictionaries.

    Enables dict-like access to query results: row["column_name"]
    instead of positional access: row[0].
    """
    fields = [column[0] for column in cursor.description]
    return dict(zip(fields, row))


def configure_connection(conn: sqlite3.Connection) -> None:
    """
    Configure a SQLite connection with the settings tillsync relies on.

    Settings applied:
    - WAL mode: durable appends, readers never block the writer
    - Foreign keys: Enforce referential integrity
    - dict_factory: Enable dict-like row access
    """
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = dict_factory


def dump_json(value: Any) -> str | None:
    """Serialize a JSON column value (None stays NULL)."""
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def load_json(value: str | None) -> Any:
    """Deserialize a JSON column value (NULL becomes None)."""
    if value is None:
        return None
    return json.loads(value)


class Database:
    """
    Shared SQLite handle with re-entrant transactions.

    The connection is opened in autocommit mode; ``transaction()`` issues an
    explicit ``BEGIN IMMEDIATE`` so the write lock is taken up front. Nested
    ``transaction()`` blocks join the outermost one, which lets the queue
    call into the entity store without committing halfway.

    Example:
        >>> db = Database.open(":memory:")
        >>> with db.transaction() as conn:
        ...     conn.execute("INSERT INTO sync_state (key, value) VALUES ('k', 'v')")
        >>> db.query_one("SELECT value FROM sync_state WHERE key = 'k'")["value"]
        'v'
    """

    def __init__(self, conn: sqlite3.Connection, path: str) -> None:
        """
        Wrap an already configured connection.

        Prefer ``Database.open()`` which also creates the schema.

        Args:
            conn: Configured SQLite connection (autocommit mode)
            path: Database location, for diagnostics
        """
        self._conn = conn
        self.path = path
        self._lock = threading.RLock()
        self._depth = 0

    @classmethod
    def open(cls, db_path: Path | str) -> Database:
        """
        Open (and if needed create) the local database.

        Args:
            db_path: Path to the SQLite file, or ":memory:"

        Returns:
            Ready-to-use Database
        """
        path = str(db_path)
        if path != MEMORY:
            Path(path).parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
        configure_connection(conn)

        if needs_migration(conn):
            logger.debug("Creating tillsync schema in %s", path)
            create_schema(conn)

        return cls(conn, path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block atomically.

        The outermost block begins an immediate transaction and commits on
        success or rolls back on any exception. Inner blocks are no-ops that
        share the outer transaction.

        Yields:
            The underlying connection
        """
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self._conn
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._conn.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                if outermost:
                    self._conn.execute("COMMIT")

    def query(
        self,
        query: str,
        params: tuple[Any, ...] | dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Execute a SELECT and return all rows as dicts."""
        with self._lock:
            cursor = self._conn.execute(query, params or ())
            return cursor.fetchall()

    def query_one(
        self,
        query: str,
        params: tuple[Any, ...] | dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Execute a SELECT and return the first row, or None."""
        with self._lock:
            cursor = self._conn.execute(query, params or ())
            result = cursor.fetchone()
            # fetchone() returns dict[str, Any] or None with dict_factory
            return result  # type: ignore[no-any-return]

    def close(self) -> None:
        """Close the underlying connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
