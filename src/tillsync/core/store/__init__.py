"""
Local sqlite store.

Provides the shared database handle, schema management and the entity store
used by the sync engine.
"""

from tillsync.core.store.connection import Database, configure_connection, dict_factory
from tillsync.core.store.entities import EntityStore
from tillsync.core.store.schema import (
    SCHEMA_VERSION,
    create_schema,
    get_schema_version,
    needs_migration,
)

__all__ = [
    "Database",
    "EntityStore",
    "SCHEMA_VERSION",
    "configure_connection",
    "create_schema",
    "dict_factory",
    "get_schema_version",
    "needs_migration",
]
