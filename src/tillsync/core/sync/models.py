"""
Data models for the sync engine.

Defines Pydantic models for entities, queue entries, remote records, pass
results and the process-wide service status.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Keys that describe synchronization state rather than business data.
# They never participate in conflict comparison and are never written back
# into an entity's business fields.
SYNC_METADATA_KEYS = frozenset(
    {
        "id",
        "updated_at",
        "updatedAt",
        "created_at",
        "createdAt",
        "synced_at",
        "syncedAt",
        "sync_status",
        "syncStatus",
    }
)


def business_fields(payload: dict[str, Any] | None) -> dict[str, Any]:
    """Strip sync metadata keys from a payload."""
    if not payload:
        return {}
    return {k: v for k, v in payload.items() if k not in SYNC_METADATA_KEYS}


class SyncStatus(str, Enum):
    """Synchronization state of an entity (and of its queue entry)."""

    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"
    CONFLICT = "conflict"


class Operation(str, Enum):
    """Kind of local mutation carried by a queue entry."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class FailureKind(str, Enum):
    """Classification of a failed remote call."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ConflictResolution(str, Enum):
    """Explicit ways out of the conflict state."""

    USE_LOCAL = "use_local"
    USE_REMOTE = "use_remote"
    MERGE = "merge"


class EntityRecord(BaseModel):
    """
    A synchronizable domain record as held by the local store.

    The sync engine only ever touches the metadata fields; ``fields`` belongs
    to the application except when a conflict is resolved in favor of the
    remote snapshot.
    """

    entity_type: str = Field(description="Entity type, e.g. 'products'")
    entity_id: str = Field(description="Stable identifier shared with the remote")
    fields: dict[str, Any] = Field(default_factory=dict, description="Business fields")
    sync_status: SyncStatus = Field(default=SyncStatus.PENDING)
    updated_at: datetime = Field(description="Local mutation timestamp")
    synced_at: datetime | None = Field(
        default=None,
        description="Last confirmed remote acknowledgement",
    )
    deleted: bool = Field(default=False, description="Tombstone for a local delete")


class QueueEntry(BaseModel):
    """
    One outstanding intent to reconcile one entity.

    Entries are immutable snapshots of the queue row; the queue hands out a
    fresh snapshot after every transition.

    Example:
        >>> entry = queue.enqueue("products", "p-1", Operation.UPDATE, {"name": "Mate"})
        >>> entry.status
        <SyncStatus.PENDING: 'pending'>
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Entry identifier (uuid4 hex)")
    seq: int = Field(description="Monotonic insertion order")
    entity_type: str
    entity_id: str
    operation: Operation
    payload: dict[str, Any] | None = Field(
        default=None,
        description="Serialized payload snapshot taken at enqueue time",
    )
    captured_updated_at: datetime | None = Field(
        default=None,
        description="Local updatedAt captured with the payload (conflict baseline)",
    )
    attempts: int = Field(default=0, ge=0)
    status: SyncStatus = Field(default=SyncStatus.PENDING)
    created_at: datetime
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    failure_kind: FailureKind | None = None
    next_attempt_at: datetime | None = Field(
        default=None,
        description="Earliest time a transient failure may be retried",
    )
    remote_snapshot: dict[str, Any] | None = Field(
        default=None,
        description="Remote record stored alongside the payload on conflict",
    )
    revision: int = Field(default=1, ge=1, description="Bumped on every coalesce")
    in_flight: bool = Field(default=False)


class RemoteRecord(BaseModel):
    """
    The remote authority's copy of an entity.

    Example:
        >>> RemoteRecord.from_payload({"id": "p-1", "name": "Yerba", "updatedAt": "2026-01-02T10:00:00Z"})
        RemoteRecord(entity_id='p-1', fields={'name': 'Yerba'}, updated_at=...)
    """

    model_config = ConfigDict(frozen=True)

    entity_id: str
    fields: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> RemoteRecord:
        """
        Build a record from a backend JSON object.

        Accepts both camelCase (``updatedAt``) and snake_case keys.

        Raises:
            ValueError: If the object lacks an id or an updated timestamp
        """
        from tillsync.utils.timestamps import parse_timestamp

        entity_id = data.get("id")
        if entity_id is None:
            raise ValueError("Remote record is missing 'id'")
        updated_raw = data.get("updatedAt", data.get("updated_at"))
        updated_at = parse_timestamp(updated_raw)
        if updated_at is None:
            raise ValueError(f"Remote record {entity_id} is missing 'updatedAt'")
        return cls(entity_id=str(entity_id), fields=business_fields(data), updated_at=updated_at)

    def to_snapshot(self) -> dict[str, Any]:
        """Serialize for storage next to a conflicted queue entry."""
        return {
            "id": self.entity_id,
            "fields": self.fields,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, Any]) -> RemoteRecord:
        """Inverse of ``to_snapshot``."""
        from tillsync.utils.timestamps import parse_timestamp

        return cls(
            entity_id=str(snapshot["id"]),
            fields=dict(snapshot.get("fields") or {}),
            updated_at=parse_timestamp(snapshot["updated_at"]),
        )


class PullChanges(BaseModel):
    """Remote changes since a device's last successful sync."""

    synced_at: datetime = Field(description="Server time the change set was cut at")
    changes: dict[str, list[dict[str, Any]]] = Field(
        default_factory=dict,
        description="Raw remote records keyed by entity type",
    )

    @property
    def total(self) -> int:
        return sum(len(records) for records in self.changes.values())


class EntryError(BaseModel):
    """Entry-level error descriptor reported in a SyncResult."""

    model_config = ConfigDict(frozen=True)

    entry_id: str | None = None
    entity_type: str
    entity_id: str | None = None
    kind: FailureKind
    message: str


class SyncResult(BaseModel):
    """
    Immutable outcome of one orchestrator pass.

    Only the most recent result is retained by the orchestrator.
    """

    model_config = ConfigDict(frozen=True)

    synced: int = Field(default=0, ge=0, description="Entries acknowledged by the remote")
    skipped: int = Field(
        default=0,
        ge=0,
        description="Entries not attempted (backoff, permanent error, abort, superseded)",
    )
    failed: int = Field(default=0, ge=0, description="Entries whose attempt failed")
    conflicted: int = Field(default=0, ge=0, description="Entries flagged as conflicts")
    pulled: int = Field(default=0, ge=0, description="Remote changes merged locally")
    errors: list[EntryError] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    aborted: bool = Field(default=False, description="Pass stopped early (e.g. offline)")
    abort_reason: str | None = None

    @property
    def success(self) -> bool:
        """True when nothing failed, conflicted or aborted."""
        return not self.aborted and self.failed == 0 and self.conflicted == 0

    @property
    def duration_seconds(self) -> float | None:
        """Pass duration in seconds."""
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def summary(self) -> str:
        """Generate a human-readable summary of the result."""
        if self.aborted:
            return f"sync aborted: {self.abort_reason or 'unknown reason'}"
        parts = [f"{self.synced} synced"]
        if self.pulled:
            parts.append(f"{self.pulled} pulled")
        if self.failed:
            parts.append(f"{self.failed} failed")
        if self.conflicted:
            parts.append(f"{self.conflicted} conflicted")
        if self.skipped:
            parts.append(f"{self.skipped} skipped")
        return ", ".join(parts)


class ServiceStatus(BaseModel):
    """Process-wide sync status broadcast to subscribers."""

    model_config = ConfigDict(frozen=True)

    is_online: bool = True
    is_syncing: bool = False
    device_id: str | None = None
