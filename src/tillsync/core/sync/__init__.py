"""
Local-first sync engine.

Leaf modules (models, exceptions, resolver, retry policy, publisher,
connectivity) are re-exported here. The queue, orchestrator and service
depend on the local store and are imported from their own modules:

    from tillsync.core.sync.service import SyncService
"""

from tillsync.core.sync.connectivity import ConnectivityMonitor, ReachabilityProbe
from tillsync.core.sync.exceptions import (
    ConflictDetected,
    ConflictPendingError,
    EntryNotFoundError,
    InvalidTransitionError,
    PermanentValidationError,
    SyncError,
    TransientNetworkError,
)
from tillsync.core.sync.models import (
    ConflictResolution,
    EntityRecord,
    EntryError,
    FailureKind,
    Operation,
    PullChanges,
    QueueEntry,
    RemoteRecord,
    ServiceStatus,
    SyncResult,
    SyncStatus,
)
from tillsync.core.sync.publisher import StatusPublisher
from tillsync.core.sync.resolver import ConflictDecision, ConflictResolver, Outcome
from tillsync.core.sync.retry import RetryPolicy

__all__ = [
    "ConflictDecision",
    "ConflictDetected",
    "ConflictPendingError",
    "ConflictResolution",
    "ConflictResolver",
    "ConnectivityMonitor",
    "EntityRecord",
    "EntryError",
    "EntryNotFoundError",
    "FailureKind",
    "InvalidTransitionError",
    "Operation",
    "Outcome",
    "PermanentValidationError",
    "PullChanges",
    "QueueEntry",
    "ReachabilityProbe",
    "RemoteRecord",
    "RetryPolicy",
    "ServiceStatus",
    "StatusPublisher",
    "SyncError",
    "SyncResult",
    "SyncStatus",
    "TransientNetworkError",
]
