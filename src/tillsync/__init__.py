"""
tillsync - local-first synchronization for point-of-sale data

Queues mutations made against the local store while offline, pushes them to
the remote authority once it is reachable, flags divergent edits as
conflicts, and publishes a subscribable status for UI layers.
"""

__version__ = "0.4.0"

# Re-export the main entry points for convenience
from tillsync.core.config.models import TillsyncConfig
from tillsync.core.sync.models import Operation, SyncResult, SyncStatus
from tillsync.core.sync.service import SyncService

__all__ = [
    "Operation",
    "SyncResult",
    "SyncService",
    "SyncStatus",
    "TillsyncConfig",
    "__version__",
]
