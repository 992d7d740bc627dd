"""
FastAPI application for the tillsync local API.

API Endpoints:
- GET /health - Liveness
- GET /api/status - Sync status
- POST /api/sync - Trigger a sync pass
- POST /api/retry - Retry failed entries
- GET /api/queue/counts - Queue counts per status
- GET /api/conflicts - List conflicts
- POST /api/conflicts/{entry_id}/resolve - Resolve a conflict

Usage:
    # Run the server
    tillsync serve --port 8765

    # Or from Python
    from tillsync.core.api import create_app
    app = create_app(SyncService.open())
"""

from tillsync.core.api.app import ErrorCode, ErrorResponse, create_app

__all__ = ["ErrorCode", "ErrorResponse", "create_app"]
