"""API route modules."""

from fastapi import Request

from tillsync.core.sync.service import SyncService


def get_service(request: Request) -> SyncService:
    """Dependency returning the service the app was built around."""
    service: SyncService = request.app.state.service
    return service
