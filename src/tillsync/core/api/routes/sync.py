"""
Sync API routes.

- GET /api/status - Connectivity, syncing flag, device id, last sync, counts
- POST /api/sync - Run (or join) a sync pass and return its result
- POST /api/retry - Move failed entries back to pending
- GET /api/queue/counts - Live queue entries per status
"""

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from tillsync.core.api.routes import get_service
from tillsync.core.sync.models import SyncResult
from tillsync.core.sync.service import SyncService

router = APIRouter()


class StatusResponse(BaseModel):
    """Snapshot of the service status."""

    is_online: bool
    is_syncing: bool
    device_id: str | None = None
    last_synced_at: datetime | None = None
    counts: dict[str, int] = Field(default_factory=dict)


class SyncRequest(BaseModel):
    """Optional body for POST /api/sync."""

    pull: bool | None = Field(default=None, description="Override pull for this pass")


class RetryResponse(BaseModel):
    retried: int


@router.get("/status", response_model=StatusResponse)
async def get_status(service: SyncService = Depends(get_service)) -> StatusResponse:
    """
    Get the current sync status.

    Example response:
        {
          "is_online": true,
          "is_syncing": false,
          "device_id": "device-3f2a9c1b7d4e",
          "last_synced_at": "2026-03-01T12:00:00+00:00",
          "counts": {"pending": 2, "error": 0, "conflict": 1}
        }
    """
    status = service.get_status()
    return StatusResponse(
        is_online=status.is_online,
        is_syncing=status.is_syncing,
        device_id=status.device_id,
        last_synced_at=service.last_synced_at(),
        counts=service.counts(),
    )


@router.post("/sync", response_model=SyncResult)
async def trigger_sync(
    body: SyncRequest | None = None,
    service: SyncService = Depends(get_service),
) -> SyncResult:
    """Run a sync pass; concurrent requests share the covering pass."""
    return await service.sync(pull=body.pull if body else None)


@router.post("/retry", response_model=RetryResponse)
async def retry_failed(service: SyncService = Depends(get_service)) -> RetryResponse:
    """Reset failed entries to pending (idempotent)."""
    return RetryResponse(retried=service.retry_failed_operations())


@router.get("/queue/counts")
async def queue_counts(service: SyncService = Depends(get_service)) -> dict[str, int]:
    """Live queue entries per status."""
    return service.counts()
