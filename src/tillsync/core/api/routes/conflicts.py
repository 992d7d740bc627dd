"""
Conflict API routes.

- GET /api/conflicts - Entries waiting for an explicit resolution
- POST /api/conflicts/{entry_id}/resolve - Resolve one conflict
"""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from tillsync.core.api.routes import get_service
from tillsync.core.sync.models import ConflictResolution, QueueEntry
from tillsync.core.sync.service import SyncService

router = APIRouter()


class ResolveRequest(BaseModel):
    """Body for POST /api/conflicts/{entry_id}/resolve."""

    resolution: ConflictResolution
    merged_payload: dict[str, Any] | None = Field(
        default=None,
        description="Required for the merge resolution",
    )


class ResolveResponse(BaseModel):
    entry_id: str
    resolution: ConflictResolution
    entry: QueueEntry | None = Field(
        default=None,
        description="The pending entry; null when the remote copy was accepted",
    )


@router.get("/conflicts", response_model=list[QueueEntry])
async def list_conflicts(service: SyncService = Depends(get_service)) -> list[QueueEntry]:
    """List conflicted entries with their remote snapshots."""
    return service.list_conflicts()


@router.post("/conflicts/{entry_id}/resolve", response_model=ResolveResponse)
async def resolve_conflict(
    entry_id: str,
    body: ResolveRequest,
    service: SyncService = Depends(get_service),
) -> ResolveResponse:
    """
    Resolve a conflict with use_local, use_remote or merge.

    Raises:
        404 if the entry does not exist, 409 if it is not in conflict,
        400 if merge is requested without a merged payload
    """
    entry = service.resolve_conflict(entry_id, body.resolution, body.merged_payload)
    return ResolveResponse(entry_id=entry_id, resolution=body.resolution, entry=entry)
