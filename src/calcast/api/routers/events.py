"""Events router — broadcast create/update/delete of one logical event."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from calcast.api.auth import get_workspace_scope
from calcast.core.identity import is_valid_event_uid, normalize_event_uid
from calcast.core.services import get_services
from calcast.models.event import EventPayload
from calcast.models.workspace import WorkspaceScope

router = APIRouter()


class MappingOut(BaseModel):
    external_account_id: str
    native_event_id: str


def _checked_uid(uid: str) -> str:
    if not is_valid_event_uid(uid):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid event uid")
    return normalize_event_uid(uid)


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_event(
    body: EventPayload, scope: WorkspaceScope = Depends(get_workspace_scope)
) -> dict[str, Any]:
    """Create the event in every linked account under a new logical uid."""
    board = await get_services().orchestrator.broadcast_create(scope, None, body)
    return board.to_dict()


@router.patch("/{uid}")
async def update_event(
    uid: str, body: EventPayload, scope: WorkspaceScope = Depends(get_workspace_scope)
) -> dict[str, Any]:
    board = await get_services().orchestrator.broadcast_update(scope, _checked_uid(uid), body)
    return board.to_dict()


@router.delete("/{uid}")
async def delete_event(
    uid: str, scope: WorkspaceScope = Depends(get_workspace_scope)
) -> dict[str, Any]:
    board = await get_services().orchestrator.broadcast_delete(scope, _checked_uid(uid))
    return board.to_dict()


@router.get("/{uid}/mappings", response_model=list[MappingOut])
async def list_mappings(uid: str, scope: WorkspaceScope = Depends(get_workspace_scope)):
    """Where the logical event currently lives. Empty once fully deleted."""
    scope.require_authorized()
    mappings = await get_services().registry.mappings_for(scope.workspace_id, _checked_uid(uid))
    return [
        MappingOut(external_account_id=m.external_account_id, native_event_id=m.native_event_id)
        for m in mappings
    ]
