"""Connections router — list and disconnect linked calendar accounts."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from calcast.api.auth import get_workspace_scope
from calcast.core.services import get_services
from calcast.models.workspace import WorkspaceScope

router = APIRouter()


class ConnectionOut(BaseModel):
    external_account_id: str
    display_identifier: str
    scopes: list[str]
    linked_by: str | None
    access_expires_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None


class DisconnectOut(BaseModel):
    external_account_id: str
    mappings_removed: int


@router.get("/", response_model=list[ConnectionOut])
async def list_connections(scope: WorkspaceScope = Depends(get_workspace_scope)):
    """List active connections for the workspace. Secrets are never returned."""
    scope.require_authorized()
    connections = await get_services().credentials.list_active_connections(scope.workspace_id)
    return [
        ConnectionOut(
            external_account_id=c.external_account_id,
            display_identifier=c.display_identifier,
            scopes=c.scopes,
            linked_by=c.linked_by,
            access_expires_at=c.access_expires_at,
            created_at=c.created_at,
            updated_at=c.updated_at,
        )
        for c in connections
    ]


@router.delete("/{account}", response_model=DisconnectOut)
async def disconnect(account: str, scope: WorkspaceScope = Depends(get_workspace_scope)):
    """Disconnect an account by id or email and drop its event mappings."""
    linker = get_services().linker
    scope.require_authorized()
    account_id = await linker.resolve_account(scope, account)
    if account_id is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")
    removed = await linker.disconnect(scope, account_id)
    return DisconnectOut(external_account_id=account_id, mappings_removed=removed)
