"""The explicit authorization value passed into workspace operations."""

from __future__ import annotations

import enum

from pydantic import BaseModel

from calcast.core.errors import WorkspaceNotAuthorized


class WorkspaceKind(enum.StrEnum):
    PRIVATE = "private"
    GROUP = "group"
    SUPERGROUP = "supergroup"
    CHANNEL = "channel"


class WorkspaceScope(BaseModel):
    """Who is acting on which workspace, and whether they may.

    Built by the caller (API token, CLI operator) and passed into every
    operation; nothing reads authorization from process-wide state.
    """

    workspace_id: str
    actor_id: str
    authorized: bool = True

    def require_authorized(self) -> None:
        if not self.authorized:
            raise WorkspaceNotAuthorized(self.workspace_id)
