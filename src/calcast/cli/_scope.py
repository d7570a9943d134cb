"""Operator scope for commands run from a shell."""

from calcast.models.workspace import WorkspaceScope


def operator_scope(workspace_id: str, actor: str = "operator") -> WorkspaceScope:
    """Shell access implies the operator may act on any workspace."""
    return WorkspaceScope(workspace_id=workspace_id, actor_id=actor, authorized=True)
