"""Stored records and value models."""

from calcast.models.base import TimestampMixin, utcnow
from calcast.models.connection import AccountConnection, ActiveConnection
from calcast.models.event import EventPayload, EventUid
from calcast.models.mapping import EventMapping
from calcast.models.workspace import WorkspaceKind, WorkspaceScope

__all__ = [
    "TimestampMixin",
    "utcnow",
    "AccountConnection",
    "ActiveConnection",
    "EventPayload",
    "EventUid",
    "EventMapping",
    "WorkspaceKind",
    "WorkspaceScope",
]
