"""Exception hierarchy shared by the credential, identity and broadcast layers."""

from __future__ import annotations


class CalcastError(Exception):
    """Base class for all calcast errors."""


# ── Credentials ────────────────────────────────────────────────────────────────


class CredentialInvalid(CalcastError):
    """The provider explicitly rejected a credential; the account must be re-linked."""


class DecryptionFailure(CredentialInvalid):
    """Stored ciphertext failed its integrity check or was sealed under another key."""


class CredentialTransportError(CalcastError):
    """Network failure or 5xx while talking to the authorization server. Retryable."""

    retryable = True


class CredentialExchangeError(CalcastError):
    """Authorization code exchange did not yield a usable credential."""


class ConnectionNotFound(CalcastError):
    def __init__(self, workspace_id: str, external_account_id: str) -> None:
        super().__init__(f"Connection not found: {workspace_id}/{external_account_id}")
        self.workspace_id = workspace_id
        self.external_account_id = external_account_id


# ── Broadcast preconditions ────────────────────────────────────────────────────


class WorkspaceNotAuthorized(CalcastError):
    def __init__(self, workspace_id: str) -> None:
        super().__init__(f"Workspace {workspace_id} is not authorized")
        self.workspace_id = workspace_id


class NoActiveAccounts(CalcastError):
    def __init__(self, workspace_id: str) -> None:
        super().__init__(f"No calendar accounts connected to workspace {workspace_id}")
        self.workspace_id = workspace_id


class MappingNotFound(CalcastError):
    def __init__(self, workspace_id: str, bot_event_uid: str) -> None:
        super().__init__(f"Event {bot_event_uid} not found or already deleted")
        self.workspace_id = workspace_id
        self.bot_event_uid = bot_event_uid


# ── OAuth handshake ────────────────────────────────────────────────────────────


class HandshakeError(CalcastError):
    """Base for state token failures. Any of these aborts the whole handshake."""


class SignatureInvalid(HandshakeError):
    pass


class Expired(HandshakeError):
    pass


class Replayed(HandshakeError):
    pass


# ── Remote calendar ────────────────────────────────────────────────────────────


class RemoteCalendarError(CalcastError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code >= 500 or self.status_code == 429


class RemoteNotFound(RemoteCalendarError):
    """The native event is gone (404/410)."""


class RemoteAuthError(RemoteCalendarError):
    """The access credential was rejected by the calendar API (401)."""
