"""Account linking: OAuth consent start, callback completion, disconnect."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from calcast.clients.google_oauth import GoogleOAuthClient
from calcast.core.credentials import CredentialStore
from calcast.core.errors import CredentialExchangeError
from calcast.core.handshake import HandshakeGuard
from calcast.core.identity import EventIdentityRegistry
from calcast.models.workspace import WorkspaceKind, WorkspaceScope

logger = logging.getLogger(__name__)


@dataclass
class LinkResult:
    workspace_id: str
    external_account_id: str
    display_identifier: str
    linked_by: str


class AccountLinker:
    def __init__(
        self,
        credentials: CredentialStore,
        registry: EventIdentityRegistry,
        handshake: HandshakeGuard,
        oauth: GoogleOAuthClient,
    ) -> None:
        self.credentials = credentials
        self.registry = registry
        self.handshake = handshake
        self.oauth = oauth

    async def start(
        self, scope: WorkspaceScope, workspace_kind: WorkspaceKind | str = WorkspaceKind.PRIVATE
    ) -> str:
        """Return the consent URL the initiating user should open."""
        scope.require_authorized()
        state = await self.handshake.issue(
            scope.workspace_id, scope.actor_id, WorkspaceKind(workspace_kind).value
        )
        return self.oauth.consent_url(state)

    async def complete(self, code: str, state: str) -> LinkResult:
        """Finish the consent redirect.

        The state is verified (and consumed) before the code is exchanged, so
        a forged or replayed callback never reaches the token endpoint.
        """
        verified = await self.handshake.verify(state)
        grant = await self.oauth.exchange_code(code)
        if not grant.refresh_credential:
            raise CredentialExchangeError(
                "Provider did not return a refresh credential; consent must be re-granted"
            )
        user = await self.oauth.fetch_user_info(grant.access_credential)

        await self.credentials.store_connection(
            verified.workspace_id,
            user.sub,
            user.email,
            grant.refresh_credential,
            grant.scopes,
            verified.initiating_user_id,
        )
        await self.credentials.revise_access_credential(
            verified.workspace_id, user.sub, grant.access_credential, grant.expires_at
        )
        logger.info("Linked %s to workspace %s", user.email, verified.workspace_id)
        return LinkResult(
            workspace_id=verified.workspace_id,
            external_account_id=user.sub,
            display_identifier=user.email,
            linked_by=verified.initiating_user_id,
        )

    async def resolve_account(self, scope: WorkspaceScope, reference: str) -> str | None:
        """Accept either an external account id or the account's email."""
        if "@" not in reference:
            return reference
        conn = await self.credentials.find_by_display_identifier(scope.workspace_id, reference)
        return conn.external_account_id if conn else None

    async def disconnect(self, scope: WorkspaceScope, external_account_id: str) -> int:
        """Revoke a connection and drop every mapping that points at it."""
        scope.require_authorized()
        await self.credentials.revoke(scope.workspace_id, external_account_id)
        return await self.registry.cascade_remove_for_account(
            scope.workspace_id, external_account_id
        )
