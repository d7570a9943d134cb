"""Hand out a usable access credential, refreshing it when close to expiry."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta

from calcast.clients.google_oauth import RefreshClient
from calcast.config import Settings, get_settings
from calcast.core.credentials import CredentialStore
from calcast.core.crypto import mask_credential
from calcast.core.errors import ConnectionNotFound, CredentialInvalid
from calcast.models.base import utcnow
from calcast.models.connection import ActiveConnection

logger = logging.getLogger(__name__)


@dataclass
class CredentialResolution:
    """Outcome of resolving a connection's access credential.

    A rejected refresh is reported here rather than raised so a broadcast can
    record it against one account and carry on with the others.
    """

    access_credential: str | None = field(default=None, repr=False)
    failure: str | None = None
    reauth_required: bool = False
    refreshed: bool = False

    @property
    def ok(self) -> bool:
        return self.access_credential is not None


class TokenLifecycleManager:
    def __init__(
        self,
        credentials: CredentialStore,
        refresh_client: RefreshClient,
        settings: Settings | None = None,
    ) -> None:
        self.credentials = credentials
        self.refresh_client = refresh_client
        self.settings = settings or get_settings()

    def needs_refresh(self, connection: ActiveConnection) -> bool:
        if not connection.access_credential or connection.access_expires_at is None:
            return True
        skew = timedelta(seconds=self.settings.refresh_skew_seconds)
        return utcnow() >= connection.access_expires_at - skew

    async def get_valid_access_credential(
        self, connection: ActiveConnection
    ) -> CredentialResolution:
        """Return the cached credential, or refresh it first.

        Transport failures raise :class:`CredentialTransportError` and are
        retryable; an explicit provider denial comes back as a failed
        resolution with ``reauth_required`` set.
        """
        if not self.needs_refresh(connection):
            return CredentialResolution(access_credential=connection.access_credential)

        logger.info(
            "Access credential for %s expired or missing, refreshing",
            connection.display_identifier,
        )
        try:
            refreshed = await self.refresh_client.refresh(connection.refresh_credential)
        except CredentialInvalid as exc:
            logger.error(
                "Failed to refresh credential for %s: %s", connection.display_identifier, exc
            )
            return CredentialResolution(failure="credential", reauth_required=True)

        try:
            await self.credentials.revise_access_credential(
                connection.workspace_id,
                connection.external_account_id,
                refreshed.access_credential,
                refreshed.expires_at,
            )
        except ConnectionNotFound:
            # Disconnected while we were refreshing; the fresh credential is
            # still good for this call but must not resurrect the record.
            logger.warning(
                "Connection %s vanished during refresh", connection.external_account_id
            )
        connection.access_credential = refreshed.access_credential
        connection.access_expires_at = refreshed.expires_at
        logger.info(
            "Refreshed credential %s for %s",
            mask_credential(refreshed.access_credential),
            connection.display_identifier,
        )
        return CredentialResolution(access_credential=refreshed.access_credential, refreshed=True)

    def round(self) -> TokenRound:
        return TokenRound(self)


def _retrieve_exception(task: asyncio.Task) -> None:
    # Consumers may have timed out and gone away; mark the outcome as seen.
    if not task.cancelled():
        task.exception()


class TokenRound:
    """Memoises credential resolution for the duration of one broadcast.

    Each account is refreshed at most once per round; concurrent consumers of
    the same account await the same in-flight resolution.
    """

    def __init__(self, manager: TokenLifecycleManager) -> None:
        self.manager = manager
        self._inflight: dict[str, asyncio.Task[CredentialResolution]] = {}

    async def resolve(self, connection: ActiveConnection) -> CredentialResolution:
        task = self._inflight.get(connection.external_account_id)
        if task is None:
            task = asyncio.ensure_future(self.manager.get_valid_access_credential(connection))
            task.add_done_callback(_retrieve_exception)
            self._inflight[connection.external_account_id] = task
        # Shielded so one consumer's timeout does not cancel the refresh for the others.
        return await asyncio.shield(task)
