"""Encrypted per-(workspace, account) connection records."""

from __future__ import annotations

import logging
from datetime import datetime

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import ValidationError

from calcast.core.crypto import decrypt_secret, encrypt_secret, mask_credential
from calcast.core.errors import ConnectionNotFound, DecryptionFailure
from calcast.models.connection import AccountConnection, ActiveConnection
from calcast.store.base import KeyValueStore, get_store, make_key, make_prefix

logger = logging.getLogger(__name__)

CONNECTION_NAMESPACE = "conn"


class CredentialStore:
    """Stores one :class:`AccountConnection` per (workspace, external account).

    Refresh and access credentials are sealed with AES-GCM before they reach
    the key-value store and are only decrypted when a caller enumerates
    active connections.
    """

    def __init__(self, store: KeyValueStore | None = None, cipher: AESGCM | None = None) -> None:
        self.store = store or get_store()
        self._cipher = cipher

    @staticmethod
    def _key(workspace_id: str, external_account_id: str) -> str:
        return make_key(CONNECTION_NAMESPACE, workspace_id, external_account_id)

    async def _load(self, key: str) -> AccountConnection | None:
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            return AccountConnection.model_validate_json(raw)
        except ValidationError:
            logger.error("Discarding malformed connection record %s", key)
            return None

    async def _save(self, conn: AccountConnection) -> None:
        await self.store.put(
            self._key(conn.workspace_id, conn.external_account_id), conn.model_dump_json()
        )

    def _decrypt(self, conn: AccountConnection) -> ActiveConnection:
        access = (
            decrypt_secret(conn.access_credential_enc, self._cipher)
            if conn.access_credential_enc
            else None
        )
        return ActiveConnection(
            workspace_id=conn.workspace_id,
            external_account_id=conn.external_account_id,
            display_identifier=conn.display_identifier,
            refresh_credential=decrypt_secret(conn.refresh_credential_enc, self._cipher),
            access_credential=access,
            access_expires_at=conn.access_expires_at,
            scopes=conn.scopes,
            linked_by=conn.linked_by,
            created_at=conn.created_at,
            updated_at=conn.updated_at,
        )

    async def store_connection(
        self,
        workspace_id: str,
        external_account_id: str,
        display_identifier: str,
        refresh_credential: str,
        scopes: list[str] | str | None = None,
        linked_by: str | None = None,
    ) -> AccountConnection:
        """Encrypt and upsert a connection. Re-linking clears ``revoked``."""
        if isinstance(scopes, str):
            scopes = scopes.split()
        key = self._key(workspace_id, external_account_id)
        existing = await self._load(key)
        conn = AccountConnection(
            workspace_id=workspace_id,
            external_account_id=external_account_id,
            display_identifier=display_identifier,
            refresh_credential_enc=encrypt_secret(refresh_credential, self._cipher),
            scopes=list(scopes or []),
            revoked=False,
            linked_by=linked_by,
        )
        if existing is not None:
            conn.created_at = existing.created_at
        await self._save(conn)
        logger.info(
            "Stored connection for workspace %s: %s (%s)",
            workspace_id,
            conn.display_identifier,
            "re-linked" if existing is not None else "new",
        )
        return conn

    async def list_active_connections(self, workspace_id: str) -> list[ActiveConnection]:
        """Return every non-revoked connection with secrets decrypted.

        A record that fails to decrypt is logged and skipped so one corrupt
        entry cannot hide the rest of the workspace.
        """
        keys = await self.store.list_keys(make_prefix(CONNECTION_NAMESPACE, workspace_id))
        active: list[ActiveConnection] = []
        for key in keys:
            conn = await self._load(key)
            if conn is None or conn.revoked:
                continue
            try:
                active.append(self._decrypt(conn))
            except DecryptionFailure:
                logger.error(
                    "Excluding connection %s: stored credential failed to decrypt", key
                )
        logger.debug("Found %d active connections for workspace %s", len(active), workspace_id)
        return active

    async def display_identifier_for(
        self, workspace_id: str, external_account_id: str
    ) -> str | None:
        """Email of a non-revoked record, readable even when its secrets are not."""
        conn = await self._load(self._key(workspace_id, external_account_id))
        if conn is None or conn.revoked:
            return None
        return conn.display_identifier

    async def get_connection(
        self, workspace_id: str, external_account_id: str
    ) -> ActiveConnection | None:
        conn = await self._load(self._key(workspace_id, external_account_id))
        if conn is None or conn.revoked:
            return None
        return self._decrypt(conn)

    async def find_by_display_identifier(
        self, workspace_id: str, identifier: str
    ) -> ActiveConnection | None:
        wanted = identifier.strip().lower()
        for conn in await self.list_active_connections(workspace_id):
            if conn.display_identifier == wanted:
                return conn
        return None

    async def revise_access_credential(
        self,
        workspace_id: str,
        external_account_id: str,
        access_credential: str,
        expires_at: datetime,
    ) -> None:
        key = self._key(workspace_id, external_account_id)
        conn = await self._load(key)
        if conn is None or conn.revoked:
            raise ConnectionNotFound(workspace_id, external_account_id)
        conn.access_credential_enc = encrypt_secret(access_credential, self._cipher)
        conn.access_expires_at = expires_at
        conn.touch()
        await self._save(conn)
        logger.debug(
            "Cached access credential %s for %s", mask_credential(access_credential), key
        )

    async def revoke(self, workspace_id: str, external_account_id: str) -> bool:
        """Soft-delete a connection. Returns False if there was nothing to revoke."""
        key = self._key(workspace_id, external_account_id)
        conn = await self._load(key)
        if conn is None or conn.revoked:
            return False
        conn.revoked = True
        conn.access_credential_enc = None
        conn.access_expires_at = None
        conn.touch()
        await self._save(conn)
        logger.info("Revoked connection %s in workspace %s", external_account_id, workspace_id)
        return True
