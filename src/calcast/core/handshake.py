"""Signed, single-use state tokens for the OAuth consent redirect."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time

from pydantic import BaseModel, ValidationError

from calcast.config import Settings, get_settings
from calcast.core.errors import Expired, Replayed, SignatureInvalid
from calcast.store.base import KeyValueStore, get_store, make_key

logger = logging.getLogger(__name__)

STATE_NAMESPACE = "oauth_state"
CONSUMED_NAMESPACE = "oauth_state_used"


class HandshakeState(BaseModel):
    workspace_id: str
    initiating_user_id: str
    workspace_kind: str
    nonce: str
    signature: str = ""
    created_at: float = 0.0

    def canonical_payload(self) -> bytes:
        """Deterministic bytes covered by the signature."""
        fields = [self.workspace_id, self.initiating_user_id, self.workspace_kind, self.nonce]
        return json.dumps(fields, separators=(",", ":")).encode()


class HandshakeGuard:
    """Issues and verifies OAuth ``state`` values.

    The HMAC proves the token came from us and was not altered; the
    short-lived existence marker in the store provides expiry and single use,
    which a signature alone cannot.
    """

    def __init__(
        self, store: KeyValueStore | None = None, settings: Settings | None = None
    ) -> None:
        self.store = store or get_store()
        self.settings = settings or get_settings()

    def _sign(self, state: HandshakeState) -> str:
        secret = self.settings.effective_state_secret.encode()
        return hmac.new(secret, state.canonical_payload(), hashlib.sha256).hexdigest()

    async def issue(
        self, workspace_id: str, initiating_user_id: str, workspace_kind: str
    ) -> str:
        state = HandshakeState(
            workspace_id=str(workspace_id),
            initiating_user_id=str(initiating_user_id),
            workspace_kind=workspace_kind,
            nonce=secrets.token_urlsafe(16),
            created_at=time.time(),
        )
        state.signature = self._sign(state)
        await self.store.put(
            make_key(STATE_NAMESPACE, state.nonce),
            json.dumps({"created_at": state.created_at}),
            ttl=self.settings.state_ttl_seconds,
        )
        token = base64.urlsafe_b64encode(state.model_dump_json(exclude={"created_at"}).encode())
        logger.info(
            "Issued link state for workspace %s (nonce=%s...)", workspace_id, state.nonce[:6]
        )
        return token.decode()

    def _decode(self, token: str) -> HandshakeState:
        try:
            raw = base64.urlsafe_b64decode(token.encode())
            return HandshakeState.model_validate_json(raw)
        except (binascii.Error, ValueError, ValidationError) as exc:
            raise SignatureInvalid("Malformed authorization state") from exc

    async def verify(self, token: str) -> HandshakeState:
        """Check signature, then consume the existence marker.

        Raises :class:`SignatureInvalid`, :class:`Expired` or
        :class:`Replayed`; a valid signature without a live marker never
        passes.
        """
        state = self._decode(token)
        if not hmac.compare_digest(self._sign(state), state.signature):
            logger.warning("State signature verification failed")
            raise SignatureInvalid("Invalid or tampered authorization state")

        marker = await self.store.pop(make_key(STATE_NAMESPACE, state.nonce))
        if marker is None:
            if await self.store.get(make_key(CONSUMED_NAMESPACE, state.nonce)) is not None:
                logger.warning("Replayed authorization state (nonce=%s...)", state.nonce[:6])
                raise Replayed("Authorization state was already used")
            raise Expired("Invalid or expired authorization state")

        await self.store.put(
            make_key(CONSUMED_NAMESPACE, state.nonce), "1", ttl=self.settings.state_ttl_seconds
        )
        created_at = float(json.loads(marker).get("created_at", 0))
        state.created_at = created_at
        if time.time() - created_at > self.settings.state_ttl_seconds:
            raise Expired("Authorization state expired")
        return state
