"""Google OAuth 2.0 client: consent URL, code exchange, user info, refresh."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol
from urllib.parse import urlencode

import httpx

from calcast.config import Settings, get_settings
from calcast.core.errors import CredentialExchangeError, CredentialInvalid, CredentialTransportError
from calcast.models.base import utcnow

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

# Calendar events only; no access to calendar settings or other calendars' ACLs.
CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar.events"]
IDENTITY_SCOPES = ["openid", "email"]

_DEFAULT_EXPIRES_IN = 3600


@dataclass
class RefreshedCredential:
    access_credential: str = field(repr=False)
    expires_at: datetime


@dataclass
class TokenGrant:
    access_credential: str = field(repr=False)
    refresh_credential: str | None = field(repr=False)
    expires_at: datetime
    scopes: list[str]


@dataclass
class UserInfo:
    sub: str
    email: str


class RefreshClient(Protocol):
    async def refresh(self, refresh_credential: str) -> RefreshedCredential: ...


def _expires_at(payload: dict[str, Any]) -> datetime:
    raw = payload.get("expires_in")
    seconds = _DEFAULT_EXPIRES_IN
    if isinstance(raw, int | float) and not isinstance(raw, bool) and raw > 0:
        seconds = int(raw)
    return utcnow() + timedelta(seconds=seconds)


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error_description") or payload.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        if isinstance(error, str) and error.strip():
            return " ".join(error.split())[:200]
    text = response.text.strip()
    return " ".join(text.split())[:200] if text else f"HTTP {response.status_code}"


class GoogleOAuthClient:
    """Talks to Google's authorization server.

    ``refresh`` distinguishes an explicit denial (400/401, e.g.
    ``invalid_grant`` after the user revoked access) from transport trouble:
    the first raises :class:`CredentialInvalid`, the second
    :class:`CredentialTransportError`.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._http_client = http_client or httpx.AsyncClient(
            timeout=self.settings.http_timeout_seconds
        )

    async def aclose(self) -> None:
        await self._http_client.aclose()

    def consent_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.google_client_id or "",
            "redirect_uri": self.settings.oauth_redirect_uri,
            "response_type": "code",
            "scope": " ".join(CALENDAR_SCOPES + IDENTITY_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def _post_token(self, data: dict[str, str]) -> httpx.Response:
        data = {
            "client_id": self.settings.google_client_id or "",
            "client_secret": self.settings.google_client_secret or "",
            **data,
        }
        try:
            return await self._http_client.post(
                GOOGLE_TOKEN_URL, data=data, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as exc:
            raise CredentialTransportError(f"Token endpoint request failed: {exc}") from exc

    async def exchange_code(self, code: str) -> TokenGrant:
        response = await self._post_token(
            {
                "code": code,
                "redirect_uri": self.settings.oauth_redirect_uri,
                "grant_type": "authorization_code",
            }
        )
        if response.status_code >= 500:
            raise CredentialTransportError(
                f"Token exchange failed ({response.status_code}): {_safe_error_message(response)}"
            )
        if response.status_code >= 300:
            raise CredentialExchangeError(
                f"Token exchange failed ({response.status_code}): {_safe_error_message(response)}"
            )
        payload = response.json()
        access = payload.get("access_token")
        if not isinstance(access, str) or not access:
            raise CredentialExchangeError("Token response is missing access_token")
        return TokenGrant(
            access_credential=access,
            refresh_credential=payload.get("refresh_token"),
            expires_at=_expires_at(payload),
            scopes=str(payload.get("scope") or "").split(),
        )

    async def fetch_user_info(self, access_credential: str) -> UserInfo:
        try:
            response = await self._http_client.get(
                GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_credential}"}
            )
        except httpx.HTTPError as exc:
            raise CredentialTransportError(f"User info request failed: {exc}") from exc
        if response.status_code >= 300:
            raise CredentialExchangeError(
                f"Failed to fetch user info ({response.status_code}): "
                f"{_safe_error_message(response)}"
            )
        data = response.json()
        sub = data.get("id") or data.get("sub")
        email = data.get("email")
        if not sub or not email:
            raise CredentialExchangeError("User info response is missing id or email")
        return UserInfo(sub=str(sub), email=str(email).lower())

    async def refresh(self, refresh_credential: str) -> RefreshedCredential:
        response = await self._post_token(
            {"refresh_token": refresh_credential, "grant_type": "refresh_token"}
        )
        if response.status_code in (400, 401):
            message = _safe_error_message(response)
            logger.warning("Refresh rejected by provider: %s", message)
            raise CredentialInvalid(message)
        if response.status_code >= 300:
            raise CredentialTransportError(
                f"Token refresh failed ({response.status_code}): {_safe_error_message(response)}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CredentialTransportError("Token endpoint returned invalid JSON") from exc
        access = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access, str) or not access.strip():
            raise CredentialTransportError("Token response is missing a non-empty access_token")
        return RefreshedCredential(
            access_credential=access.strip(), expires_at=_expires_at(payload)
        )
