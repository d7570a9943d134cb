"""Shared fixtures and fakes for the calcast unit tests."""

from __future__ import annotations

import itertools
import os
from datetime import timedelta

import pytest

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key")

from calcast.clients.google_calendar import RemoteEvent  # noqa: E402
from calcast.clients.google_oauth import RefreshedCredential  # noqa: E402
from calcast.config import Settings  # noqa: E402
from calcast.core.crypto import derive_key  # noqa: E402
from calcast.core.errors import (  # noqa: E402
    CredentialInvalid,
    CredentialTransportError,
    RemoteCalendarError,
)
from calcast.models.base import utcnow  # noqa: E402
from calcast.store.memory import MemoryStore  # noqa: E402


class FakeRefreshClient:
    """Refresh client keyed by refresh credential.

    ``rejected`` refresh credentials raise CredentialInvalid, ``unreachable``
    ones raise CredentialTransportError; everything else gets
    ``access-<refresh>``.
    """

    def __init__(self, rejected=(), unreachable=()):
        self.rejected = set(rejected)
        self.unreachable = set(unreachable)
        self.calls: list[str] = []
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True

    async def refresh(self, refresh_credential: str) -> RefreshedCredential:
        self.calls.append(refresh_credential)
        if refresh_credential in self.rejected:
            raise CredentialInvalid("invalid_grant")
        if refresh_credential in self.unreachable:
            raise CredentialTransportError("connection reset")
        return RefreshedCredential(
            access_credential=f"access-{refresh_credential}",
            expires_at=utcnow() + timedelta(hours=1),
        )


class FakeCalendar:
    """In-memory calendar keyed by access credential.

    ``failures`` maps an access credential to the exception its calls raise.
    """

    def __init__(self, failures=None):
        self.failures = dict(failures or {})
        self.events: dict[str, dict[str, dict]] = {}
        self.calls: list[tuple[str, str, str | None]] = []
        self._ids = itertools.count(1)
        self.closed = False

    async def aclose(self):
        self.closed = True

    def _check(self, access: str) -> None:
        if access in self.failures:
            raise self.failures[access]

    async def create_event(self, access_credential, body):
        self.calls.append(("create", access_credential, None))
        self._check(access_credential)
        native_id = f"native-{next(self._ids)}"
        self.events.setdefault(access_credential, {})[native_id] = dict(body)
        return RemoteEvent(native_event_id=native_id, link=f"https://cal.example/{native_id}")

    async def update_event(self, access_credential, native_event_id, body):
        self.calls.append(("update", access_credential, native_event_id))
        self._check(access_credential)
        self.events.setdefault(access_credential, {}).setdefault(native_event_id, {}).update(body)
        return RemoteEvent(native_event_id=native_event_id)

    async def delete_event(self, access_credential, native_event_id):
        self.calls.append(("delete", access_credential, native_event_id))
        self._check(access_credential)
        self.events.get(access_credential, {}).pop(native_event_id, None)


def remote_error(status_code: int = 503) -> RemoteCalendarError:
    return RemoteCalendarError(f"Calendar API error ({status_code})", status_code)


@pytest.fixture
def settings():
    return Settings(
        secret_key="test-secret-key-for-testing",
        encryption_key="test-encryption-key",
        store_backend="memory",
        call_timeout_seconds=2.0,
        broadcast_deadline_seconds=10.0,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cipher():
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM

    return AESGCM(derive_key("test-encryption-key"))
