"""Tests for the broadcast orchestrator: fan-out, isolation, identity mapping."""

from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key")

from calcast.core.broadcast import (  # noqa: E402
    AccountAttempt,
    AccountState,
    BroadcastOrchestrator,
    Operation,
)
from calcast.core.credentials import CredentialStore  # noqa: E402
from calcast.core.errors import (  # noqa: E402
    MappingNotFound,
    NoActiveAccounts,
    RemoteAuthError,
    RemoteNotFound,
    WorkspaceNotAuthorized,
)
from calcast.core.identity import EventIdentityRegistry, is_valid_event_uid  # noqa: E402
from calcast.core.tokens import TokenLifecycleManager  # noqa: E402
from calcast.models.event import EventPayload  # noqa: E402
from calcast.models.workspace import WorkspaceScope  # noqa: E402
from conftest import FakeCalendar, FakeRefreshClient, remote_error  # noqa: E402

WS = "chat-42"
SCOPE = WorkspaceScope(workspace_id=WS, actor_id="user-1")
PAYLOAD = EventPayload(
    title="Team dinner",
    start=datetime(2026, 11, 3, 19, 0, tzinfo=UTC),
    location="Luigi's",
)


class Harness:
    def __init__(self, store, cipher, settings, refresh=None, calendar=None):
        self.store = store
        self.credentials = CredentialStore(store, cipher)
        self.registry = EventIdentityRegistry(store)
        self.refresh = refresh or FakeRefreshClient()
        self.calendar = calendar or FakeCalendar()
        self.tokens = TokenLifecycleManager(self.credentials, self.refresh, settings)
        self.orchestrator = BroadcastOrchestrator(
            self.credentials, self.tokens, self.registry, self.calendar, settings
        )

    async def link(self, *names: str) -> None:
        for name in names:
            await self.credentials.store_connection(
                WS, f"sub-{name}", f"{name}@example.com", f"refresh-{name}"
            )

    async def corrupt(self, name: str) -> None:
        key = f"conn:{WS}:sub-{name}"
        raw = await self.store.get(key)
        field = '"refresh_credential_enc":"'
        await self.store.put(key, raw.replace(field, field + "AAAA"))

    async def mapped_accounts(self, uid: str) -> dict[str, str]:
        return {
            m.external_account_id: m.native_event_id
            for m in await self.registry.mappings_for(WS, uid)
        }


@pytest.fixture
def make(store, cipher, settings):
    def _make(**kwargs):
        return Harness(store, cipher, settings, **kwargs)

    return _make


def _accounts(items) -> list[str]:
    return sorted(i.account for i in items)


# ── Create ────────────────────────────────────────────────────────────────────


async def test_create_reaches_every_account(make):
    h = make()
    await h.link("a", "b", "c")
    board = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)

    assert is_valid_event_uid(board.bot_event_uid)
    assert board.accounts_attempted == 3
    assert _accounts(board.succeeded) == ["sub-a", "sub-b", "sub-c"]
    assert board.failed == []
    assert board.summary() == "3 of 3 accounts succeeded"
    assert set(await h.mapped_accounts(board.bot_event_uid)) == {"sub-a", "sub-b", "sub-c"}


async def test_create_body_carries_uid_and_default_end(make):
    h = make()
    await h.link("a")
    board = await h.orchestrator.broadcast_create(SCOPE, "EVT-0000abcd", PAYLOAD)
    (body,) = h.calendar.events["access-refresh-a"].values()

    assert board.bot_event_uid == "EVT-0000abcd"
    assert body["summary"] == "Team dinner"
    assert body["end"]["dateTime"] == "2026-11-03T20:00:00+00:00"
    assert body["extendedProperties"]["private"]["calcast_uid"] == "EVT-0000abcd"


async def test_create_with_rejected_refresh_isolates_failure(make):
    h = make(refresh=FakeRefreshClient(rejected={"refresh-b"}))
    await h.link("a", "b", "c")
    board = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)

    assert board.accounts_attempted == 3
    assert _accounts(board.succeeded) == ["sub-a", "sub-c"]
    assert [(f.account, f.reason) for f in board.failed] == [("sub-b", "credential")]
    assert board.failed[0].reauth_required is True
    assert board.reauth_accounts == ["b@example.com"]
    assert set(await h.mapped_accounts(board.bot_event_uid)) == {"sub-a", "sub-c"}


async def test_create_with_remote_server_error(make):
    h = make(calendar=FakeCalendar(failures={"access-refresh-b": remote_error(503)}))
    await h.link("a", "b")
    board = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)

    assert board.accounts_attempted == 2
    assert _accounts(board.succeeded) == ["sub-a"]
    assert [(f.account, f.reason) for f in board.failed] == [("sub-b", "remote")]
    assert board.failed[0].reauth_required is False
    mapped = await h.mapped_accounts(board.bot_event_uid)
    assert mapped == {"sub-a": board.succeeded[0].native_event_id}


async def test_create_with_transport_failure_on_refresh(make):
    h = make(refresh=FakeRefreshClient(unreachable={"refresh-a"}))
    await h.link("a", "b")
    board = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    assert [(f.account, f.reason) for f in board.failed] == [("sub-a", "transport")]
    assert board.failed[0].reauth_required is False


async def test_remote_auth_error_requires_reauth(make):
    h = make(calendar=FakeCalendar(failures={"access-refresh-a": RemoteAuthError("no", 401)}))
    await h.link("a")
    board = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    assert board.failed[0].reason == "credential"
    assert board.failed[0].reauth_required is True


async def test_unexpected_error_is_contained(make):
    h = make(calendar=FakeCalendar(failures={"access-refresh-a": RuntimeError("boom")}))
    await h.link("a", "b")
    board = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    assert [(f.account, f.reason) for f in board.failed] == [("sub-a", "error")]
    assert _accounts(board.succeeded) == ["sub-b"]


async def test_mapping_write_failure_is_reported(make):
    h = make()
    await h.link("a")
    h.registry.record_mapping = AsyncMock(side_effect=ConnectionError("store down"))
    board = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    assert [(f.account, f.reason) for f in board.failed] == [("sub-a", "mapping")]
    assert len(h.calendar.events["access-refresh-a"]) == 1


async def test_remote_timeout(make, settings):
    class HangingCalendar(FakeCalendar):
        async def create_event(self, access_credential, body):
            await asyncio.sleep(10)

    settings.call_timeout_seconds = 0.05
    h = make(calendar=HangingCalendar())
    await h.link("a")
    board = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    assert board.failed[0].reason == "timeout"


async def test_accounts_after_deadline_are_not_attempted(make, settings):
    class SlowCalendar(FakeCalendar):
        async def create_event(self, access_credential, body):
            await asyncio.sleep(0.2)
            return await super().create_event(access_credential, body)

    settings.broadcast_max_concurrency = 1
    settings.broadcast_deadline_seconds = 0.1
    h = make(calendar=SlowCalendar())
    await h.link("a", "b", "c")
    board = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)

    assert board.accounts_attempted == 3
    assert len(board.succeeded) == 1
    assert sorted(f.reason for f in board.failed) == ["not-attempted", "not-attempted"]
    assert len(await h.mapped_accounts(board.bot_event_uid)) == 1


async def test_refresh_happens_once_per_account(make):
    h = make()
    await h.link("a", "b")
    await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    assert sorted(h.refresh.calls) == ["refresh-a", "refresh-b"]

    await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    assert len(h.refresh.calls) == 2


async def test_create_invalid_payload_raises_before_any_call(make):
    h = make()
    await h.link("a")
    bad = EventPayload(
        title="x",
        start=datetime(2026, 1, 2, 10, tzinfo=UTC),
        end=datetime(2026, 1, 2, 9, tzinfo=UTC),
    )
    with pytest.raises(ValueError, match="before"):
        await h.orchestrator.broadcast_create(SCOPE, None, bad)
    assert h.calendar.calls == []


# ── Preconditions ─────────────────────────────────────────────────────────────


async def test_unauthorized_scope_makes_no_calls(make):
    h = make()
    await h.link("a")
    scope = WorkspaceScope(workspace_id=WS, actor_id="user-1", authorized=False)
    with pytest.raises(WorkspaceNotAuthorized):
        await h.orchestrator.broadcast_create(scope, None, PAYLOAD)
    assert h.calendar.calls == []
    assert h.refresh.calls == []


async def test_no_active_accounts(make):
    h = make()
    with pytest.raises(NoActiveAccounts):
        await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)


async def test_update_unknown_uid(make):
    h = make()
    await h.link("a")
    with pytest.raises(MappingNotFound):
        await h.orchestrator.broadcast_update(SCOPE, "EVT-ffffffff", EventPayload(title="New"))


async def test_update_without_changes(make):
    h = make()
    await h.link("a")
    with pytest.raises(ValueError, match="No changes"):
        await h.orchestrator.broadcast_update(SCOPE, "EVT-ffffffff", EventPayload())


# ── Update ────────────────────────────────────────────────────────────────────


async def test_update_targets_mapped_accounts_only(make):
    h = make()
    await h.link("a", "b")
    created = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    await h.link("c")

    board = await h.orchestrator.broadcast_update(
        SCOPE, created.bot_event_uid, EventPayload(title="Team lunch")
    )
    assert _accounts(board.succeeded) == ["sub-a", "sub-b"]
    updates = [c for c in h.calendar.calls if c[0] == "update"]
    assert {c[1] for c in updates} == {"access-refresh-a", "access-refresh-b"}
    for access in ("access-refresh-a", "access-refresh-b"):
        (body,) = h.calendar.events[access].values()
        assert body["summary"] == "Team lunch"
        assert body["location"] == "Luigi's"


async def test_update_on_disconnected_account_fails(make):
    h = make()
    await h.link("a", "b")
    created = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    await h.credentials.revoke(WS, "sub-b")

    board = await h.orchestrator.broadcast_update(
        SCOPE, created.bot_event_uid, EventPayload(title="Moved")
    )
    assert _accounts(board.succeeded) == ["sub-a"]
    assert [(f.account, f.reason) for f in board.failed] == [("sub-b", "disconnected")]


async def test_update_missing_remote_event(make):
    h = make()
    await h.link("a")
    created = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    h.calendar.failures["access-refresh-a"] = RemoteNotFound("gone", 404)
    board = await h.orchestrator.broadcast_update(
        SCOPE, created.bot_event_uid, EventPayload(title="Moved")
    )
    assert board.failed[0].reason == "remote"


# ── Delete ────────────────────────────────────────────────────────────────────


async def test_delete_removes_every_mapping(make):
    h = make()
    await h.link("a", "b", "c")
    created = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)

    board = await h.orchestrator.broadcast_delete(SCOPE, created.bot_event_uid)
    assert board.accounts_attempted == 3
    assert board.failed == []
    assert await h.mapped_accounts(created.bot_event_uid) == {}
    assert all(not events for events in h.calendar.events.values())


async def test_delete_mapped_to_one_of_three(make):
    h = make()
    await h.link("a", "b", "c")
    await h.registry.record_mapping(WS, "EVT-0000beef", "sub-b", "native-only-b")

    board = await h.orchestrator.broadcast_delete(SCOPE, "EVT-0000beef")
    assert board.accounts_attempted == 1
    assert _accounts(board.succeeded) == ["sub-b"]
    assert await h.mapped_accounts("EVT-0000beef") == {}
    assert [c for c in h.calendar.calls if c[0] == "delete"] == [
        ("delete", "access-refresh-b", "native-only-b")
    ]


async def test_delete_already_gone_counts_as_success(make):
    h = make()
    await h.link("a")
    created = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    h.calendar.failures["access-refresh-a"] = RemoteNotFound("gone", 410)

    board = await h.orchestrator.broadcast_delete(SCOPE, created.bot_event_uid)
    assert _accounts(board.succeeded) == ["sub-a"]
    assert board.succeeded[0].note == "Already deleted"
    assert await h.mapped_accounts(created.bot_event_uid) == {}


async def test_delete_remote_failure_keeps_mapping(make):
    h = make()
    await h.link("a", "b")
    created = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    h.calendar.failures["access-refresh-b"] = remote_error(500)

    board = await h.orchestrator.broadcast_delete(SCOPE, created.bot_event_uid)
    assert _accounts(board.succeeded) == ["sub-a"]
    assert set(await h.mapped_accounts(created.bot_event_uid)) == {"sub-b"}


async def test_delete_with_disconnected_account_drops_stale_mapping(make):
    h = make()
    await h.link("a", "b")
    created = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    await h.credentials.revoke(WS, "sub-b")

    board = await h.orchestrator.broadcast_delete(SCOPE, created.bot_event_uid)
    assert _accounts(board.succeeded) == ["sub-a", "sub-b"]
    assert await h.mapped_accounts(created.bot_event_uid) == {}
    assert not any(c[1] == "access-refresh-b" for c in h.calendar.calls if c[0] == "delete")


async def test_revoke_and_cascade_hides_account_from_every_uid(make):
    h = make()
    await h.link("a", "b")
    first = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    second = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)

    await h.credentials.revoke(WS, "sub-a")
    await h.registry.cascade_remove_for_account(WS, "sub-a")
    for uid in (first.bot_event_uid, second.bot_event_uid):
        assert set(await h.mapped_accounts(uid)) == {"sub-b"}


async def test_relink_keeps_connection_count(make):
    h = make()
    await h.link("a", "b")
    await h.link("a")
    assert len(await h.credentials.list_active_connections(WS)) == 2


# ── Attempt state machine ─────────────────────────────────────────────────────


def test_illegal_transition_raises():
    attempt = AccountAttempt(
        operation=Operation.CREATE,
        bot_event_uid="EVT-00000001",
        external_account_id="sub-a",
        display_identifier="a@example.com",
    )
    with pytest.raises(RuntimeError, match="Illegal transition"):
        attempt.transition(AccountState.REMOTE_CALL_ISSUED)


async def test_scoreboard_to_dict(make):
    h = make(calendar=FakeCalendar(failures={"access-refresh-b": remote_error(502)}))
    await h.link("a", "b")
    board = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    data = board.to_dict()
    assert data["operation"] == "create"
    assert data["accounts_attempted"] == 2
    assert data["succeeded"][0]["account"] == "sub-a"
    assert data["failed"][0]["reason"] == "remote"
    assert data["summary"] == "1 of 2 accounts succeeded"


# ── Unreadable credentials ────────────────────────────────────────────────────


async def test_delete_with_unreadable_credential_keeps_mapping(make):
    h = make()
    await h.link("a", "b")
    created = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    await h.corrupt("b")

    board = await h.orchestrator.broadcast_delete(SCOPE, created.bot_event_uid)
    assert _accounts(board.succeeded) == ["sub-a"]
    assert [(f.account, f.reason, f.reauth_required) for f in board.failed] == [
        ("sub-b", "credential", True)
    ]
    assert board.failed[0].display_identifier == "b@example.com"
    assert set(await h.mapped_accounts(created.bot_event_uid)) == {"sub-b"}
    assert len(h.calendar.events["access-refresh-b"]) == 1


async def test_update_with_unreadable_credential_requires_reauth(make):
    h = make()
    await h.link("a", "b")
    created = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    await h.corrupt("b")

    board = await h.orchestrator.broadcast_update(
        SCOPE, created.bot_event_uid, EventPayload(title="Moved")
    )
    assert [(f.account, f.reason, f.reauth_required) for f in board.failed] == [
        ("sub-b", "credential", True)
    ]
    assert board.reauth_accounts == ["b@example.com"]


async def test_delete_when_only_account_is_unreadable(make):
    h = make()
    await h.link("a")
    created = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    await h.corrupt("a")

    board = await h.orchestrator.broadcast_delete(SCOPE, created.bot_event_uid)
    assert [(f.account, f.reason) for f in board.failed] == [("sub-a", "credential")]
    assert set(await h.mapped_accounts(created.bot_event_uid)) == {"sub-a"}


# ── Caller-supplied uids ──────────────────────────────────────────────────────


async def test_create_normalizes_explicit_uid(make):
    h = make()
    await h.link("a")
    board = await h.orchestrator.broadcast_create(SCOPE, "EVT-ABCD1234", PAYLOAD)
    assert board.bot_event_uid == "EVT-abcd1234"
    assert set(await h.mapped_accounts("EVT-abcd1234")) == {"sub-a"}

    deleted = await h.orchestrator.broadcast_delete(SCOPE, "EVT-abcd1234")
    assert _accounts(deleted.succeeded) == ["sub-a"]


async def test_create_rejects_malformed_uid(make):
    h = make()
    await h.link("a")
    with pytest.raises(ValueError, match="Invalid event uid"):
        await h.orchestrator.broadcast_create(SCOPE, "dinner-123", PAYLOAD)
    assert h.calendar.calls == []


async def test_create_rejects_uid_in_use(make):
    h = make()
    await h.link("a")
    await h.orchestrator.broadcast_create(SCOPE, "EVT-0000abcd", PAYLOAD)
    with pytest.raises(ValueError, match="already in use"):
        await h.orchestrator.broadcast_create(SCOPE, "EVT-0000ABCD", PAYLOAD)
    assert len(h.calendar.events["access-refresh-a"]) == 1


# ── Store timeouts ────────────────────────────────────────────────────────────


async def test_slow_store_read_is_bounded(make, settings):
    async def hang(*args, **kwargs):
        await asyncio.sleep(10)

    settings.call_timeout_seconds = 0.05
    h = make()
    await h.link("a")
    h.registry.mappings_for = hang
    with pytest.raises(TimeoutError):
        await h.orchestrator.broadcast_delete(SCOPE, "EVT-00000001")


async def test_update_switching_to_all_day_sends_dates_only(make):
    h = make()
    await h.link("a")
    created = await h.orchestrator.broadcast_create(SCOPE, None, PAYLOAD)
    await h.orchestrator.broadcast_update(
        SCOPE,
        created.bot_event_uid,
        EventPayload(all_day=True, start_date=datetime(2026, 11, 4).date()),
    )
    (body,) = h.calendar.events["access-refresh-a"].values()
    assert body["start"] == {"date": "2026-11-04", "dateTime": None}
    assert body["end"] == {"date": "2026-11-05", "dateTime": None}
