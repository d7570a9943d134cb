"""Fan one logical event operation out to every linked account."""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog

from calcast.clients.google_calendar import CalendarClient
from calcast.config import Settings, get_settings
from calcast.core.credentials import CredentialStore
from calcast.core.errors import (
    CredentialInvalid,
    CredentialTransportError,
    DecryptionFailure,
    MappingNotFound,
    NoActiveAccounts,
    RemoteAuthError,
    RemoteCalendarError,
    RemoteNotFound,
)
from calcast.core.identity import EventIdentityRegistry, is_valid_event_uid, normalize_event_uid
from calcast.core.tokens import TokenLifecycleManager, TokenRound
from calcast.models.connection import ActiveConnection
from calcast.models.event import EventPayload
from calcast.models.workspace import WorkspaceScope

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class Operation(enum.StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class AccountState(enum.StrEnum):
    PENDING = "pending"
    TOKEN_RESOLVED = "token_resolved"
    REMOTE_CALL_ISSUED = "remote_call_issued"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FailureReason(enum.StrEnum):
    CREDENTIAL = "credential"
    TRANSPORT = "transport"
    REMOTE = "remote"
    TIMEOUT = "timeout"
    MAPPING = "mapping"
    DISCONNECTED = "disconnected"
    NOT_ATTEMPTED = "not-attempted"
    ERROR = "error"


_TRANSITIONS: dict[AccountState, set[AccountState]] = {
    AccountState.PENDING: {
        AccountState.TOKEN_RESOLVED,
        AccountState.SUCCEEDED,
        AccountState.FAILED,
    },
    AccountState.TOKEN_RESOLVED: {AccountState.REMOTE_CALL_ISSUED, AccountState.FAILED},
    AccountState.REMOTE_CALL_ISSUED: {AccountState.SUCCEEDED, AccountState.FAILED},
    AccountState.SUCCEEDED: set(),
    AccountState.FAILED: set(),
}


class _AttemptFinished(Exception):
    """Internal control flow: the attempt reached a terminal state."""


@dataclass
class AccountAttempt:
    """One account's progress through a single broadcast."""

    operation: Operation
    bot_event_uid: str
    external_account_id: str
    display_identifier: str
    connection: ActiveConnection | None = None
    credential_error: str | None = None
    native_event_id: str | None = None
    state: AccountState = AccountState.PENDING
    link: str | None = None
    reason: FailureReason | None = None
    detail: str | None = None
    reauth_required: bool = False

    def transition(self, new_state: AccountState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal transition {self.state} -> {new_state}")
        logger.debug(
            "Account state transition",
            operation=self.operation.value,
            uid=self.bot_event_uid,
            account=self.external_account_id,
            from_state=self.state.value,
            to_state=new_state.value,
        )
        self.state = new_state

    def succeed(self, detail: str | None = None) -> None:
        self.detail = detail
        self.transition(AccountState.SUCCEEDED)
        raise _AttemptFinished

    def fail(self, reason: FailureReason, detail: str | None = None, reauth: bool = False) -> None:
        self.reason = reason
        self.detail = detail
        self.reauth_required = reauth
        self.transition(AccountState.FAILED)
        logger.warning(
            "Account operation failed",
            operation=self.operation.value,
            uid=self.bot_event_uid,
            account=self.display_identifier,
            reason=reason.value,
            detail=detail,
        )
        raise _AttemptFinished


@dataclass
class AccountSuccess:
    account: str
    display_identifier: str
    native_event_id: str | None = None
    link: str | None = None
    note: str | None = None


@dataclass
class AccountFailure:
    account: str
    display_identifier: str
    reason: str
    detail: str | None = None
    reauth_required: bool = False


@dataclass
class Scoreboard:
    operation: Operation
    bot_event_uid: str
    accounts_attempted: int = 0
    succeeded: list[AccountSuccess] = field(default_factory=list)
    failed: list[AccountFailure] = field(default_factory=list)

    @classmethod
    def from_attempts(
        cls, operation: Operation, uid: str, attempts: list[AccountAttempt]
    ) -> Scoreboard:
        board = cls(operation=operation, bot_event_uid=uid, accounts_attempted=len(attempts))
        for attempt in attempts:
            if attempt.state == AccountState.SUCCEEDED:
                board.succeeded.append(
                    AccountSuccess(
                        account=attempt.external_account_id,
                        display_identifier=attempt.display_identifier,
                        native_event_id=attempt.native_event_id,
                        link=attempt.link,
                        note=attempt.detail,
                    )
                )
            else:
                board.failed.append(
                    AccountFailure(
                        account=attempt.external_account_id,
                        display_identifier=attempt.display_identifier,
                        reason=(attempt.reason or FailureReason.ERROR).value,
                        detail=attempt.detail,
                        reauth_required=attempt.reauth_required,
                    )
                )
        return board

    @property
    def reauth_accounts(self) -> list[str]:
        return [f.display_identifier for f in self.failed if f.reauth_required]

    def summary(self) -> str:
        return f"{len(self.succeeded)} of {self.accounts_attempted} accounts succeeded"

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation.value,
            "bot_event_uid": self.bot_event_uid,
            "accounts_attempted": self.accounts_attempted,
            "succeeded": [vars(s) for s in self.succeeded],
            "failed": [vars(f) for f in self.failed],
            "summary": self.summary(),
        }


class BroadcastOrchestrator:
    """Runs create/update/delete of one logical event against every account.

    Each account walks ``PENDING → TOKEN_RESOLVED → REMOTE_CALL_ISSUED →
    SUCCEEDED | FAILED`` independently. Accounts run concurrently up to
    ``broadcast_max_concurrency``; every external call is bounded by
    ``call_timeout_seconds``. Once ``broadcast_deadline_seconds`` has elapsed,
    accounts that have not started are reported ``not-attempted`` while
    in-flight ones are allowed to finish, so a remote create is never left
    without its mapping write.

    Per-account failures land in the :class:`Scoreboard`. Only preconditions
    raise: an unauthorized scope, no active accounts, or an unknown uid.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        tokens: TokenLifecycleManager,
        registry: EventIdentityRegistry,
        calendar: CalendarClient,
        settings: Settings | None = None,
    ) -> None:
        self.credentials = credentials
        self.tokens = tokens
        self.registry = registry
        self.calendar = calendar
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def broadcast_create(
        self, scope: WorkspaceScope, uid: str | None, payload: EventPayload
    ) -> Scoreboard:
        scope.require_authorized()
        event = payload.normalized(self.settings.default_event_duration_minutes)
        if uid is not None:
            uid = await self._fresh_uid(scope, uid)
        connections = await self._active_connections(scope)
        uid = uid or self.registry.allocate().short

        body = event.to_google_body()
        body["extendedProperties"] = {"private": {"calcast_uid": uid}}

        attempts = [
            AccountAttempt(
                operation=Operation.CREATE,
                bot_event_uid=uid,
                external_account_id=conn.external_account_id,
                display_identifier=conn.display_identifier,
                connection=conn,
            )
            for conn in connections
        ]
        return await self._fan_out(scope, Operation.CREATE, uid, attempts, body)

    async def broadcast_update(
        self, scope: WorkspaceScope, uid: str, payload: EventPayload
    ) -> Scoreboard:
        scope.require_authorized()
        body = payload.patch_body(self.settings.default_event_duration_minutes)
        if not body:
            raise ValueError("No changes to apply")
        attempts = await self._mapped_attempts(scope, Operation.UPDATE, uid)
        return await self._fan_out(scope, Operation.UPDATE, uid, attempts, body)

    async def broadcast_delete(self, scope: WorkspaceScope, uid: str) -> Scoreboard:
        scope.require_authorized()
        attempts = await self._mapped_attempts(scope, Operation.DELETE, uid)
        return await self._fan_out(scope, Operation.DELETE, uid, attempts, None)

    # ------------------------------------------------------------------
    # Target resolution
    # ------------------------------------------------------------------

    async def _fresh_uid(self, scope: WorkspaceScope, uid: str) -> str:
        """Validate a caller-supplied uid and refuse one that is already in use."""
        if not is_valid_event_uid(uid):
            raise ValueError(f"Invalid event uid: {uid!r}")
        uid = normalize_event_uid(uid)
        if await self._call(self.registry.mappings_for(scope.workspace_id, uid)):
            raise ValueError(f"Event uid {uid} is already in use")
        return uid

    async def _active_connections(self, scope: WorkspaceScope) -> list[ActiveConnection]:
        connections = await self._call(
            self.credentials.list_active_connections(scope.workspace_id)
        )
        if not connections:
            raise NoActiveAccounts(scope.workspace_id)
        return connections

    async def _mapped_attempts(
        self, scope: WorkspaceScope, operation: Operation, uid: str
    ) -> list[AccountAttempt]:
        """One attempt per account holding a mapping for ``uid``.

        Accounts missing from the active list are looked up one by one. A
        record whose credential no longer decrypts fails as a credential error
        and keeps its mapping; a revoked or absent record has a stale mapping.
        """
        workspace_id = scope.workspace_id
        active = {
            c.external_account_id: c
            for c in await self._call(self.credentials.list_active_connections(workspace_id))
        }
        mappings = await self._call(self.registry.mappings_for(workspace_id, uid))
        if not mappings:
            if not active:
                raise NoActiveAccounts(workspace_id)
            raise MappingNotFound(workspace_id, uid)

        attempts = []
        for mapping in mappings:
            account_id = mapping.external_account_id
            conn = active.get(account_id)
            credential_error = None
            display = conn.display_identifier if conn else None
            if conn is None:
                try:
                    conn = await self._call(
                        self.credentials.get_connection(workspace_id, account_id)
                    )
                except DecryptionFailure as exc:
                    credential_error = str(exc)
                    display = await self._call(
                        self.credentials.display_identifier_for(workspace_id, account_id)
                    )
                else:
                    display = conn.display_identifier if conn else None
            attempts.append(
                AccountAttempt(
                    operation=operation,
                    bot_event_uid=uid,
                    external_account_id=account_id,
                    display_identifier=display or f"(disconnected: {account_id})",
                    connection=conn,
                    credential_error=credential_error,
                    native_event_id=mapping.native_event_id,
                )
            )

        if not active and all(a.credential_error is None for a in attempts):
            raise NoActiveAccounts(workspace_id)
        return attempts

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def _call(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.settings.call_timeout_seconds)

    async def _fan_out(
        self,
        scope: WorkspaceScope,
        operation: Operation,
        uid: str,
        attempts: list[AccountAttempt],
        body: dict[str, Any] | None,
    ) -> Scoreboard:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.broadcast_deadline_seconds
        semaphore = asyncio.Semaphore(max(1, self.settings.broadcast_max_concurrency))
        token_round = self.tokens.round()

        logger.info(
            "Broadcast started",
            operation=operation.value,
            workspace=scope.workspace_id,
            actor=scope.actor_id,
            uid=uid,
            accounts=len(attempts),
        )

        async def guarded(attempt: AccountAttempt) -> None:
            async with semaphore:
                if loop.time() >= deadline:
                    attempt.reason = FailureReason.NOT_ATTEMPTED
                    attempt.detail = "Broadcast deadline elapsed before this account started"
                    attempt.transition(AccountState.FAILED)
                    return
                await self._run_attempt(scope, attempt, token_round, body)

        await asyncio.gather(*(guarded(a) for a in attempts))

        board = Scoreboard.from_attempts(operation, uid, attempts)
        logger.info(
            "Broadcast finished",
            operation=operation.value,
            workspace=scope.workspace_id,
            uid=uid,
            succeeded=len(board.succeeded),
            failed=len(board.failed),
        )
        return board

    async def _run_attempt(
        self,
        scope: WorkspaceScope,
        attempt: AccountAttempt,
        token_round: TokenRound,
        body: dict[str, Any] | None,
    ) -> None:
        try:
            access = await self._resolve_credential(scope, attempt, token_round)
            await self._remote_write(attempt, access, body)
            await self._reconcile_mapping(scope, attempt)
        except _AttemptFinished:
            return
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Unexpected error during account operation",
                operation=attempt.operation.value,
                uid=attempt.bot_event_uid,
                account=attempt.external_account_id,
            )
            if attempt.state not in (AccountState.SUCCEEDED, AccountState.FAILED):
                attempt.reason = FailureReason.ERROR
                attempt.detail = str(exc)
                attempt.transition(AccountState.FAILED)

    async def _resolve_credential(
        self, scope: WorkspaceScope, attempt: AccountAttempt, token_round: TokenRound
    ) -> str:
        if attempt.credential_error is not None:
            attempt.fail(
                FailureReason.CREDENTIAL,
                "Stored credential is unreadable, please reconnect this account",
                reauth=True,
            )
        conn = attempt.connection
        if conn is None:
            if attempt.operation == Operation.DELETE:
                # Account was disconnected after the event was created; the
                # mapping is stale and nothing remote can be reached.
                await self._call(
                    self.registry.remove_mapping(
                        scope.workspace_id, attempt.bot_event_uid, attempt.external_account_id
                    )
                )
                attempt.succeed("Mapping removed (account disconnected)")
            attempt.fail(FailureReason.DISCONNECTED, "Connection no longer active")

        try:
            resolution = await self._call(token_round.resolve(conn))
        except CredentialTransportError as exc:
            attempt.fail(FailureReason.TRANSPORT, str(exc))
        except CredentialInvalid as exc:
            attempt.fail(FailureReason.CREDENTIAL, str(exc), reauth=True)
        except TimeoutError:
            attempt.fail(FailureReason.TIMEOUT, "Credential refresh timed out")

        if not resolution.ok:
            attempt.fail(
                FailureReason.CREDENTIAL,
                "Token refresh failed, please reconnect this account",
                reauth=resolution.reauth_required,
            )
        attempt.transition(AccountState.TOKEN_RESOLVED)
        return resolution.access_credential

    async def _remote_write(
        self, attempt: AccountAttempt, access: str, body: dict[str, Any] | None
    ) -> None:
        attempt.transition(AccountState.REMOTE_CALL_ISSUED)
        try:
            if attempt.operation == Operation.CREATE:
                remote = await self._call(self.calendar.create_event(access, body or {}))
                attempt.native_event_id = remote.native_event_id
                attempt.link = remote.link
            elif attempt.operation == Operation.UPDATE:
                remote = await self._call(
                    self.calendar.update_event(access, attempt.native_event_id, body or {})
                )
                attempt.native_event_id = remote.native_event_id or attempt.native_event_id
                attempt.link = remote.link
            else:
                await self._call(self.calendar.delete_event(access, attempt.native_event_id))
        except RemoteNotFound as exc:
            if attempt.operation == Operation.DELETE:
                attempt.detail = "Already deleted"
                return
            attempt.fail(FailureReason.REMOTE, f"Event not found in calendar: {exc}")
        except RemoteAuthError as exc:
            attempt.fail(FailureReason.CREDENTIAL, str(exc), reauth=True)
        except RemoteCalendarError as exc:
            attempt.fail(FailureReason.REMOTE, str(exc))
        except TimeoutError:
            if attempt.operation == Operation.CREATE:
                logger.error(
                    "Remote create timed out; an unmapped event may exist",
                    uid=attempt.bot_event_uid,
                    account=attempt.external_account_id,
                )
            attempt.fail(FailureReason.TIMEOUT, "Calendar request timed out")

    async def _reconcile_mapping(self, scope: WorkspaceScope, attempt: AccountAttempt) -> None:
        """Bring the mapping in line with a successful remote write."""
        try:
            if attempt.operation == Operation.DELETE:
                await self._call(
                    self.registry.remove_mapping(
                        scope.workspace_id, attempt.bot_event_uid, attempt.external_account_id
                    )
                )
            else:
                await self._call(
                    self.registry.record_mapping(
                        scope.workspace_id,
                        attempt.bot_event_uid,
                        attempt.external_account_id,
                        attempt.native_event_id,
                    )
                )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Mapping write failed after successful remote call; identity map is now stale",
                operation=attempt.operation.value,
                workspace=scope.workspace_id,
                uid=attempt.bot_event_uid,
                account=attempt.external_account_id,
                native_event_id=attempt.native_event_id,
                error=repr(exc),
            )
            attempt.fail(
                FailureReason.MAPPING, f"Remote call succeeded but mapping write failed: {exc}"
            )
        attempt.succeed(attempt.detail)
