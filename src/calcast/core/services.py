"""Process-wide wiring of stores, clients and orchestrators."""

from __future__ import annotations

from dataclasses import dataclass

from calcast.clients.google_calendar import CalendarClient, GoogleCalendarClient
from calcast.clients.google_oauth import GoogleOAuthClient
from calcast.config import Settings, get_settings
from calcast.core.broadcast import BroadcastOrchestrator
from calcast.core.credentials import CredentialStore
from calcast.core.handshake import HandshakeGuard
from calcast.core.identity import EventIdentityRegistry
from calcast.core.linking import AccountLinker
from calcast.core.tokens import TokenLifecycleManager
from calcast.store.base import KeyValueStore, get_store


@dataclass
class Services:
    credentials: CredentialStore
    registry: EventIdentityRegistry
    tokens: TokenLifecycleManager
    handshake: HandshakeGuard
    linker: AccountLinker
    orchestrator: BroadcastOrchestrator
    oauth: GoogleOAuthClient
    calendar: CalendarClient

    async def aclose(self) -> None:
        """Close the HTTP clients owned by the provider clients."""
        await self.oauth.aclose()
        await self.calendar.aclose()


def build_services(
    settings: Settings | None = None,
    store: KeyValueStore | None = None,
    oauth: GoogleOAuthClient | None = None,
    calendar: CalendarClient | None = None,
) -> Services:
    settings = settings or get_settings()
    store = store or get_store()
    oauth = oauth or GoogleOAuthClient(settings)
    calendar = calendar or GoogleCalendarClient(settings)

    credentials = CredentialStore(store)
    registry = EventIdentityRegistry(store)
    tokens = TokenLifecycleManager(credentials, oauth, settings)
    handshake = HandshakeGuard(store, settings)
    return Services(
        credentials=credentials,
        registry=registry,
        tokens=tokens,
        handshake=handshake,
        linker=AccountLinker(credentials, registry, handshake, oauth),
        orchestrator=BroadcastOrchestrator(credentials, tokens, registry, calendar, settings),
        oauth=oauth,
        calendar=calendar,
    )


_services: Services | None = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


async def shutdown_services() -> None:
    global _services
    if _services is not None:
        await _services.aclose()
        _services = None


def reset_services() -> None:
    global _services
    _services = None
