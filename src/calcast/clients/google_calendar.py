"""Google Calendar v3 client for single-event writes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from calcast.config import Settings, get_settings
from calcast.core.errors import RemoteAuthError, RemoteCalendarError, RemoteNotFound

logger = logging.getLogger(__name__)

CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"


@dataclass
class RemoteEvent:
    native_event_id: str
    link: str | None = None


class CalendarClient(Protocol):
    async def create_event(self, access_credential: str, body: dict[str, Any]) -> RemoteEvent: ...

    async def update_event(
        self, access_credential: str, native_event_id: str, body: dict[str, Any]
    ) -> RemoteEvent: ...

    async def delete_event(self, access_credential: str, native_event_id: str) -> None: ...

    async def aclose(self) -> None: ...


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return " ".join(error["message"].split())[:200]
    text = response.text.strip()
    return " ".join(text.split())[:200] if text else "Request failed without an error payload"


class GoogleCalendarClient:
    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._http_client = http_client or httpx.AsyncClient(
            timeout=self.settings.http_timeout_seconds
        )
        self.calendar_id = quote(self.settings.google_calendar_id, safe="")

    async def aclose(self) -> None:
        await self._http_client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        access_credential: str,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{CALENDAR_API_BASE}/calendars/{self.calendar_id}/events{path}"
        try:
            response = await self._http_client.request(
                method,
                url,
                json=json_body,
                headers={"Authorization": f"Bearer {access_credential}"},
            )
        except httpx.HTTPError as exc:
            raise RemoteCalendarError(f"Calendar request failed: {exc}") from exc

        if response.status_code in (404, 410):
            raise RemoteNotFound(_error_message(response), response.status_code)
        if response.status_code == 401:
            raise RemoteAuthError(_error_message(response), response.status_code)
        if response.status_code >= 300:
            raise RemoteCalendarError(
                f"Calendar API error ({response.status_code}): {_error_message(response)}",
                response.status_code,
            )
        return response

    @staticmethod
    def _remote_event(response: httpx.Response) -> RemoteEvent:
        data = response.json()
        return RemoteEvent(native_event_id=data["id"], link=data.get("htmlLink"))

    async def create_event(self, access_credential: str, body: dict[str, Any]) -> RemoteEvent:
        response = await self._request("POST", "", access_credential, body)
        return self._remote_event(response)

    async def update_event(
        self, access_credential: str, native_event_id: str, body: dict[str, Any]
    ) -> RemoteEvent:
        path = f"/{quote(native_event_id, safe='')}"
        response = await self._request("PATCH", path, access_credential, body)
        return self._remote_event(response)

    async def delete_event(self, access_credential: str, native_event_id: str) -> None:
        path = f"/{quote(native_event_id, safe='')}"
        await self._request("DELETE", path, access_credential)
