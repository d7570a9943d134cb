"""Event payloads and logical event identifiers."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any

from pydantic import BaseModel


class EventUid(BaseModel):
    """A logical event id: short ``EVT-xxxxxxxx`` form plus a canonical uuid hex."""

    short: str
    canonical: str

    def __str__(self) -> str:
        return self.short


class EventPayload(BaseModel):
    """Fields of one logical event.

    For updates only the fields actually provided are sent (PATCH semantics),
    so every field is optional here and :meth:`normalized` enforces what a
    create needs.
    """

    title: str | None = None
    all_day: bool = False
    start: datetime | None = None
    end: datetime | None = None
    start_date: date | None = None
    end_date: date | None = None
    location: str | None = None
    notes: str | None = None
    timezone: str | None = None

    def normalized(self, default_duration_minutes: int = 60) -> EventPayload:
        """Return a complete copy: default end filled in, ordering checked."""
        if not self.title:
            raise ValueError("Event title is required")
        data = self.model_dump(exclude_unset=True)
        if self.all_day:
            if self.start_date is None:
                raise ValueError("All-day event requires start_date")
            end_date = self.end_date or self.start_date + timedelta(days=1)
            if self.start_date >= end_date:
                raise ValueError("Start date must be before end date")
            data["end_date"] = end_date
        else:
            if self.start is None:
                raise ValueError("Timed event requires start")
            end = self.end or self.start + timedelta(minutes=default_duration_minutes)
            if self.start >= end:
                raise ValueError("Start time must be before end time")
            data["end"] = end
        return EventPayload(**data)

    def patch_body(self, default_duration_minutes: int = 60) -> dict[str, Any]:
        """Google PATCH body for a partial update.

        A new start without an end gets the default duration (or the next
        day for all-day events), and ``start < end`` is checked when both are
        known. Dates alone imply an all-day event. Whenever a start or end is
        sent, the other representation (``date`` vs ``dateTime``) is cleared
        so switching between timed and all-day never leaves mixed kinds.
        """
        fields = self.model_fields_set
        timed_given = self.start is not None or self.end is not None
        dates_given = self.start_date is not None or self.end_date is not None
        all_day = self.all_day if "all_day" in fields else dates_given and not timed_given

        data = self.model_dump(exclude_unset=True)
        data["all_day"] = all_day
        if all_day:
            if timed_given:
                raise ValueError("All-day event takes start_date/end_date, not start/end")
            if "all_day" in fields and self.start_date is None:
                raise ValueError("Switching to an all-day event requires start_date")
            if self.start_date is not None:
                end_date = self.end_date or self.start_date + timedelta(days=1)
                if self.start_date >= end_date:
                    raise ValueError("Start date must be before end date")
                data["end_date"] = end_date
        else:
            if dates_given:
                raise ValueError("Timed event takes start/end, not start_date/end_date")
            if "all_day" in fields and self.start is None:
                raise ValueError("Switching to a timed event requires start")
            if self.start is not None:
                end = self.end or self.start + timedelta(minutes=default_duration_minutes)
                if self.start >= end:
                    raise ValueError("Start time must be before end time")
                data["end"] = end

        body = EventPayload(**data).to_google_body()
        cleared = "dateTime" if all_day else "date"
        for side in ("start", "end"):
            if side in body:
                body[side][cleared] = None
        return body

    def to_google_body(self) -> dict[str, Any]:
        """Convert to a Google Calendar event resource, only for set fields."""
        fields = self.model_fields_set
        body: dict[str, Any] = {}
        if "title" in fields:
            body["summary"] = self.title or "Event"
        if self.all_day:
            if self.start_date is not None:
                body["start"] = {"date": self.start_date.isoformat()}
            if self.end_date is not None:
                body["end"] = {"date": self.end_date.isoformat()}
        else:
            if self.start is not None:
                body["start"] = self._timed(self.start)
            if self.end is not None:
                body["end"] = self._timed(self.end)
        if "location" in fields:
            body["location"] = self.location or ""
        if "notes" in fields:
            body["description"] = self.notes or ""
        return body

    def _timed(self, value: datetime) -> dict[str, str]:
        out = {"dateTime": value.isoformat()}
        if self.timezone:
            out["timeZone"] = self.timezone
        return out
