"""EventMapping — where one logical event lives in one account."""

from __future__ import annotations

from calcast.models.base import TimestampMixin


class EventMapping(TimestampMixin):
    workspace_id: str
    bot_event_uid: str
    external_account_id: str
    native_event_id: str

    def __repr__(self) -> str:
        return (
            f"<EventMapping {self.bot_event_uid!r} account={self.external_account_id!r} "
            f"native={self.native_event_id!r}>"
        )
