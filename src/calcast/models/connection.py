"""AccountConnection — one linked calendar account within a workspace."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from calcast.models.base import TimestampMixin


class AccountConnection(TimestampMixin):
    """Stored form. Secrets are only ever held encrypted here."""

    workspace_id: str
    external_account_id: str
    display_identifier: str
    refresh_credential_enc: str
    access_credential_enc: str | None = None
    access_expires_at: datetime | None = None
    scopes: list[str] = Field(default_factory=list)
    revoked: bool = False
    linked_by: str | None = None

    @field_validator("display_identifier")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.strip().lower()

    def __repr__(self) -> str:
        return (
            f"<AccountConnection {self.display_identifier!r} "
            f"workspace={self.workspace_id!r} revoked={self.revoked!r}>"
        )


class ActiveConnection(BaseModel):
    """Decrypted, in-memory view of a non-revoked connection."""

    workspace_id: str
    external_account_id: str
    display_identifier: str
    refresh_credential: str = Field(repr=False)
    access_credential: str | None = Field(default=None, repr=False)
    access_expires_at: datetime | None = None
    scopes: list[str] = Field(default_factory=list)
    linked_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
