"""Pydantic models for external calendar connections and sync bookkeeping."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, Field, SecretStr


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class ExternalConnection(BaseModel):
    """One linked Google account.

    Tokens are ``SecretStr`` so they render as ``**********`` in reprs and
    log lines. Only the connection manager reads the secret values.
    """

    id: int | None = None
    account_email: str = ""
    access_token: SecretStr
    refresh_token: SecretStr | None = None
    expires_at: datetime | None = None

    @property
    def can_refresh(self) -> bool:
        return self.refresh_token is not None and bool(self.refresh_token.get_secret_value())

    def is_expired(self, now: datetime, leeway: timedelta = timedelta(0)) -> bool:
        if self.expires_at is None:
            return False
        return now + leeway >= self.expires_at


class ExternalCalendar(BaseModel):
    """A calendar visible through a connection, as last listed."""

    connection_id: int
    calendar_id: str
    summary: str = ""
    primary: bool = False


class SyncedEvent(BaseModel):
    """Remembers that a remote event was materialised as a local appointment."""

    calendar_id: int
    event_id: str
    appointment_id: int
    synced_at: datetime = Field(default_factory=_utcnow)
