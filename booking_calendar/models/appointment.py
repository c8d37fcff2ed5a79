"""Pydantic models for appointments and the people who book them."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset(
    {AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED, AppointmentStatus.RESCHEDULED}
)


class ExternalRef(BaseModel):
    """Where an appointment is mirrored on the external calendar.

    ``start``, ``end``, ``name`` and ``notes`` record the event as it was
    last written or read, so the sync engine can tell a local edit from a
    remote one.
    """

    google_calendar_id: str
    event_id: str
    start: datetime | None = None
    end: datetime | None = None
    name: str = ""
    notes: str = ""

    @property
    def has_snapshot(self) -> bool:
        return self.start is not None and self.end is not None


class Appointment(BaseModel):
    """A booked time range on a calendar.

    ``start`` and ``end`` are stored as UTC instants; naive datetimes are
    rejected because the calendar timezone cannot be guessed.
    """

    id: int | None = None
    calendar_id: int
    contact_id: int
    name: str = ""
    start: datetime
    end: datetime
    status: AppointmentStatus = AppointmentStatus.PENDING
    notes: str = ""
    external: ExternalRef | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("start", "end")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("appointment times must be timezone-aware")
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def _end_after_start(self) -> Appointment:
        if self.end <= self.start:
            raise ValueError("appointment end must be after its start")
        return self

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def needs_push(self) -> bool:
        """True if never mirrored, or edited locally since the last mirror."""
        ref = self.external
        if ref is None:
            return True
        if not ref.has_snapshot:
            return False
        return (self.start, self.end, self.name, self.notes) != (ref.start, ref.end, ref.name, ref.notes)


class Contact(BaseModel):
    """The person an appointment is booked for."""

    id: int | None = None
    email: str
    first_name: str = ""
    last_name: str = ""

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()
