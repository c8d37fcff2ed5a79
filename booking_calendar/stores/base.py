"""Abstract repositories for the booking calendar.

Each store hands out typed pydantic records. Implementations must return
copies so that callers cannot mutate stored state without going through
``save``/``update``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from booking_calendar.models import (
    Appointment,
    Calendar,
    Contact,
    ExternalCalendar,
    ExternalConnection,
    SyncedEvent,
)


class CalendarStore(ABC):
    @abstractmethod
    async def get(self, calendar_id: int) -> Calendar | None:
        """Return the calendar or None if it was deleted."""

    @abstractmethod
    async def save(self, calendar: Calendar) -> Calendar:
        """Insert or update a calendar.

        Implementations call ``calendar.validate_rules()`` first so that
        invalid configuration is rejected when it is saved.
        """

    @abstractmethod
    async def delete(self, calendar_id: int) -> None:
        ...

    @abstractmethod
    async def list_all(self) -> list[Calendar]:
        ...

    async def list_for_connection(self, connection_id: int) -> list[Calendar]:
        """Calendars mapped to ``connection_id``, ordered by id."""
        calendars = [
            c
            for c in await self.list_all()
            if c.google is not None and c.google.connection_id == connection_id
        ]
        return sorted(calendars, key=lambda c: c.id or 0)


class AppointmentStore(ABC):
    @abstractmethod
    async def get(self, appointment_id: int) -> Appointment | None:
        ...

    @abstractmethod
    async def add(self, appointment: Appointment) -> Appointment:
        """Persist a new appointment and return it with its id assigned."""

    @abstractmethod
    async def update(self, appointment: Appointment) -> Appointment:
        ...

    @abstractmethod
    async def list_for_calendar(self, calendar_id: int) -> list[Appointment]:
        ...

    async def list_active(self, calendar_id: int) -> list[Appointment]:
        return [a for a in await self.list_for_calendar(calendar_id) if a.is_active]

    async def list_unsynced(self, calendar_id: int, after: datetime) -> list[Appointment]:
        """Active appointments starting after ``after`` whose mirror is missing or stale."""
        return [a for a in await self.list_active(calendar_id) if a.needs_push and a.start > after]


class ContactStore(ABC):
    @abstractmethod
    async def get(self, contact_id: int) -> Contact | None:
        ...

    @abstractmethod
    async def get_by_email(self, email: str) -> Contact | None:
        ...

    @abstractmethod
    async def add(self, contact: Contact) -> Contact:
        ...

    async def resolve(self, email: str) -> Contact:
        """Find the contact for ``email`` or create one."""
        contact = await self.get_by_email(email.strip().lower())
        if contact is None:
            contact = await self.add(Contact(email=email))
        return contact


class ConnectionStore(ABC):
    @abstractmethod
    async def get(self, connection_id: int) -> ExternalConnection | None:
        ...

    @abstractmethod
    async def save(self, connection: ExternalConnection) -> ExternalConnection:
        ...

    @abstractmethod
    async def delete(self, connection_id: int) -> None:
        ...

    @abstractmethod
    async def list_all(self) -> list[ExternalConnection]:
        ...

    @abstractmethod
    async def save_calendars(self, connection_id: int, calendars: list[ExternalCalendar]) -> None:
        """Replace the stored calendar list of a connection."""

    @abstractmethod
    async def list_calendars(self, connection_id: int) -> list[ExternalCalendar]:
        ...


class SyncedEventStore(ABC):
    @abstractmethod
    async def get(self, calendar_id: int, event_id: str) -> SyncedEvent | None:
        ...

    @abstractmethod
    async def add(self, record: SyncedEvent) -> None:
        ...

    @abstractmethod
    async def delete(self, calendar_id: int, event_id: str) -> None:
        ...

    @abstractmethod
    async def list_all(self) -> list[SyncedEvent]:
        ...

    async def delete_for_appointment(self, appointment_id: int) -> int:
        """Drop every record pointing at ``appointment_id``; return the count."""
        removed = 0
        for record in await self.list_all():
            if record.appointment_id == appointment_id:
                await self.delete(record.calendar_id, record.event_id)
                removed += 1
        return removed
