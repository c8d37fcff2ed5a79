"""In-memory store implementations.

Used by the default application wiring and by the tests. Records are
deep-copied on the way in and out, mirroring what a database round trip
would do.
"""

from __future__ import annotations

import itertools
from datetime import datetime, timezone

from booking_calendar.errors import UnknownAppointment
from booking_calendar.models import (
    Appointment,
    Calendar,
    Contact,
    ExternalCalendar,
    ExternalConnection,
    SyncedEvent,
)

from .base import AppointmentStore, CalendarStore, ConnectionStore, ContactStore, SyncedEventStore


class InMemoryCalendarStore(CalendarStore):
    def __init__(self) -> None:
        self._rows: dict[int, Calendar] = {}
        self._ids = itertools.count(1)

    async def get(self, calendar_id: int) -> Calendar | None:
        row = self._rows.get(calendar_id)
        return row.model_copy(deep=True) if row else None

    async def save(self, calendar: Calendar) -> Calendar:
        calendar.validate_rules()
        if calendar.id is None:
            calendar = calendar.model_copy(update={"id": next(self._ids)})
        self._rows[calendar.id] = calendar.model_copy(deep=True)
        return calendar

    async def list_all(self) -> list[Calendar]:
        return [c.model_copy(deep=True) for c in self._rows.values()]

    async def delete(self, calendar_id: int) -> None:
        self._rows.pop(calendar_id, None)


class InMemoryAppointmentStore(AppointmentStore):
    def __init__(self) -> None:
        self._rows: dict[int, Appointment] = {}
        self._ids = itertools.count(1)

    async def get(self, appointment_id: int) -> Appointment | None:
        row = self._rows.get(appointment_id)
        return row.model_copy(deep=True) if row else None

    async def add(self, appointment: Appointment) -> Appointment:
        appointment = appointment.model_copy(update={"id": next(self._ids)})
        self._rows[appointment.id] = appointment.model_copy(deep=True)
        return appointment

    async def update(self, appointment: Appointment) -> Appointment:
        if appointment.id not in self._rows:
            raise UnknownAppointment(f"Appointment {appointment.id} does not exist")
        appointment = appointment.model_copy(update={"updated_at": datetime.now(tz=timezone.utc)})
        self._rows[appointment.id] = appointment.model_copy(deep=True)
        return appointment

    async def list_for_calendar(self, calendar_id: int) -> list[Appointment]:
        rows = [a for a in self._rows.values() if a.calendar_id == calendar_id]
        return [a.model_copy(deep=True) for a in sorted(rows, key=lambda a: a.start)]

    async def delete(self, appointment_id: int) -> None:
        self._rows.pop(appointment_id, None)


class InMemoryContactStore(ContactStore):
    def __init__(self) -> None:
        self._rows: dict[int, Contact] = {}
        self._ids = itertools.count(1)

    async def get(self, contact_id: int) -> Contact | None:
        row = self._rows.get(contact_id)
        return row.model_copy() if row else None

    async def get_by_email(self, email: str) -> Contact | None:
        for row in self._rows.values():
            if row.email == email:
                return row.model_copy()
        return None

    async def add(self, contact: Contact) -> Contact:
        contact = contact.model_copy(update={"id": next(self._ids)})
        self._rows[contact.id] = contact.model_copy()
        return contact


class InMemoryConnectionStore(ConnectionStore):
    def __init__(self) -> None:
        self._rows: dict[int, ExternalConnection] = {}
        self._calendars: dict[int, list[ExternalCalendar]] = {}
        self._ids = itertools.count(1)

    async def get(self, connection_id: int) -> ExternalConnection | None:
        row = self._rows.get(connection_id)
        return row.model_copy() if row else None

    async def save(self, connection: ExternalConnection) -> ExternalConnection:
        if connection.id is None:
            connection = connection.model_copy(update={"id": next(self._ids)})
        self._rows[connection.id] = connection.model_copy()
        return connection

    async def delete(self, connection_id: int) -> None:
        self._rows.pop(connection_id, None)
        self._calendars.pop(connection_id, None)

    async def list_all(self) -> list[ExternalConnection]:
        return [c.model_copy() for c in self._rows.values()]

    async def save_calendars(self, connection_id: int, calendars: list[ExternalCalendar]) -> None:
        self._calendars[connection_id] = [c.model_copy() for c in calendars]

    async def list_calendars(self, connection_id: int) -> list[ExternalCalendar]:
        return [c.model_copy() for c in self._calendars.get(connection_id, [])]


class InMemorySyncedEventStore(SyncedEventStore):
    def __init__(self) -> None:
        self._rows: dict[tuple[int, str], SyncedEvent] = {}

    async def get(self, calendar_id: int, event_id: str) -> SyncedEvent | None:
        row = self._rows.get((calendar_id, event_id))
        return row.model_copy() if row else None

    async def add(self, record: SyncedEvent) -> None:
        self._rows[(record.calendar_id, record.event_id)] = record.model_copy()

    async def delete(self, calendar_id: int, event_id: str) -> None:
        self._rows.pop((calendar_id, event_id), None)

    async def list_all(self) -> list[SyncedEvent]:
        return [r.model_copy() for r in self._rows.values()]
