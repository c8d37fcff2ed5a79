"""Shared fixtures: a fixed clock, calendar factory and a fake Google provider."""

import asyncio
import os
import sys
from datetime import date, datetime, time, timedelta, timezone

import pytest
from pydantic import SecretStr

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from booking_calendar.availability import AvailabilityEngine
from booking_calendar.calendar_providers.base import (
    CalendarEvent,
    CalendarProvider,
    RemoteCalendar,
    RemoteEvent,
)
from booking_calendar.connections import ConnectionManager, RefreshedToken, TokenRefresher
from booking_calendar.errors import ProviderUnavailable
from booking_calendar.models import (
    Calendar,
    ExternalConnection,
    GoogleCalendarMapping,
    OpenInterval,
    Weekday,
)
from booking_calendar.stores import (
    InMemoryAppointmentStore,
    InMemoryCalendarStore,
    InMemoryConnectionStore,
    InMemoryContactStore,
    InMemorySyncedEventStore,
)
from booking_calendar.sync import SyncEngine

# Monday 2 March 2026, early morning
NOW = datetime(2026, 3, 2, 6, 0, tzinfo=timezone.utc)
# The Monday after
MONDAY = date(2026, 3, 9)


def at(hour: int, minute: int = 0, day: date = MONDAY) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


def make_calendar(**overrides) -> Calendar:
    """Monday 09:00-12:00, 30 minute slots, no buffer, UTC."""
    data = {
        "owner_id": 1,
        "business_hours": {Weekday.MONDAY: [OpenInterval(start=time(9), end=time(12))]},
        "slot_minutes": 30,
    }
    data.update(overrides)
    return Calendar(**data)


class FakeProvider(CalendarProvider):
    """In-memory stand-in for Google Calendar that records every call."""

    def __init__(self) -> None:
        self.events: dict[str, list[RemoteEvent]] = {}
        self.calendars: list[RemoteCalendar] = []
        self.listed: list[str] = []
        self.created: list[tuple[str, CalendarEvent]] = []
        self.updated: list[tuple[str, str, CalendarEvent]] = []
        self.deleted: list[tuple[str, str]] = []
        self.failing_calendars: set[str] = set()
        self.list_delay = 0.0
        self.delete_succeeds = True

    def add_event(self, calendar_id: str, event: RemoteEvent) -> None:
        self.events.setdefault(calendar_id, []).append(event)

    def find(self, calendar_id: str, event_id: str) -> RemoteEvent | None:
        for event in self.events.get(calendar_id, []):
            if event.id == event_id:
                return event
        return None

    async def list_calendars(self) -> list[RemoteCalendar]:
        return list(self.calendars)

    async def list_events(self, calendar_id, time_min):
        self.listed.append(calendar_id)
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if calendar_id in self.failing_calendars:
            raise ProviderUnavailable(f"calendar {calendar_id} unreachable", status_code=503)
        return list(self.events.get(calendar_id, []))

    async def create_event(self, calendar_id, event):
        self.created.append((calendar_id, event))
        self.add_event(
            calendar_id,
            RemoteEvent(
                id=event.event_id,
                summary=event.summary,
                description=event.description,
                start=event.start,
                end=event.end,
                attendees=list(event.attendees),
            ),
        )
        return {"event_id": event.event_id, "html_link": "", "status": "confirmed"}

    async def update_event(self, calendar_id, event_id, event):
        self.updated.append((calendar_id, event_id, event))
        stored = self.find(calendar_id, event_id)
        if stored is not None:
            stored.summary = event.summary
            stored.description = event.description
            stored.start = event.start
            stored.end = event.end
            stored.attendees = list(event.attendees)
        return {"event_id": event_id, "html_link": "", "status": "confirmed"}

    async def cancel_event(self, calendar_id, event_id):
        self.deleted.append((calendar_id, event_id))
        if not self.delete_succeeds:
            return False
        self.events[calendar_id] = [e for e in self.events.get(calendar_id, []) if e.id != event_id]
        return True


class FakeRefresher(TokenRefresher):
    def __init__(self, token: str = "refreshed-token", expires_in: int = 3600) -> None:
        self.token = token
        self.expires_in = expires_in
        self.calls = 0

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        self.calls += 1
        return RefreshedToken(access_token=self.token, expires_in=self.expires_in)


class Harness:
    """All stores and engines wired around one FakeProvider."""

    def __init__(self) -> None:
        self.calendars = InMemoryCalendarStore()
        self.appointments = InMemoryAppointmentStore()
        self.contacts = InMemoryContactStore()
        self.connection_store = InMemoryConnectionStore()
        self.synced_events = InMemorySyncedEventStore()
        self.provider = FakeProvider()
        self.refresher = FakeRefresher()
        self.availability = AvailabilityEngine(self.calendars, self.appointments, clock=lambda: NOW)
        self.connections = ConnectionManager(
            self.connection_store,
            self.refresher,
            client_factory=lambda token: self.provider,
            clock=lambda: NOW,
        )
        self.sync = SyncEngine(
            self.calendars,
            self.appointments,
            self.contacts,
            self.synced_events,
            self.connections,
            self.availability,
            timeout=0.5,
            retention=timedelta(days=30),
            clock=lambda: NOW,
        )

    async def add_connection(self, **overrides) -> ExternalConnection:
        data = {
            "account_email": "owner@example.com",
            "access_token": SecretStr("live-token"),
            "expires_at": NOW + timedelta(hours=1),
        }
        data.update(overrides)
        return await self.connection_store.save(ExternalConnection(**data))

    async def add_calendar(
        self,
        connection: ExternalConnection,
        local_id: str = "primary",
        linked: list[str] | None = None,
        **overrides,
    ) -> Calendar:
        mapping = GoogleCalendarMapping(
            connection_id=connection.id,
            local_google_calendar_id=local_id,
            google_calendar_list=linked or [],
        )
        return await self.calendars.save(make_calendar(google=mapping, **overrides))


@pytest.fixture
def harness() -> Harness:
    return Harness()
