"""Repository interfaces and in-memory implementations."""

from .base import AppointmentStore, CalendarStore, ConnectionStore, ContactStore, SyncedEventStore
from .memory import (
    InMemoryAppointmentStore,
    InMemoryCalendarStore,
    InMemoryConnectionStore,
    InMemoryContactStore,
    InMemorySyncedEventStore,
)

__all__ = [
    "AppointmentStore",
    "CalendarStore",
    "ConnectionStore",
    "ContactStore",
    "InMemoryAppointmentStore",
    "InMemoryCalendarStore",
    "InMemoryConnectionStore",
    "InMemoryContactStore",
    "InMemorySyncedEventStore",
    "SyncedEventStore",
]
