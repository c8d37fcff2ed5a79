"""Calendar provider abstractions and implementations."""

from .base import CalendarEvent, CalendarProvider, RemoteCalendar, RemoteEvent, TimeSlot

__all__ = ["CalendarProvider", "CalendarEvent", "RemoteCalendar", "RemoteEvent", "TimeSlot"]
