"""Abstract base class for calendar providers.

Defines the interface the sync engine uses to read and mirror events.
Any calendar backend (Google, Outlook, etc.) implements this ABC.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class TimeSlot:
    """A bookable window on a calendar."""

    start: datetime
    end: datetime


@dataclass
class CalendarEvent:
    """Represents a calendar event to be created or updated."""

    summary: str
    start: datetime
    end: datetime
    description: str = ""
    attendees: list[str] = field(default_factory=list)  # email addresses
    event_id: str = ""  # fixed id to create the event under, if any


@dataclass
class RemoteEvent:
    """An event as read back from the provider.

    Only the fields the sync engine consumes are kept. All-day events
    have no ``start``/``end`` instants.
    """

    id: str
    summary: str = ""
    description: str = ""
    start: datetime | None = None
    end: datetime | None = None
    attendees: list[str] = field(default_factory=list)


@dataclass
class RemoteCalendar:
    """A calendar visible to the connected account."""

    id: str
    summary: str = ""
    primary: bool = False


class CalendarProvider(ABC):
    """Abstract calendar backend.

    Methods raise ``ProviderUnavailable`` on transport or API failures,
    except ``cancel_event`` which reports failure through its return value.
    """

    @abstractmethod
    async def list_calendars(self) -> list[RemoteCalendar]:
        """Return the calendars the account can see."""

    @abstractmethod
    async def list_events(
        self, calendar_id: str, time_min: datetime
    ) -> list[RemoteEvent]:
        """Return single events starting at or after ``time_min``.

        Args:
            calendar_id: The calendar to query.
            time_min: Lower bound; recurring events are expanded.

        Returns:
            Events ordered by start time.
        """

    @abstractmethod
    async def create_event(
        self, calendar_id: str, event: CalendarEvent
    ) -> dict:
        """Create a calendar event.

        If ``event.event_id`` is set the event is created under that id;
        an existing event with the same id is updated instead.

        Returns:
            Dict containing at least ``"event_id"`` and ``"html_link"``.
        """

    @abstractmethod
    async def update_event(
        self, calendar_id: str, event_id: str, event: CalendarEvent
    ) -> dict:
        """Overwrite summary, description, times and attendees of an event."""

    @abstractmethod
    async def cancel_event(
        self, calendar_id: str, event_id: str
    ) -> bool:
        """Cancel / delete a calendar event.

        Args:
            calendar_id: The calendar that owns the event.
            event_id: Provider-specific event identifier.

        Returns:
            True if the event was successfully cancelled.
        """
