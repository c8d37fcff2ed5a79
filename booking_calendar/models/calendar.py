"""Pydantic models for calendar scheduling rules."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, Field, model_validator

from booking_calendar.errors import ConfigurationError

# Fixed instant used to compare booking periods of different units
_PERIOD_REFERENCE = datetime(2001, 1, 31, tzinfo=timezone.utc)


class Weekday(str, Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @classmethod
    def of(cls, day: date) -> Weekday:
        return list(cls)[day.weekday()]


class PeriodUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


class BookingPeriod(BaseModel):
    """A distance from "now", e.g. ``0 days`` or ``3 months``."""

    count: int = Field(default=0, ge=0)
    unit: PeriodUnit = PeriodUnit.DAYS

    def add_to(self, moment: datetime) -> datetime:
        return moment + relativedelta(**{self.unit.value: self.count})


class OpenInterval(BaseModel):
    """One business-hours window within a weekday, in local wall-clock time."""

    start: time
    end: time


class GoogleCalendarMapping(BaseModel):
    """Links a calendar to Google calendars on one connection.

    ``local_google_calendar_id`` receives events pushed from this system
    and is always part of ``google_calendar_list``.
    """

    connection_id: int
    local_google_calendar_id: str
    google_calendar_list: list[str] = []

    @model_validator(mode="after")
    def _include_local_calendar(self) -> GoogleCalendarMapping:
        ids = [self.local_google_calendar_id, *self.google_calendar_list]
        self.google_calendar_list = list(dict.fromkeys(ids))
        return self


class Calendar(BaseModel):
    """Scheduling rules for one bookable calendar."""

    id: int | None = None
    owner_id: int
    name: str = ""
    timezone: str = "UTC"

    business_hours: dict[Weekday, list[OpenInterval]] = {}
    slot_hours: int = Field(default=0, ge=0)
    slot_minutes: int = Field(default=30, ge=0)
    buffer_minutes: int = 0

    min_booking_period: BookingPeriod = BookingPeriod(count=0, unit=PeriodUnit.DAYS)
    max_booking_period: BookingPeriod = BookingPeriod(count=3, unit=PeriodUnit.MONTHS)

    make_busy: bool = False
    blackout_dates: set[date] = set()

    google: GoogleCalendarMapping | None = None

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def slot_duration(self) -> timedelta:
        return timedelta(hours=self.slot_hours, minutes=self.slot_minutes)

    @property
    def buffer(self) -> timedelta:
        return timedelta(minutes=self.buffer_minutes)

    @property
    def is_connected_to_google(self) -> bool:
        return self.google is not None

    def intervals_for(self, day: date) -> list[OpenInterval]:
        """Business-hours intervals for ``day``'s weekday, earliest first."""
        return sorted(self.business_hours.get(Weekday.of(day), []), key=lambda i: i.start)

    def validate_rules(self) -> None:
        """Raise ConfigurationError if the rules cannot produce sane slots."""
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigurationError(f"Unknown timezone {self.timezone!r}") from exc

        if self.slot_duration <= timedelta(0):
            raise ConfigurationError("Slot duration must be longer than zero minutes")
        if self.buffer_minutes < 0:
            raise ConfigurationError("Buffer time cannot be negative")

        for weekday, intervals in self.business_hours.items():
            previous: OpenInterval | None = None
            for interval in sorted(intervals, key=lambda i: i.start):
                if interval.end <= interval.start:
                    raise ConfigurationError(
                        f"Business hours on {weekday.value} end before they start "
                        f"({interval.start:%H:%M}-{interval.end:%H:%M})"
                    )
                if previous is not None and interval.start < previous.end:
                    raise ConfigurationError(
                        f"Overlapping business hours on {weekday.value}: "
                        f"{previous.start:%H:%M}-{previous.end:%H:%M} and "
                        f"{interval.start:%H:%M}-{interval.end:%H:%M}"
                    )
                previous = interval

        if self.min_booking_period.add_to(_PERIOD_REFERENCE) > self.max_booking_period.add_to(
            _PERIOD_REFERENCE
        ):
            raise ConfigurationError("Minimum booking period exceeds the maximum booking period")
