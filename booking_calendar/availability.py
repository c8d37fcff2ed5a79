"""Availability engine: which slots of a calendar day can still be booked.

``compute_slots`` is a pure function of the calendar rules, the existing
appointments and the current time. ``AvailabilityEngine`` wraps it with
store access and owns the per-calendar locks that every booking,
reschedule and sync-driven change goes through, so two writers can never
both succeed into overlapping intervals.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import date, datetime, timedelta, timezone

from booking_calendar.calendar_providers.base import TimeSlot
from booking_calendar.errors import SlotNoLongerAvailable, UnknownAppointment, UnknownCalendar
from booking_calendar.models import Appointment, AppointmentStatus, Calendar, OpenInterval
from booking_calendar.stores import AppointmentStore, CalendarStore

logger = logging.getLogger("booking_calendar.availability")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and b_start < a_end


def _open_window(calendar: Calendar, day: date, interval: OpenInterval) -> tuple[datetime, datetime]:
    tz = calendar.tz
    return (
        datetime.combine(day, interval.start, tzinfo=tz),
        datetime.combine(day, interval.end, tzinfo=tz),
    )


def _busy_areas(calendar: Calendar, appointment: Appointment) -> list[tuple[datetime, datetime]]:
    """Business-hours windows an appointment marks busy when ``make_busy`` is set."""
    tz = calendar.tz
    areas = []
    day = appointment.start.astimezone(tz).date()
    last = appointment.end.astimezone(tz).date()
    while day <= last:
        for interval in calendar.intervals_for(day):
            open_start, open_end = _open_window(calendar, day, interval)
            if _overlaps(open_start, open_end, appointment.start, appointment.end):
                areas.append((open_start, open_end))
        day += timedelta(days=1)
    return areas


def is_blocked(
    calendar: Calendar,
    start: datetime,
    end: datetime,
    appointments: Iterable[Appointment],
) -> bool:
    """True if ``[start, end)`` collides with an active appointment.

    The interval is padded by the calendar buffer on both sides before the
    comparison. With ``make_busy``, every business-hours window touched by
    an appointment is unavailable as a whole.
    """
    padded_start = start - calendar.buffer
    padded_end = end + calendar.buffer
    for appointment in appointments:
        if not appointment.is_active:
            continue
        if _overlaps(padded_start, padded_end, appointment.start, appointment.end):
            return True
        if calendar.make_busy and any(
            _overlaps(start, end, area_start, area_end)
            for area_start, area_end in _busy_areas(calendar, appointment)
        ):
            return True
    return False


def booking_window(calendar: Calendar, now: datetime) -> tuple[datetime, datetime]:
    """Earliest and latest instants a booking may start at, seen from ``now``."""
    return (
        calendar.min_booking_period.add_to(now),
        calendar.max_booking_period.add_to(now),
    )


def compute_slots(
    calendar: Calendar,
    day: date,
    appointments: Iterable[Appointment],
    now: datetime,
) -> list[TimeSlot]:
    """Return the bookable slots of ``day`` in the calendar's timezone.

    Days outside the booking horizon, blackout days and days without
    business hours yield an empty list. Raises ConfigurationError when the
    calendar rules are invalid.
    """
    calendar.validate_rules()
    tz = calendar.tz

    earliest, latest = booking_window(calendar, now)
    if day < earliest.astimezone(tz).date() or day > latest.astimezone(tz).date():
        return []
    if day in calendar.blackout_dates:
        return []

    active = [a for a in appointments if a.is_active]
    duration = calendar.slot_duration
    slots: list[TimeSlot] = []

    for interval in calendar.intervals_for(day):
        cursor, open_end = _open_window(calendar, day, interval)
        while cursor + duration <= open_end:
            slot_end = cursor + duration
            if cursor >= earliest and not is_blocked(calendar, cursor, slot_end, active):
                slots.append(TimeSlot(start=cursor, end=slot_end))
            cursor = slot_end

    return slots


class CalendarLocks:
    """Per-calendar mutual exclusion for appointment writes."""

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}

    def for_calendar(self, calendar_id: int) -> asyncio.Lock:
        lock = self._locks.get(calendar_id)
        if lock is None:
            lock = self._locks[calendar_id] = asyncio.Lock()
        return lock

    def discard(self, calendar_id: int) -> None:
        """Forget the lock of a deleted calendar unless a writer still holds it."""
        lock = self._locks.get(calendar_id)
        if lock is not None and not lock.locked():
            del self._locks[calendar_id]

    def __len__(self) -> int:
        return len(self._locks)


class AvailabilityEngine:
    """Slot listing and race-free booking on top of the stores."""

    def __init__(
        self,
        calendars: CalendarStore,
        appointments: AppointmentStore,
        *,
        locks: CalendarLocks | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._calendars = calendars
        self._appointments = appointments
        self._locks = locks if locks is not None else CalendarLocks()
        self._clock = clock or _utcnow

    async def _calendar(self, calendar_id: int) -> Calendar:
        calendar = await self._calendars.get(calendar_id)
        if calendar is None:
            raise UnknownCalendar(f"Calendar {calendar_id} does not exist")
        return calendar

    async def _appointment(self, appointment_id: int) -> Appointment:
        appointment = await self._appointments.get(appointment_id)
        if appointment is None:
            raise UnknownAppointment(f"Appointment {appointment_id} does not exist")
        return appointment

    async def get_slots(self, calendar_id: int, day: date) -> list[TimeSlot]:
        calendar = await self._calendar(calendar_id)
        appointments = await self._appointments.list_active(calendar_id)
        return compute_slots(calendar, day, appointments, self._clock())

    async def dates_without_slots(self, calendar_id: int, first: date, last: date) -> list[date]:
        """Days between ``first`` and ``last`` (inclusive) with nothing bookable."""
        calendar = await self._calendar(calendar_id)
        appointments = await self._appointments.list_active(calendar_id)
        now = self._clock()
        closed = []
        day = first
        while day <= last:
            if not compute_slots(calendar, day, appointments, now):
                closed.append(day)
            day += timedelta(days=1)
        return closed

    def _check_rules(self, calendar: Calendar, start: datetime) -> None:
        earliest, latest = booking_window(calendar, self._clock())
        local_day = start.astimezone(calendar.tz).date()
        if start < earliest or local_day > latest.astimezone(calendar.tz).date():
            raise SlotNoLongerAvailable(
                f"{start.isoformat()} is outside the booking window of calendar {calendar.id}"
            )
        if local_day in calendar.blackout_dates:
            raise SlotNoLongerAvailable(f"Calendar {calendar.id} is closed on {local_day}")

    async def try_book(
        self,
        calendar_id: int,
        contact_id: int,
        start: datetime,
        end: datetime,
        *,
        notes: str = "",
        name: str = "",
        enforce_rules: bool = True,
    ) -> Appointment:
        """Create a pending appointment if ``[start, end)`` is still free.

        The overlap check runs against the store under the calendar lock,
        not against a previously listed set of slots. ``enforce_rules``
        additionally applies the booking horizon and blackout days; the
        sync engine turns it off for events imported from the provider.
        """
        calendar = await self._calendar(calendar_id)
        calendar.validate_rules()
        candidate = Appointment(
            calendar_id=calendar_id,
            contact_id=contact_id,
            name=name,
            start=start,
            end=end,
            notes=notes,
        )

        async with self._locks.for_calendar(calendar_id):
            if enforce_rules:
                self._check_rules(calendar, candidate.start)
            existing = await self._appointments.list_active(calendar_id)
            if is_blocked(calendar, candidate.start, candidate.end, existing):
                raise SlotNoLongerAvailable(
                    f"{candidate.start.isoformat()} - {candidate.end.isoformat()} is no longer "
                    f"available on calendar {calendar_id}"
                )
            appointment = await self._appointments.add(candidate)

        logger.info(
            "Booked appointment %s on calendar %s (%s - %s)",
            appointment.id,
            calendar_id,
            appointment.start.isoformat(),
            appointment.end.isoformat(),
        )
        return appointment

    async def reschedule(
        self,
        appointment_id: int,
        start: datetime,
        end: datetime,
        *,
        name: str | None = None,
    ) -> Appointment:
        """Move an appointment, re-validating the new interval under the lock."""
        calendar_id = (await self._appointment(appointment_id)).calendar_id
        calendar = await self._calendar(calendar_id)

        async with self._locks.for_calendar(calendar_id):
            current = await self._appointment(appointment_id)
            data = current.model_dump()
            data.update(start=start, end=end, status=AppointmentStatus.RESCHEDULED)
            if name is not None:
                data["name"] = name
            moved = Appointment.model_validate(data)

            others = [
                a for a in await self._appointments.list_active(calendar_id) if a.id != appointment_id
            ]
            if is_blocked(calendar, moved.start, moved.end, others):
                raise SlotNoLongerAvailable(
                    f"Cannot move appointment {appointment_id} to {moved.start.isoformat()}: "
                    "the interval is taken"
                )
            appointment = await self._appointments.update(moved)

        logger.info("Rescheduled appointment %s to %s", appointment_id, appointment.start.isoformat())
        return appointment

    async def _set_status(self, appointment_id: int, status: AppointmentStatus) -> Appointment:
        calendar_id = (await self._appointment(appointment_id)).calendar_id
        async with self._locks.for_calendar(calendar_id):
            current = await self._appointment(appointment_id)
            return await self._appointments.update(current.model_copy(update={"status": status}))

    async def update_details(self, appointment_id: int, **fields) -> Appointment:
        """Write ``name``, ``notes`` or ``external`` without touching the times."""
        unknown = set(fields) - {"name", "notes", "external"}
        if unknown:
            raise TypeError(f"update_details() cannot change {sorted(unknown)}")
        calendar_id = (await self._appointment(appointment_id)).calendar_id
        async with self._locks.for_calendar(calendar_id):
            current = await self._appointment(appointment_id)
            return await self._appointments.update(current.model_copy(update=fields))

    async def delete_calendar(self, calendar_id: int) -> None:
        """Delete a calendar and release its lock."""
        await self._calendar(calendar_id)
        async with self._locks.for_calendar(calendar_id):
            await self._calendars.delete(calendar_id)
        self._locks.discard(calendar_id)
        logger.info("Deleted calendar %s", calendar_id)

    async def cancel(self, appointment_id: int) -> Appointment:
        appointment = await self._set_status(appointment_id, AppointmentStatus.CANCELLED)
        logger.info("Cancelled appointment %s", appointment_id)
        return appointment

    async def confirm(self, appointment_id: int) -> Appointment:
        return await self._set_status(appointment_id, AppointmentStatus.CONFIRMED)
