"""Tests for slot computation and race-free booking."""

import asyncio
from datetime import date, datetime, time, timedelta, timezone

import pytest

from conftest import MONDAY, NOW, at, make_calendar

from booking_calendar.availability import AvailabilityEngine, CalendarLocks, compute_slots, is_blocked
from booking_calendar.errors import ConfigurationError, SlotNoLongerAvailable, UnknownCalendar
from booking_calendar.models import (
    Appointment,
    AppointmentStatus,
    BookingPeriod,
    OpenInterval,
    PeriodUnit,
    Weekday,
)
from booking_calendar.stores import InMemoryAppointmentStore, InMemoryCalendarStore


def booked(start: datetime, end: datetime, status=AppointmentStatus.CONFIRMED) -> Appointment:
    return Appointment(id=99, calendar_id=1, contact_id=1, start=start, end=end, status=status)


def starts(slots) -> list[tuple[int, int]]:
    return [(s.start.hour, s.start.minute) for s in slots]


# ── compute_slots ──────────────────────────────────────────────────


class TestComputeSlots:
    def test_monday_morning_has_six_slots(self):
        slots = compute_slots(make_calendar(), MONDAY, [], NOW)
        assert starts(slots) == [(9, 0), (9, 30), (10, 0), (10, 30), (11, 0), (11, 30)]

    def test_slots_are_contiguous_and_sized(self):
        slots = compute_slots(make_calendar(), MONDAY, [], NOW)
        for slot in slots:
            assert slot.end - slot.start == timedelta(minutes=30)
        for earlier, later in zip(slots, slots[1:]):
            assert earlier.end == later.start

    def test_slot_count_is_floor_of_interval_over_duration(self):
        calendar = make_calendar(
            business_hours={
                Weekday.MONDAY: [
                    OpenInterval(start=time(9), end=time(11, 45)),
                    OpenInterval(start=time(13), end=time(14, 10)),
                ]
            },
            slot_hours=0,
            slot_minutes=30,
        )
        slots = compute_slots(calendar, MONDAY, [], NOW)
        # 165 // 30 = 5, 70 // 30 = 2
        assert len(slots) == 7
        assert slots[-1].end == at(14, 0)

    def test_hour_and_minute_duration(self):
        calendar = make_calendar(slot_hours=1, slot_minutes=30)
        assert starts(compute_slots(calendar, MONDAY, [], NOW)) == [(9, 0), (10, 30)]

    def test_booked_slot_is_removed(self):
        slots = compute_slots(make_calendar(), MONDAY, [booked(at(9), at(9, 30))], NOW)
        assert len(slots) == 5
        assert (9, 0) not in starts(slots)

    def test_buffer_blocks_neighbouring_slots(self):
        calendar = make_calendar(buffer_minutes=15)
        slots = compute_slots(calendar, MONDAY, [booked(at(10), at(10, 30))], NOW)
        # Blocked window 09:45-10:45 also takes out 09:30 and 10:30
        assert starts(slots) == [(9, 0), (11, 0), (11, 30)]

    def test_no_slot_overlaps_a_blocked_window(self):
        calendar = make_calendar(buffer_minutes=10)
        appointments = [booked(at(9, 40), at(10, 5)), booked(at(11, 20), at(11, 25))]
        for slot in compute_slots(calendar, MONDAY, appointments, NOW):
            for appointment in appointments:
                assert not (
                    slot.start < appointment.end + calendar.buffer
                    and appointment.start - calendar.buffer < slot.end
                )

    def test_cancelled_appointment_does_not_block(self):
        cancelled = booked(at(9), at(9, 30), status=AppointmentStatus.CANCELLED)
        assert len(compute_slots(make_calendar(), MONDAY, [cancelled], NOW)) == 6

    def test_make_busy_blocks_whole_business_interval(self):
        calendar = make_calendar(
            business_hours={
                Weekday.MONDAY: [
                    OpenInterval(start=time(9), end=time(12)),
                    OpenInterval(start=time(13), end=time(15)),
                ]
            },
            make_busy=True,
        )
        slots = compute_slots(calendar, MONDAY, [booked(at(10), at(10, 30))], NOW)
        assert starts(slots) == [(13, 0), (13, 30), (14, 0), (14, 30)]

    def test_day_without_business_hours(self):
        assert compute_slots(make_calendar(), MONDAY + timedelta(days=1), [], NOW) == []

    def test_blackout_date(self):
        calendar = make_calendar(blackout_dates={MONDAY})
        assert compute_slots(calendar, MONDAY, [], NOW) == []

    def test_day_beyond_max_horizon(self):
        calendar = make_calendar(max_booking_period=BookingPeriod(count=1, unit=PeriodUnit.WEEKS))
        assert compute_slots(calendar, MONDAY + timedelta(days=7), [], NOW) == []
        assert len(compute_slots(calendar, MONDAY, [], NOW)) == 6

    def test_day_before_min_lead_time(self):
        calendar = make_calendar(min_booking_period=BookingPeriod(count=8, unit=PeriodUnit.DAYS))
        assert compute_slots(calendar, MONDAY, [], NOW) == []

    def test_month_horizon_default(self):
        # Default horizon is three months
        assert compute_slots(make_calendar(), date(2026, 6, 8), [], NOW) == []
        assert len(compute_slots(make_calendar(), date(2026, 5, 25), [], NOW)) == 6

    def test_past_slots_of_today_are_dropped(self):
        today = NOW.date()
        now = at(10, 5, day=today)
        assert starts(compute_slots(make_calendar(), today, [], now)) == [(10, 30), (11, 0), (11, 30)]

    def test_calendar_timezone(self):
        calendar = make_calendar(timezone="America/Chicago")
        slots = compute_slots(calendar, MONDAY, [], NOW)
        # 9 March 2026 is daylight time in Chicago (UTC-5)
        assert slots[0].start.astimezone(timezone.utc) == datetime(2026, 3, 9, 14, 0, tzinfo=timezone.utc)
        assert slots[0].start.hour == 9

    def test_appointment_in_utc_blocks_local_slot(self):
        calendar = make_calendar(timezone="America/Chicago")
        appointment = booked(
            datetime(2026, 3, 9, 14, 0, tzinfo=timezone.utc),
            datetime(2026, 3, 9, 14, 30, tzinfo=timezone.utc),
        )
        assert (9, 0) not in starts(compute_slots(calendar, MONDAY, [appointment], NOW))

    def test_zero_slot_duration_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            compute_slots(make_calendar(slot_minutes=0), MONDAY, [], NOW)

    def test_is_deterministic(self):
        calendar = make_calendar(buffer_minutes=5)
        appointments = [booked(at(10), at(10, 30))]
        assert compute_slots(calendar, MONDAY, appointments, NOW) == compute_slots(
            calendar, MONDAY, appointments, NOW
        )


class TestIsBlocked:
    def test_touching_intervals_do_not_overlap(self):
        assert not is_blocked(make_calendar(), at(9, 30), at(10), [booked(at(9), at(9, 30))])

    def test_buffer_makes_touching_intervals_collide(self):
        calendar = make_calendar(buffer_minutes=1)
        assert is_blocked(calendar, at(9, 30), at(10), [booked(at(9), at(9, 30))])


# ── AvailabilityEngine ─────────────────────────────────────────────


class SlowAppointmentStore(InMemoryAppointmentStore):
    """Yields to the event loop while reading so concurrent bookings interleave."""

    async def list_for_calendar(self, calendar_id):
        await asyncio.sleep(0.01)
        return await super().list_for_calendar(calendar_id)


@pytest.fixture
async def engine_and_calendar():
    calendars = InMemoryCalendarStore()
    appointments = SlowAppointmentStore()
    calendar = await calendars.save(make_calendar())
    engine = AvailabilityEngine(calendars, appointments, clock=lambda: NOW)
    return engine, calendar


class TestAvailabilityEngine:
    async def test_booking_then_requery(self, engine_and_calendar):
        engine, calendar = engine_and_calendar
        await engine.try_book(calendar.id, 7, at(9), at(9, 30))
        slots = await engine.get_slots(calendar.id, MONDAY)
        assert len(slots) == 5
        assert (9, 0) not in starts(slots)

    async def test_new_booking_is_pending(self, engine_and_calendar):
        engine, calendar = engine_and_calendar
        appointment = await engine.try_book(calendar.id, 7, at(9), at(9, 30), notes="hi", name="Intro")
        assert appointment.id is not None
        assert appointment.status == AppointmentStatus.PENDING
        assert appointment.notes == "hi"
        assert appointment.name == "Intro"

    async def test_overlapping_booking_is_rejected(self, engine_and_calendar):
        engine, calendar = engine_and_calendar
        await engine.try_book(calendar.id, 7, at(9), at(10))
        with pytest.raises(SlotNoLongerAvailable):
            await engine.try_book(calendar.id, 8, at(9, 30), at(10, 30))

    async def test_concurrent_bookings_only_one_wins(self, engine_and_calendar):
        engine, calendar = engine_and_calendar
        results = await asyncio.gather(
            engine.try_book(calendar.id, 1, at(10), at(10, 30)),
            engine.try_book(calendar.id, 2, at(10, 15), at(10, 45)),
            return_exceptions=True,
        )
        assert sum(isinstance(r, Appointment) for r in results) == 1
        assert sum(isinstance(r, SlotNoLongerAvailable) for r in results) == 1

    async def test_bookings_on_other_calendars_do_not_contend(self, engine_and_calendar):
        engine, calendar = engine_and_calendar
        other = await engine._calendars.save(make_calendar())
        await engine.try_book(calendar.id, 1, at(10), at(10, 30))
        appointment = await engine.try_book(other.id, 1, at(10), at(10, 30))
        assert appointment.calendar_id == other.id

    async def test_booking_outside_horizon_is_rejected(self, engine_and_calendar):
        engine, calendar = engine_and_calendar
        far = at(9, day=MONDAY + timedelta(days=180))
        with pytest.raises(SlotNoLongerAvailable):
            await engine.try_book(calendar.id, 1, far, far + timedelta(minutes=30))

    async def test_rules_can_be_skipped(self, engine_and_calendar):
        engine, calendar = engine_and_calendar
        far = at(9, day=MONDAY + timedelta(days=180))
        appointment = await engine.try_book(
            calendar.id, 1, far, far + timedelta(minutes=30), enforce_rules=False
        )
        assert appointment.start == far

    async def test_unknown_calendar(self, engine_and_calendar):
        engine, _ = engine_and_calendar
        with pytest.raises(UnknownCalendar):
            await engine.try_book(404, 1, at(9), at(9, 30))

    async def test_reschedule_sets_status(self, engine_and_calendar):
        engine, calendar = engine_and_calendar
        appointment = await engine.try_book(calendar.id, 1, at(9), at(9, 30))
        moved = await engine.reschedule(appointment.id, at(11), at(11, 30))
        assert moved.status == AppointmentStatus.RESCHEDULED
        assert moved.start == at(11)

    async def test_reschedule_can_overlap_itself(self, engine_and_calendar):
        engine, calendar = engine_and_calendar
        appointment = await engine.try_book(calendar.id, 1, at(9), at(9, 30))
        moved = await engine.reschedule(appointment.id, at(9, 15), at(9, 45))
        assert moved.start == at(9, 15)

    async def test_reschedule_into_another_booking_fails(self, engine_and_calendar):
        engine, calendar = engine_and_calendar
        first = await engine.try_book(calendar.id, 1, at(9), at(9, 30))
        await engine.try_book(calendar.id, 2, at(11), at(11, 30))
        with pytest.raises(SlotNoLongerAvailable):
            await engine.reschedule(first.id, at(11), at(11, 30))
        unchanged = await engine._appointments.get(first.id)
        assert unchanged.start == at(9)

    async def test_cancel_frees_the_slot(self, engine_and_calendar):
        engine, calendar = engine_and_calendar
        appointment = await engine.try_book(calendar.id, 1, at(9), at(9, 30))
        cancelled = await engine.cancel(appointment.id)
        assert cancelled.status == AppointmentStatus.CANCELLED
        assert len(await engine.get_slots(calendar.id, MONDAY)) == 6
        await engine.try_book(calendar.id, 2, at(9), at(9, 30))

    async def test_confirm(self, engine_and_calendar):
        engine, calendar = engine_and_calendar
        appointment = await engine.try_book(calendar.id, 1, at(9), at(9, 30))
        assert (await engine.confirm(appointment.id)).status == AppointmentStatus.CONFIRMED

    async def test_update_details_rejects_times(self, engine_and_calendar):
        engine, calendar = engine_and_calendar
        appointment = await engine.try_book(calendar.id, 1, at(9), at(9, 30))
        with pytest.raises(TypeError):
            await engine.update_details(appointment.id, start=at(10))

    async def test_dates_without_slots(self, engine_and_calendar):
        engine, calendar = engine_and_calendar
        closed = await engine.dates_without_slots(calendar.id, MONDAY, MONDAY + timedelta(days=7))
        # Only Mondays have hours
        assert MONDAY not in closed
        assert MONDAY + timedelta(days=7) not in closed
        assert len(closed) == 6


class TestDeleteCalendar:
    async def test_delete_releases_calendar_lock(self):
        calendars = InMemoryCalendarStore()
        locks = CalendarLocks()
        engine = AvailabilityEngine(calendars, InMemoryAppointmentStore(), locks=locks, clock=lambda: NOW)
        calendar = await calendars.save(make_calendar())
        await engine.try_book(calendar.id, 1, at(9), at(9, 30))
        assert len(locks) == 1

        await engine.delete_calendar(calendar.id)

        assert len(locks) == 0
        assert await calendars.get(calendar.id) is None
        with pytest.raises(UnknownCalendar):
            await engine.get_slots(calendar.id, MONDAY)

    async def test_delete_unknown_calendar(self, engine_and_calendar):
        engine, _ = engine_and_calendar
        with pytest.raises(UnknownCalendar):
            await engine.delete_calendar(404)

    async def test_held_lock_is_not_discarded(self):
        locks = CalendarLocks()
        async with locks.for_calendar(1):
            locks.discard(1)
            assert len(locks) == 1
        locks.discard(1)
        assert len(locks) == 0
