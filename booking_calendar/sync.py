"""Bidirectional sync between local appointments and Google calendars.

One ``reconcile`` run handles one connection:

  1. Get a client from the connection manager.
  2. Assign every linked Google calendar id to one local calendar: the
     calendar that pushes into it, else the lowest-id calendar linking it.
     Each calendar (in id order) fetches the upcoming events of the ids it
     was assigned.
  3. Events without a correlation token were created in Google: they are
     imported as pending appointments and the original event is deleted
     (the appointment is pushed back later under its encoded id).
  4. Events with a token mirror a local appointment of the calendar named
     in the token. Each field is compared with the state recorded at the
     last mirror: a remote edit is applied locally (times through a
     reschedule), a local edit is written back to Google.
  5. Local appointments that were never pushed, or were edited since, are
     written to Google.
  6. Stale tracking records of the connection's calendars are purged.

A fetch failure skips the whole calendar before anything is applied; a
bad event is skipped on its own. Nothing is retried within a run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import NamedTuple

from pydantic import BaseModel

from booking_calendar.availability import AvailabilityEngine
from booking_calendar.calendar_providers.base import CalendarEvent, CalendarProvider, RemoteEvent
from booking_calendar.connections import ConnectionManager
from booking_calendar.correlation import CorrelationToken, decode_event_id, encode_event_id
from booking_calendar.errors import (
    BookingCalendarError,
    CorrelationMismatch,
    CredentialExpired,
    CredentialRefreshFailed,
    ProviderUnavailable,
    SlotNoLongerAvailable,
    UnknownConnection,
)
from booking_calendar.models import Appointment, Calendar, ExternalRef, SyncedEvent
from booking_calendar.stores import AppointmentStore, CalendarStore, ContactStore, SyncedEventStore

logger = logging.getLogger("booking_calendar.sync")


class SyncReport(BaseModel):
    """Outcome of one reconcile run for a connection."""

    connection_id: int
    created: int = 0
    updated: int = 0
    rescheduled: int = 0
    remote_deleted: int = 0
    pushed: int = 0
    skipped_events: int = 0
    failed_calendars: dict[int, str] = {}
    error: str | None = None
    cancelled: bool = False


class MirroredFields(NamedTuple):
    """The event fields kept in step between an appointment and its mirror."""

    start: datetime | None
    end: datetime | None
    name: str
    notes: str

    @classmethod
    def of_appointment(cls, appointment: Appointment) -> MirroredFields:
        return cls(appointment.start, appointment.end, appointment.name, appointment.notes)

    @classmethod
    def of_event(cls, event: RemoteEvent) -> MirroredFields:
        return cls(event.start, event.end, event.summary, event.description)

    @classmethod
    def of_ref(cls, ref: ExternalRef) -> MirroredFields:
        return cls(ref.start, ref.end, ref.name, ref.notes)

    @property
    def times(self) -> tuple[datetime | None, datetime | None]:
        return self.start, self.end


def assign_google_calendars(calendars: list[Calendar]) -> dict[str, int]:
    """Map each linked Google calendar id to the local calendar that syncs it.

    A Google calendar belongs to the calendar that pushes into it (lowest
    id wins a tie); ids only linked for reading go to the lowest-id
    calendar linking them.
    """
    owners: dict[str, int] = {}
    for calendar in calendars:
        owners.setdefault(calendar.google.local_google_calendar_id, calendar.id)
    for calendar in calendars:
        for google_id in calendar.google.google_calendar_list:
            owners.setdefault(google_id, calendar.id)
    return owners


def _mirrored_ref(google_id: str, event_id: str, fields: MirroredFields) -> ExternalRef:
    return ExternalRef(
        google_calendar_id=google_id,
        event_id=event_id,
        start=fields.start,
        end=fields.end,
        name=fields.name,
        notes=fields.notes,
    )


class SyncEngine:
    def __init__(
        self,
        calendars: CalendarStore,
        appointments: AppointmentStore,
        contacts: ContactStore,
        synced_events: SyncedEventStore,
        connections: ConnectionManager,
        availability: AvailabilityEngine,
        *,
        timeout: float = 30.0,
        retention: timedelta = timedelta(days=30),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._calendars = calendars
        self._appointments = appointments
        self._contacts = contacts
        self._synced = synced_events
        self._connections = connections
        self._availability = availability
        self._timeout = timeout
        self._retention = retention
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))
        self._connection_locks: dict[int, asyncio.Lock] = {}

    async def _call(self, awaitable):
        """Await a provider call with the outbound timeout."""
        return await asyncio.wait_for(awaitable, timeout=self._timeout)

    def _lock_for(self, connection_id: int) -> asyncio.Lock:
        lock = self._connection_locks.get(connection_id)
        if lock is None:
            lock = self._connection_locks[connection_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    async def reconcile(self, connection_id: int, stop: asyncio.Event | None = None) -> SyncReport:
        """Run one sync pass for a connection. Safe to re-run after failures.

        ``stop`` is checked between calendars; a calendar that has started
        processing always finishes.
        """
        async with self._lock_for(connection_id):
            report = SyncReport(connection_id=connection_id)
            try:
                client = await self._connections.get_client(connection_id)
            except (UnknownConnection, CredentialExpired, CredentialRefreshFailed) as exc:
                logger.warning("Skipping sync for connection %s: %s", connection_id, exc)
                report.error = str(exc)
                return report

            calendars = await self._calendars.list_for_connection(connection_id)
            siblings = {calendar.id: calendar for calendar in calendars}
            owners = assign_google_calendars(calendars)

            for calendar in calendars:
                if stop is not None and stop.is_set():
                    logger.info("Sync for connection %s stopped before calendar %s", connection_id, calendar.id)
                    report.cancelled = True
                    break

                google_ids = [
                    gid for gid in calendar.google.google_calendar_list if owners[gid] == calendar.id
                ]
                try:
                    await self._sync_calendar(client, calendar, google_ids, siblings, report)
                except (ProviderUnavailable, asyncio.TimeoutError) as exc:
                    reason = str(exc) or "provider call timed out"
                    report.failed_calendars[calendar.id] = reason
                    logger.warning("Calendar %s skipped this run: %s", calendar.id, reason)

            await self.cleanup_synced_events(calendar_ids=set(siblings))

        logger.info(
            "Sync for connection %s: %d created, %d updated, %d rescheduled, %d pushed, "
            "%d skipped, %d calendars failed",
            connection_id,
            report.created,
            report.updated,
            report.rescheduled,
            report.pushed,
            report.skipped_events,
            len(report.failed_calendars),
        )
        return report

    async def delete_connection(self, connection_id: int) -> list[int]:
        """Delete a connection once no run is using it; returns detached calendar ids."""
        lock = self._lock_for(connection_id)
        async with lock:
            detached = await self._connections.delete_connection(connection_id, self._calendars)
        if self._connection_locks.get(connection_id) is lock and not lock.locked():
            del self._connection_locks[connection_id]
        return detached

    async def _sync_calendar(
        self,
        client: CalendarProvider,
        calendar: Calendar,
        google_ids: list[str],
        siblings: dict[int, Calendar],
        report: SyncReport,
    ) -> None:
        now = self._clock()

        # Fetch everything first so a transport failure leaves this calendar untouched
        fetched: list[tuple[str, RemoteEvent]] = []
        for google_id in google_ids:
            events = await self._call(client.list_events(google_id, now))
            fetched.extend((google_id, event) for event in events)

        for google_id, event in fetched:
            try:
                await self._apply_event(client, calendar, google_id, event, siblings, report)
            except (BookingCalendarError, ValueError, asyncio.TimeoutError) as exc:
                report.skipped_events += 1
                logger.warning(
                    "Skipping event %s on calendar %s: %s", event.id, calendar.id, str(exc) or "timed out"
                )

        await self._push_unsynced(client, calendar, now, report)

    async def _apply_event(
        self,
        client: CalendarProvider,
        calendar: Calendar,
        google_id: str,
        event: RemoteEvent,
        siblings: dict[int, Calendar],
        report: SyncReport,
    ) -> None:
        if event.start is None or event.end is None or not event.attendees:
            report.skipped_events += 1
            return

        token = decode_event_id(event.id)
        if token is None:
            await self._import_event(client, calendar, google_id, event, report)
            return

        owner = siblings.get(token.calendar_id)
        if owner is None:
            logger.debug("Event %s belongs to calendar %s on another connection", event.id, token.calendar_id)
            return
        try:
            await self._update_from_event(client, owner, google_id, event, token, report)
        except CorrelationMismatch as exc:
            logger.info("%s; dropping its tracking records", exc)
            await self._synced.delete_for_appointment(token.appointment_id)
            await self._synced.delete(calendar.id, event.id)
            report.skipped_events += 1

    async def _import_event(
        self,
        client: CalendarProvider,
        calendar: Calendar,
        google_id: str,
        event: RemoteEvent,
        report: SyncReport,
    ) -> None:
        tracked = await self._synced.get(calendar.id, event.id)
        if tracked is not None and await self._appointments.get(tracked.appointment_id) is not None:
            # Imported earlier but the remote delete did not go through
            if await self._call(client.cancel_event(google_id, event.id)):
                report.remote_deleted += 1
            return

        contact = await self._contacts.resolve(event.attendees[0])
        try:
            appointment = await self._availability.try_book(
                calendar.id,
                contact.id,
                event.start,
                event.end,
                notes=event.description,
                name=event.summary,
                enforce_rules=False,
            )
        except SlotNoLongerAvailable as exc:
            logger.warning("Not importing event %s; keeping it remote: %s", event.id, exc)
            report.skipped_events += 1
            return

        await self._synced.add(
            SyncedEvent(
                calendar_id=calendar.id,
                event_id=event.id,
                appointment_id=appointment.id,
                synced_at=self._clock(),
            )
        )
        report.created += 1
        logger.info("Imported event %s as appointment %s", event.id, appointment.id)

        if await self._call(client.cancel_event(google_id, event.id)):
            report.remote_deleted += 1

    async def _update_from_event(
        self,
        client: CalendarProvider,
        calendar: Calendar,
        google_id: str,
        event: RemoteEvent,
        token: CorrelationToken,
        report: SyncReport,
    ) -> None:
        appointment = await self._appointments.get(token.appointment_id)
        if appointment is None or appointment.calendar_id != calendar.id:
            raise CorrelationMismatch(
                f"Event {event.id} points to missing appointment {token.appointment_id}"
            )

        if not appointment.is_active:
            # Cancelled locally: the remote mirror goes too
            if await self.remove_appointment(appointment, client=client):
                report.remote_deleted += 1
            return

        ref = appointment.external or ExternalRef(google_calendar_id=google_id, event_id=event.id)
        remote = MirroredFields.of_event(event)
        local = MirroredFields.of_appointment(appointment)
        # Without a recorded mirror state every difference counts as a remote edit
        base = MirroredFields.of_ref(ref) if ref.has_snapshot else local

        if remote.times != base.times and local.times == base.times:
            try:
                appointment = await self._availability.reschedule(appointment.id, event.start, event.end)
            except SlotNoLongerAvailable as exc:
                logger.warning("Not applying remote move of appointment %s: %s", appointment.id, exc)
                report.skipped_events += 1
                return
            report.rescheduled += 1

        details = {}
        if remote.name != base.name and local.name == base.name:
            details["name"] = event.summary
        if remote.notes != base.notes and local.notes == base.notes:
            details["notes"] = event.description
        if details:
            appointment = await self._availability.update_details(appointment.id, **details)
            report.updated += 1

        if MirroredFields.of_appointment(appointment) != remote:
            # Edited locally since the last mirror; the local version wins
            await self.push_appointment(appointment.model_copy(update={"external": ref}), client=client)
            report.pushed += 1
        elif not ref.has_snapshot or MirroredFields.of_ref(ref) != remote:
            await self._availability.update_details(
                appointment.id, external=_mirrored_ref(ref.google_calendar_id, ref.event_id, remote)
            )

    # ------------------------------------------------------------------
    # Outward mirror
    # ------------------------------------------------------------------

    async def _push_unsynced(
        self, client: CalendarProvider, calendar: Calendar, now: datetime, report: SyncReport
    ) -> None:
        for appointment in await self._appointments.list_unsynced(calendar.id, now):
            try:
                await self.push_appointment(appointment, client=client)
            except (ProviderUnavailable, asyncio.TimeoutError) as exc:
                logger.warning("Could not push appointment %s: %s", appointment.id, str(exc) or "timed out")
                continue
            report.pushed += 1

    async def push_appointment(
        self, appointment: Appointment, client: CalendarProvider | None = None
    ) -> Appointment:
        """Create or update the remote mirror of an appointment.

        New mirrors are created under the encoded event id on the
        calendar's local Google calendar. The pushed fields are recorded on
        the appointment's external ref. Local-only calendars are a no-op.
        """
        calendar = await self._calendars.get(appointment.calendar_id)
        if calendar is None or calendar.google is None:
            return appointment
        if client is None:
            client = await self._connections.get_client(calendar.google.connection_id)

        contact = await self._contacts.get(appointment.contact_id)
        event = CalendarEvent(
            summary=appointment.name,
            start=appointment.start,
            end=appointment.end,
            description=appointment.notes,
            attendees=[contact.email] if contact else [],
        )

        if appointment.external is not None:
            google_id = appointment.external.google_calendar_id
            event_id = appointment.external.event_id
            await self._call(client.update_event(google_id, event_id, event))
            logger.info("Updated event %s from appointment %s", event_id, appointment.id)
        else:
            event_id = event.event_id = encode_event_id(calendar.id, appointment.id)
            google_id = calendar.google.local_google_calendar_id
            await self._call(client.create_event(google_id, event))
            logger.info("Pushed appointment %s as event %s", appointment.id, event_id)

        return await self._availability.update_details(
            appointment.id,
            external=_mirrored_ref(google_id, event_id, MirroredFields.of_appointment(appointment)),
        )

    async def remove_appointment(
        self, appointment: Appointment, client: CalendarProvider | None = None
    ) -> bool:
        """Delete the remote mirror of an appointment, if it has one."""
        if appointment.external is None:
            return False
        calendar = await self._calendars.get(appointment.calendar_id)
        if client is None:
            if calendar is None or calendar.google is None:
                return False
            client = await self._connections.get_client(calendar.google.connection_id)

        ref = appointment.external
        if not await self._call(client.cancel_event(ref.google_calendar_id, ref.event_id)):
            return False
        await self._availability.update_details(appointment.id, external=None)
        return True

    # ------------------------------------------------------------------
    # Tracking records
    # ------------------------------------------------------------------

    async def cleanup_synced_events(self, calendar_ids: set[int] | None = None) -> int:
        """Purge tracking records past retention or whose appointment is gone.

        ``calendar_ids`` limits the purge to records of those calendars.
        """
        cutoff = self._clock() - self._retention
        removed = 0
        for record in await self._synced.list_all():
            if calendar_ids is not None and record.calendar_id not in calendar_ids:
                continue
            if record.synced_at < cutoff or await self._appointments.get(record.appointment_id) is None:
                await self._synced.delete(record.calendar_id, record.event_id)
                removed += 1
        if removed:
            logger.info("Removed %d stale synced-event records", removed)
        return removed
