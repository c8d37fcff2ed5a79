"""FastAPI application: availability and booking endpoints.

Endpoints:

  GET  /health                              Health check
  GET  /calendars/{id}/slots?date=...       Bookable slots for one day
  POST /calendars/{id}/appointments         Book a slot
  POST /appointments/{id}/reschedule        Move an appointment
  POST /appointments/{id}/cancel            Cancel an appointment

The Google sync runs on a background scheduler started in the app lifespan.
"""

from __future__ import annotations

# Load .env into os.environ before settings are read
from dotenv import load_dotenv
load_dotenv()

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, timedelta

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.responses import JSONResponse

from booking_calendar.availability import AvailabilityEngine
from booking_calendar.config import Settings, settings
from booking_calendar.connections import ConnectionManager, GoogleTokenRefresher
from booking_calendar.errors import (
    ConfigurationError,
    SlotNoLongerAvailable,
    UnknownAppointment,
    UnknownCalendar,
)
from booking_calendar.models import (
    Appointment,
    BookingRequest,
    RescheduleRequest,
    SlotResponse,
    SlotsResponse,
)
from booking_calendar.scheduler import SyncScheduler
from booking_calendar.stores import (
    InMemoryAppointmentStore,
    InMemoryCalendarStore,
    InMemoryConnectionStore,
    InMemoryContactStore,
    InMemorySyncedEventStore,
)
from booking_calendar.sync import SyncEngine

log = logging.getLogger("booking_calendar.app")

_START_TIME = time.time()


@dataclass
class Services:
    """Everything the HTTP layer and the scheduler need, wired together."""

    calendars: InMemoryCalendarStore
    appointments: InMemoryAppointmentStore
    contacts: InMemoryContactStore
    connection_store: InMemoryConnectionStore
    synced_events: InMemorySyncedEventStore
    availability: AvailabilityEngine
    connections: ConnectionManager
    sync: SyncEngine
    scheduler: SyncScheduler


def build_services(config: Settings = settings) -> Services:
    """Wire stores, engines and the scheduler from settings."""
    calendars = InMemoryCalendarStore()
    appointments = InMemoryAppointmentStore()
    contacts = InMemoryContactStore()
    connection_store = InMemoryConnectionStore()
    synced_events = InMemorySyncedEventStore()

    availability = AvailabilityEngine(calendars, appointments)
    connections = ConnectionManager(
        connection_store,
        GoogleTokenRefresher(config.google_client_id, config.google_client_secret),
        timeout=config.provider_timeout_seconds,
        leeway=timedelta(seconds=config.token_refresh_leeway_seconds),
    )
    sync = SyncEngine(
        calendars,
        appointments,
        contacts,
        synced_events,
        connections,
        availability,
        timeout=config.provider_timeout_seconds,
        retention=timedelta(days=config.synced_event_retention_days),
    )
    scheduler = SyncScheduler(
        sync,
        connections,
        connection_store,
        sync_interval_minutes=config.sync_interval_minutes,
        calendar_list_sync_hours=config.calendar_list_sync_hours,
    )
    return Services(
        calendars=calendars,
        appointments=appointments,
        contacts=contacts,
        connection_store=connection_store,
        synced_events=synced_events,
        availability=availability,
        connections=connections,
        sync=sync,
        scheduler=scheduler,
    )


def create_app(services: Services | None = None, config: Settings = settings) -> FastAPI:
    """Create and configure the FastAPI application."""
    services = services or build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for warning in config.validate_startup():
            log.warning(warning)
        if config.sync_enabled:
            services.scheduler.start()
        yield
        services.scheduler.shutdown()

    app = FastAPI(
        title="Booking Calendar",
        description="Bookable time slots mirrored against Google Calendar",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse(
            {"status": "ok", "uptime": uptime, "sync_running": services.scheduler.running}
        )

    # ── Availability ───────────────────────────────────────────

    @app.get("/calendars/{calendar_id}/slots", response_model=SlotsResponse)
    async def list_slots(
        calendar_id: int,
        day: date = Query(alias="date", description="Day in YYYY-MM-DD format"),
    ) -> SlotsResponse:
        """Return the bookable slots of one day, in the calendar's timezone."""
        try:
            slots = await services.availability.get_slots(calendar_id, day)
        except UnknownCalendar as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        except ConfigurationError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))

        return SlotsResponse(
            calendar_id=calendar_id,
            date=day.isoformat(),
            slots=[SlotResponse(start=s.start, end=s.end) for s in slots],
        )

    # ── Booking ────────────────────────────────────────────────

    @app.post(
        "/calendars/{calendar_id}/appointments",
        response_model=Appointment,
        status_code=status.HTTP_201_CREATED,
    )
    async def book(calendar_id: int, request: BookingRequest) -> Appointment:
        try:
            return await services.availability.try_book(
                calendar_id,
                request.contact_id,
                request.start,
                request.end,
                notes=request.notes,
                name=request.name,
            )
        except UnknownCalendar as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        except SlotNoLongerAvailable as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
        except (ConfigurationError, ValueError) as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))

    @app.post("/appointments/{appointment_id}/reschedule", response_model=Appointment)
    async def reschedule(appointment_id: int, request: RescheduleRequest) -> Appointment:
        try:
            return await services.availability.reschedule(
                appointment_id, request.start, request.end
            )
        except (UnknownAppointment, UnknownCalendar) as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        except SlotNoLongerAvailable as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))

    @app.post("/appointments/{appointment_id}/cancel", response_model=Appointment)
    async def cancel(appointment_id: int) -> Appointment:
        try:
            return await services.availability.cancel(appointment_id)
        except UnknownAppointment as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))

    return app


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "booking_calendar.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )
