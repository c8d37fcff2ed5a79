"""Google Calendar provider implementation.

Talks to the Calendar API v3 with a user access token handed out by the
connection manager. The token is wrapped in ``google.oauth2`` credentials
without a refresh token: refreshing is the connection manager's job.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any

from google.auth.exceptions import GoogleAuthError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from booking_calendar.errors import ProviderUnavailable

from .base import CalendarEvent, CalendarProvider, RemoteCalendar, RemoteEvent

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]

_PROVIDER_ERRORS = (HttpError, GoogleAuthError, OSError)


class GoogleCalendarProvider(CalendarProvider):
    """CalendarProvider backed by Google Calendar API v3."""

    def __init__(self, access_token: str) -> None:
        if not access_token:
            raise ValueError("An access token is required to build a Google Calendar client.")
        self._credentials = Credentials(token=access_token, scopes=SCOPES)
        self._service = build(
            "calendar", "v3", credentials=self._credentials, cache_discovery=False
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run_in_executor(self, func, *args, **kwargs) -> Any:
        """Run a synchronous Google API call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, partial(func, *args, **kwargs)
        )

    async def _execute(self, request, action: str) -> Any:
        """Execute a prepared API request, mapping failures to ProviderUnavailable."""
        try:
            return await self._run_in_executor(request.execute)
        except HttpError as exc:
            raise ProviderUnavailable(
                f"Google Calendar {action} failed ({exc.resp.status})",
                status_code=exc.resp.status,
            ) from exc
        except _PROVIDER_ERRORS as exc:
            raise ProviderUnavailable(f"Google Calendar {action} failed: {exc}") from exc

    @staticmethod
    def _to_rfc3339(dt: datetime) -> str:
        """Convert a datetime to an RFC 3339 string with timezone."""
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.isoformat()

    @staticmethod
    def _parse_time(value: dict | None) -> datetime | None:
        # All-day events carry "date" instead of "dateTime"
        if not value or not value.get("dateTime"):
            return None
        return datetime.fromisoformat(value["dateTime"]).astimezone(timezone.utc)

    @classmethod
    def _parse_event(cls, item: dict) -> RemoteEvent:
        return RemoteEvent(
            id=item["id"],
            summary=item.get("summary", ""),
            description=item.get("description", ""),
            start=cls._parse_time(item.get("start")),
            end=cls._parse_time(item.get("end")),
            attendees=[a["email"] for a in item.get("attendees", []) if a.get("email")],
        )

    def _event_body(self, event: CalendarEvent) -> dict[str, Any]:
        body: dict[str, Any] = {
            "summary": event.summary,
            "description": event.description,
            "start": {"dateTime": self._to_rfc3339(event.start)},
            "end": {"dateTime": self._to_rfc3339(event.end)},
        }
        if event.attendees:
            body["attendees"] = [
                {"email": addr} for addr in event.attendees
            ]
        return body

    # ------------------------------------------------------------------
    # CalendarProvider interface
    # ------------------------------------------------------------------

    async def list_calendars(self) -> list[RemoteCalendar]:
        calendars: list[RemoteCalendar] = []
        page_token = None
        while True:
            response = await self._execute(
                self._service.calendarList().list(pageToken=page_token),
                "calendar list",
            )
            for item in response.get("items", []):
                calendars.append(
                    RemoteCalendar(
                        id=item["id"],
                        summary=item.get("summary", ""),
                        primary=bool(item.get("primary", False)),
                    )
                )
            page_token = response.get("nextPageToken")
            if not page_token:
                return calendars

    async def list_events(
        self, calendar_id: str, time_min: datetime
    ) -> list[RemoteEvent]:
        """List upcoming single events, following pagination."""
        events: list[RemoteEvent] = []
        page_token = None
        while True:
            response = await self._execute(
                self._service.events().list(
                    calendarId=calendar_id,
                    orderBy="startTime",
                    singleEvents=True,
                    timeMin=self._to_rfc3339(time_min),
                    timeZone="UTC",
                    pageToken=page_token,
                ),
                "event list",
            )
            events.extend(self._parse_event(item) for item in response.get("items", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        logger.debug("Fetched %d events from calendar %s", len(events), calendar_id)
        return events

    async def create_event(
        self, calendar_id: str, event: CalendarEvent
    ) -> dict:
        """Insert an event, or update it if ``event.event_id`` already exists."""
        body = self._event_body(event)
        if event.event_id:
            body["id"] = event.event_id

        try:
            result = await self._execute(
                self._service.events().insert(
                    calendarId=calendar_id,
                    body=body,
                    sendUpdates="none",
                ),
                "event insert",
            )
        except ProviderUnavailable as exc:
            if exc.status_code != 409 or not event.event_id:
                raise
            logger.info(
                "Event %s already exists on calendar %s; updating instead",
                event.event_id,
                calendar_id,
            )
            return await self.update_event(calendar_id, event.event_id, event)

        logger.info("Created event %s on calendar %s", result["id"], calendar_id)

        return {
            "event_id": result["id"],
            "html_link": result.get("htmlLink", ""),
            "status": result.get("status", "confirmed"),
        }

    async def update_event(
        self, calendar_id: str, event_id: str, event: CalendarEvent
    ) -> dict:
        result = await self._execute(
            self._service.events().patch(
                calendarId=calendar_id,
                eventId=event_id,
                body=self._event_body(event),
                sendUpdates="none",
            ),
            "event update",
        )
        logger.info("Updated event %s on calendar %s", event_id, calendar_id)
        return {
            "event_id": result.get("id", event_id),
            "html_link": result.get("htmlLink", ""),
            "status": result.get("status", "confirmed"),
        }

    async def cancel_event(
        self, calendar_id: str, event_id: str
    ) -> bool:
        """Delete an event from Google Calendar."""
        try:
            await self._execute(
                self._service.events().delete(calendarId=calendar_id, eventId=event_id),
                "event delete",
            )
            logger.info(
                "Cancelled event %s on calendar %s", event_id, calendar_id
            )
            return True
        except ProviderUnavailable:
            logger.exception(
                "Failed to cancel event %s on calendar %s",
                event_id,
                calendar_id,
            )
            return False
