"""External connection manager: hands out usable provider clients.

This module is the only place that reads token secrets. An expired access
token is refreshed transparently when the connection carries a refresh
token; concurrent callers for the same connection wait on one in-flight
refresh instead of issuing their own.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx
from pydantic import SecretStr

from booking_calendar.calendar_providers.base import CalendarProvider
from booking_calendar.calendar_providers.google import GoogleCalendarProvider
from booking_calendar.errors import (
    CredentialExpired,
    CredentialRefreshFailed,
    UnknownConnection,
)
from booking_calendar.models import ExternalCalendar, ExternalConnection
from booking_calendar.stores import CalendarStore, ConnectionStore

logger = logging.getLogger("booking_calendar.connections")

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"

ClientFactory = Callable[[str], CalendarProvider]


@dataclass
class RefreshedToken:
    access_token: str
    expires_in: int = 3600  # seconds


class TokenRefresher(ABC):
    """Exchanges a refresh token for a new access token."""

    @abstractmethod
    async def refresh(self, refresh_token: str) -> RefreshedToken:
        """Raise CredentialRefreshFailed if the exchange does not succeed."""


class GoogleTokenRefresher(TokenRefresher):
    """Refresh-token exchange against Google's OAuth token endpoint."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        if not self._client_id or not self._client_secret:
            raise CredentialRefreshFailed("Google OAuth client id/secret are not configured")

        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CredentialRefreshFailed(f"Google OAuth token refresh request failed: {exc}") from exc

        if response.status_code != 200:
            raise CredentialRefreshFailed(f"Google OAuth token refresh failed ({response.status_code})")

        try:
            payload = response.json()
        except ValueError as exc:
            raise CredentialRefreshFailed("Google OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CredentialRefreshFailed("Google OAuth token response has no access_token")

        expires_in = payload.get("expires_in", 3600)
        if not isinstance(expires_in, int) or isinstance(expires_in, bool) or expires_in <= 0:
            expires_in = 3600
        return RefreshedToken(access_token=access_token.strip(), expires_in=expires_in)

    async def aclose(self) -> None:
        await self._http_client.aclose()


class ConnectionManager:
    """Owns connection credentials and builds provider clients from them."""

    def __init__(
        self,
        store: ConnectionStore,
        refresher: TokenRefresher,
        *,
        client_factory: ClientFactory | None = None,
        timeout: float = 30.0,
        leeway: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._refresher = refresher
        self._client_factory = client_factory or GoogleCalendarProvider
        self._timeout = timeout
        self._leeway = leeway
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))
        self._refresh_locks: dict[int, asyncio.Lock] = {}

    async def _load(self, connection_id: int) -> ExternalConnection:
        connection = await self._store.get(connection_id)
        if connection is None:
            raise UnknownConnection(f"Connection {connection_id} does not exist")
        return connection

    def _is_fresh(self, connection: ExternalConnection) -> bool:
        return not connection.is_expired(self._clock(), self._leeway)

    async def get_client(self, connection_id: int) -> CalendarProvider:
        """Return a provider client with a valid access token.

        Raises:
            UnknownConnection: the connection was deleted.
            CredentialExpired: the token expired and cannot be refreshed.
            CredentialRefreshFailed: the refresh exchange failed or timed out.
        """
        token = await self._access_token(connection_id)
        return self._client_factory(token)

    async def _access_token(self, connection_id: int) -> str:
        connection = await self._load(connection_id)
        if self._is_fresh(connection):
            return connection.access_token.get_secret_value()
        if not connection.can_refresh:
            raise CredentialExpired(f"Access token of connection {connection_id} has expired")

        lock = self._refresh_locks.get(connection_id)
        if lock is None:
            lock = self._refresh_locks[connection_id] = asyncio.Lock()

        async with lock:
            # Another caller may have refreshed while we waited
            connection = await self._load(connection_id)
            if self._is_fresh(connection):
                return connection.access_token.get_secret_value()
            connection = await self._refresh(connection)
            return connection.access_token.get_secret_value()

    async def _refresh(self, connection: ExternalConnection) -> ExternalConnection:
        logger.info("Refreshing access token for connection %s", connection.id)
        try:
            refreshed = await asyncio.wait_for(
                self._refresher.refresh(connection.refresh_token.get_secret_value()),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise CredentialRefreshFailed(
                f"Token refresh for connection {connection.id} timed out"
            ) from exc

        updated = connection.model_copy(
            update={
                "access_token": SecretStr(refreshed.access_token),
                "expires_at": self._clock() + timedelta(seconds=refreshed.expires_in),
            }
        )
        updated = await self._store.save(updated)
        logger.info("Access token refreshed for connection %s", connection.id)
        return updated

    async def sync_calendar_list(self, connection_id: int) -> list[ExternalCalendar]:
        """Fetch and store the calendars visible through a connection."""
        client = await self.get_client(connection_id)
        remote = await asyncio.wait_for(client.list_calendars(), timeout=self._timeout)
        calendars = [
            ExternalCalendar(
                connection_id=connection_id,
                calendar_id=item.id,
                summary=item.summary,
                primary=item.primary,
            )
            for item in remote
        ]
        await self._store.save_calendars(connection_id, calendars)
        logger.info("Stored %d calendars for connection %s", len(calendars), connection_id)
        return calendars

    async def delete_connection(self, connection_id: int, calendars: CalendarStore) -> list[int]:
        """Delete a connection; calendars using it fall back to local-only.

        Returns the ids of the calendars that were detached.
        """
        detached = []
        for calendar in await calendars.list_for_connection(connection_id):
            await calendars.save(calendar.model_copy(update={"google": None}))
            detached.append(calendar.id)
        await self._store.delete(connection_id)
        self._refresh_locks.pop(connection_id, None)
        logger.info(
            "Deleted connection %s; detached calendars %s", connection_id, detached
        )
        return detached
