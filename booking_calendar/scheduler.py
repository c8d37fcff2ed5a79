"""Periodic triggers for the sync engine.

Two interval jobs run on an ``AsyncIOScheduler``:

  * ``sync_all``             every ``sync_interval_minutes`` (15 by default)
  * ``sync_calendar_lists``  every ``calendar_list_sync_hours`` (twice daily)

Connections are reconciled concurrently; each job is limited to one
running instance so a slow tick is never overlapped by the next one.
"""

from __future__ import annotations

import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from booking_calendar.connections import ConnectionManager
from booking_calendar.errors import BookingCalendarError
from booking_calendar.stores import ConnectionStore
from booking_calendar.sync import SyncEngine, SyncReport

log = logging.getLogger("booking_calendar.scheduler")


class SyncScheduler:
    def __init__(
        self,
        engine: SyncEngine,
        connections: ConnectionManager,
        connection_store: ConnectionStore,
        *,
        sync_interval_minutes: int = 15,
        calendar_list_sync_hours: int = 12,
    ) -> None:
        self._engine = engine
        self._connections = connections
        self._connection_store = connection_store
        self._sync_interval_minutes = sync_interval_minutes
        self._calendar_list_sync_hours = calendar_list_sync_hours
        self._scheduler: AsyncIOScheduler | None = None
        self._stop = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Register the interval jobs. Must be called from a running event loop."""
        if self.running:
            return
        self._stop.clear()
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.sync_all,
            trigger="interval",
            minutes=self._sync_interval_minutes,
            id="sync_all",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self.sync_calendar_lists,
            trigger="interval",
            hours=self._calendar_list_sync_hours,
            id="sync_calendar_lists",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        log.info(
            "Sync scheduler started (every %d min, calendar lists every %d h)",
            self._sync_interval_minutes,
            self._calendar_list_sync_hours,
        )

    def shutdown(self) -> None:
        # In-flight runs stop at the next calendar boundary
        self._stop.set()
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        log.info("Sync scheduler stopped")

    async def sync_all(self) -> list[SyncReport]:
        """Reconcile every connection once, concurrently."""
        connections = await self._connection_store.list_all()
        results = await asyncio.gather(
            *(self._engine.reconcile(c.id, stop=self._stop) for c in connections),
            return_exceptions=True,
        )

        reports: list[SyncReport] = []
        for connection, result in zip(connections, results):
            if isinstance(result, BaseException):
                log.error(
                    "Sync for connection %s failed: %s",
                    connection.id,
                    result,
                    exc_info=result,
                )
                reports.append(SyncReport(connection_id=connection.id, error=str(result)))
            else:
                reports.append(result)
        return reports

    async def sync_calendar_lists(self) -> None:
        """Refresh the stored calendar list of every connection."""
        for connection in await self._connection_store.list_all():
            if self._stop.is_set():
                return
            try:
                await self._connections.sync_calendar_list(connection.id)
            except (BookingCalendarError, asyncio.TimeoutError) as exc:
                log.warning(
                    "Calendar list sync failed for connection %s: %s",
                    connection.id,
                    str(exc) or "timed out",
                )
