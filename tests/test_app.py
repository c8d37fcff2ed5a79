"""Tests for the FastAPI availability and booking endpoints."""

from datetime import datetime

import httpx
import pytest

from conftest import NOW, at, make_calendar

from booking_calendar.app import build_services, create_app
from booking_calendar.availability import AvailabilityEngine
from booking_calendar.config import Settings


@pytest.fixture
def services():
    config = Settings(sync_enabled=False)
    services = build_services(config)
    services.availability = AvailabilityEngine(
        services.calendars, services.appointments, clock=lambda: NOW
    )
    return services


@pytest.fixture
async def client(services):
    app = create_app(services, config=Settings(sync_enabled=False))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
async def calendar(services):
    return await services.calendars.save(make_calendar())


def booking(hour, minute=0, **extra):
    body = {
        "contact_id": 1,
        "start": at(hour, minute).isoformat(),
        "end": at(hour, minute + 30).isoformat(),
    }
    body.update(extra)
    return body


class TestHealth:
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["sync_running"] is False


class TestSlots:
    async def test_lists_day_slots(self, client, calendar):
        resp = await client.get(f"/calendars/{calendar.id}/slots", params={"date": "2026-03-09"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["date"] == "2026-03-09"
        starts = [datetime.fromisoformat(s["start"]) for s in data["slots"]]
        assert starts == [at(9), at(9, 30), at(10), at(10, 30), at(11), at(11, 30)]

    async def test_booked_slot_disappears(self, client, calendar):
        await client.post(f"/calendars/{calendar.id}/appointments", json=booking(10))
        resp = await client.get(f"/calendars/{calendar.id}/slots", params={"date": "2026-03-09"})
        starts = [datetime.fromisoformat(s["start"]) for s in resp.json()["slots"]]
        assert at(10) not in starts
        assert len(starts) == 5

    async def test_unknown_calendar(self, client):
        resp = await client.get("/calendars/404/slots", params={"date": "2026-03-09"})
        assert resp.status_code == 404

    async def test_bad_date(self, client, calendar):
        resp = await client.get(f"/calendars/{calendar.id}/slots", params={"date": "tomorrow"})
        assert resp.status_code == 422


class TestBooking:
    async def test_book_slot(self, client, calendar):
        resp = await client.post(
            f"/calendars/{calendar.id}/appointments", json=booking(10, name="Viewing")
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "pending"
        assert data["name"] == "Viewing"
        assert datetime.fromisoformat(data["start"]) == at(10)

    async def test_double_booking_conflicts(self, client, calendar):
        first = await client.post(f"/calendars/{calendar.id}/appointments", json=booking(10))
        second = await client.post(f"/calendars/{calendar.id}/appointments", json=booking(10))
        assert first.status_code == 201
        assert second.status_code == 409

    async def test_unknown_calendar(self, client):
        resp = await client.post("/calendars/404/appointments", json=booking(10))
        assert resp.status_code == 404

    async def test_inverted_interval_rejected(self, client, calendar):
        body = booking(10)
        body["start"], body["end"] = body["end"], body["start"]
        resp = await client.post(f"/calendars/{calendar.id}/appointments", json=body)
        assert resp.status_code == 422


class TestAppointmentChanges:
    async def test_reschedule(self, client, calendar):
        created = (await client.post(f"/calendars/{calendar.id}/appointments", json=booking(10))).json()
        resp = await client.post(
            f"/appointments/{created['id']}/reschedule",
            json={"start": at(11).isoformat(), "end": at(11, 30).isoformat()},
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "rescheduled"
        assert datetime.fromisoformat(resp.json()["start"]) == at(11)

    async def test_reschedule_into_taken_slot(self, client, calendar):
        await client.post(f"/calendars/{calendar.id}/appointments", json=booking(9))
        created = (await client.post(f"/calendars/{calendar.id}/appointments", json=booking(10))).json()
        resp = await client.post(
            f"/appointments/{created['id']}/reschedule",
            json={"start": at(9).isoformat(), "end": at(9, 30).isoformat()},
        )
        assert resp.status_code == 409

    async def test_cancel_frees_slot(self, client, calendar):
        created = (await client.post(f"/calendars/{calendar.id}/appointments", json=booking(10))).json()
        resp = await client.post(f"/appointments/{created['id']}/cancel")
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"

        again = await client.post(f"/calendars/{calendar.id}/appointments", json=booking(10))
        assert again.status_code == 201

    async def test_cancel_unknown(self, client):
        resp = await client.post("/appointments/999/cancel")
        assert resp.status_code == 404
