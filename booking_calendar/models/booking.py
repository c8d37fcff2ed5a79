"""Pydantic models for booking requests and responses."""

from datetime import datetime

from pydantic import BaseModel


class BookingRequest(BaseModel):
    """A request to reserve ``[start, end)`` on a calendar."""

    contact_id: int
    start: datetime
    end: datetime
    notes: str = ""
    name: str = ""


class RescheduleRequest(BaseModel):
    start: datetime
    end: datetime


class SlotResponse(BaseModel):
    """One bookable slot, in the calendar's timezone."""

    start: datetime
    end: datetime


class SlotsResponse(BaseModel):
    calendar_id: int
    date: str  # YYYY-MM-DD
    slots: list[SlotResponse]
