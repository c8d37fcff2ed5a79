"""Data models for the booking calendar."""

from .appointment import ACTIVE_STATUSES, Appointment, AppointmentStatus, Contact, ExternalRef
from .booking import BookingRequest, RescheduleRequest, SlotResponse, SlotsResponse
from .calendar import (
    BookingPeriod,
    Calendar,
    GoogleCalendarMapping,
    OpenInterval,
    PeriodUnit,
    Weekday,
)
from .connection import ExternalCalendar, ExternalConnection, SyncedEvent

__all__ = [
    "ACTIVE_STATUSES",
    "Appointment",
    "AppointmentStatus",
    "BookingPeriod",
    "BookingRequest",
    "Calendar",
    "Contact",
    "ExternalCalendar",
    "ExternalConnection",
    "ExternalRef",
    "GoogleCalendarMapping",
    "OpenInterval",
    "PeriodUnit",
    "RescheduleRequest",
    "SlotResponse",
    "SlotsResponse",
    "SyncedEvent",
    "Weekday",
]
