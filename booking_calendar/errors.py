"""Exception taxonomy for the booking calendar.

Failures scoped to one calendar or connection are caught by the sync
engine and recorded in its report; only configuration errors on the
calendar being booked against reach a booking caller synchronously.
"""

from __future__ import annotations


class BookingCalendarError(Exception):
    """Base class for all booking calendar errors."""


class ConfigurationError(BookingCalendarError):
    """Calendar rules are invalid (zero slot length, overlapping hours...)."""


class SlotNoLongerAvailable(BookingCalendarError):
    """The requested interval conflicts with an existing booking.

    Callers should re-query availability and pick another slot.
    """


class CredentialExpired(BookingCalendarError):
    """Access token expired and the connection has no refresh capability."""


class CredentialRefreshFailed(BookingCalendarError):
    """The refresh-token exchange failed or timed out."""


class ProviderUnavailable(BookingCalendarError):
    """The calendar provider could not be reached or returned an error."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class CorrelationMismatch(BookingCalendarError):
    """An encoded event id points to an appointment that no longer exists."""


class UnknownCalendar(BookingCalendarError):
    pass


class UnknownAppointment(BookingCalendarError):
    pass


class UnknownConnection(BookingCalendarError):
    pass
