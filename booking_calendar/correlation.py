"""Correlation tokens embedded in external event ids.

An appointment pushed to Google is created under the event id
``ghcalendarcid<calendar id>aid<appointment id>``. Google-generated ids
never contain the ``ghcalendar`` prefix, so any event whose id carries a
token was created by us and maps back to exactly one appointment.
"""

from __future__ import annotations

import re
from typing import NamedTuple

TOKEN_PREFIX = "ghcalendar"

_TOKEN_RE = re.compile(rf"{TOKEN_PREFIX}cid([1-9][0-9]*)aid([1-9][0-9]*)")


class CorrelationToken(NamedTuple):
    calendar_id: int
    appointment_id: int


def encode_event_id(calendar_id: int, appointment_id: int) -> str:
    if calendar_id < 1 or appointment_id < 1:
        raise ValueError("calendar and appointment ids must be positive integers")
    return f"{TOKEN_PREFIX}cid{calendar_id}aid{appointment_id}"


def decode_event_id(event_id: str) -> CorrelationToken | None:
    """Return the token embedded in ``event_id``, or None for foreign events."""
    match = _TOKEN_RE.search(event_id)
    if match is None:
        return None
    return CorrelationToken(int(match.group(1)), int(match.group(2)))
