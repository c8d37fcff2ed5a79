"""Bookable calendar slots with two-way Google Calendar sync."""

__version__ = "0.1.0"
