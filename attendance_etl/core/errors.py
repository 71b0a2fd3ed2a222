# attendance_etl/core/errors.py
from __future__ import annotations


class AttendanceEtlError(Exception):
    """Base class for errors raised by attendance_etl."""


class ConfigurationError(AttendanceEtlError):
    """Required configuration (credentials, URLs) is missing."""


class FatalJobError(AttendanceEtlError):
    """The run cannot continue; progress is flushed before this propagates."""


class TransientFetchError(AttendanceEtlError):
    """An outbound request kept failing after every retry."""


class DisentangleDeclined(AttendanceEtlError):
    """A split was refused because the data cannot tell the groups apart."""

    def __init__(self, event_id: str, reason: str):
        super().__init__(f"event {event_id}: {reason}")
        self.event_id = event_id
        self.reason = reason


class NotFoundError(AttendanceEtlError):
    """A referenced event, attendee or member does not exist."""
