from __future__ import annotations


class CalendarError(Exception):
    """Base class for errors raised by the scheduling layer."""


class CalendarUnavailableError(CalendarError):
    """No usable upstream credentials; retrying immediately will not help."""


class SessionValidationError(CalendarError, ValueError):
    """The booking request itself is malformed; retrying will not help."""


class CalendarBookingError(CalendarError):
    """A session event could not be created after retries and fallbacks."""

    def __init__(self, message: str, *, calendar_id: str | None = None) -> None:
        super().__init__(message)
        self.calendar_id = calendar_id


class MissingConferenceError(CalendarBookingError):
    """The upstream event was created without a video entry point."""

    def __init__(
        self, message: str, *, calendar_id: str | None = None, event_id: str | None = None
    ) -> None:
        super().__init__(message, calendar_id=calendar_id)
        self.event_id = event_id


class DelegationFallbackError(CalendarBookingError):
    """Both the delegated provider calendar and the admin fallback failed."""

    def __init__(
        self, message: str, *, original_calendar_id: str, fallback_calendar_id: str
    ) -> None:
        super().__init__(message, calendar_id=fallback_calendar_id)
        self.original_calendar_id = original_calendar_id
        self.fallback_calendar_id = fallback_calendar_id
