from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Generic, List, Optional, TypeVar


T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to an aware UTC instant; naive values are UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_rfc3339(value: datetime) -> str:
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


class AttendeeRole(str, Enum):
    CLIENT = "client"
    PROVIDER = "provider"


class SessionCategory(str, Enum):
    """Explicit routing tag assigned by the caller for each booking."""

    THERAPY = "therapy"
    ADMINISTRATIVE = "administrative"


@dataclass(frozen=True)
class ProviderCalendarInfo:
    provider_id: str
    calendar_id: str
    delegated_account_email: str = ""
    is_configured: bool = False
    provider_display_name: str = ""


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


@dataclass
class Attendee:
    email: str
    display_name: str = ""
    role: AttendeeRole = AttendeeRole.CLIENT


@dataclass
class SessionEvent:
    event_id: str
    calendar_id: str
    title: str
    description: str
    start_time: datetime
    end_time: datetime
    attendees: List[Attendee] = field(default_factory=list)
    conference_url: Optional[str] = None
    conference_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.start_time = ensure_utc(self.start_time)
        self.end_time = ensure_utc(self.end_time)
        if self.start_time >= self.end_time:
            raise ValueError("SessionEvent start_time must be before end_time")


@dataclass
class SessionEventSpec:
    """Everything needed to create one session event."""

    title: str
    start_time: datetime
    end_time: datetime
    attendees: List[Attendee] = field(default_factory=list)
    description: str = ""
    appointment_id: Optional[str] = None
    provider_id: Optional[str] = None
    session_category: Optional[SessionCategory] = None
    session_type: Optional[str] = None
    force_admin_calendar: Optional[bool] = None
    # Defaults to end_time - start_time when not supplied.
    session_duration: Optional[timedelta] = None
    buffer_minutes: Optional[int] = None


@dataclass
class SessionEventChanges:
    title: Optional[str] = None
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    attendees: Optional[List[Attendee]] = None

    def is_empty(self) -> bool:
        return (
            self.title is None
            and self.description is None
            and self.start_time is None
            and self.end_time is None
            and self.attendees is None
        )


@dataclass
class EventLookup:
    exists: bool
    title: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    attendees: Optional[List[str]] = None
    conference_url: Optional[str] = None


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime
    label: str = "Busy"

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and self.end > start


@dataclass
class BusyQueryResult:
    """Busy intervals plus whether the upstream query actually succeeded.

    An empty ``intervals`` list with ``ok=False`` means the calendar state is
    unknown, not that the provider is free.
    """

    intervals: List[BusyInterval]
    ok: bool
    calendar_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class RoutingRequest:
    session_category: Optional[SessionCategory] = None
    session_type: Optional[str] = None
    provider_id: Optional[str] = None
    force_admin_calendar: Optional[bool] = None


@dataclass(frozen=True)
class RoutingDecision:
    target_calendar_id: str
    used_fallback: bool
    reason: str
    # Delegated account to impersonate when the target is a provider calendar.
    delegated_subject: Optional[str] = None

    @property
    def targets_provider_calendar(self) -> bool:
        return self.delegated_subject is not None


@dataclass
class BookingResult:
    event_id: str
    calendar_id: str
    conference_url: str
    routing: RoutingDecision
    conference_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
