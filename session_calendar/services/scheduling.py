from __future__ import annotations

from datetime import date, datetime, timedelta
import logging
from typing import Any, Awaitable, Callable, List, Optional

from sqlalchemy.orm import Session

from ..config import AppSettings, CalendarSettings, get_settings
from ..errors import MissingConferenceError
from ..models import (
    Attendee,
    BookingResult,
    BusyInterval,
    BusyQueryResult,
    EventLookup,
    ProviderCalendarInfo,
    SessionCategory,
    SessionEventChanges,
    SessionEventSpec,
    TimeRange,
)
from .cache import TTLCache
from .conflicts import ConflictChecker, free_slots
from .google_calendar import CalendarGateway, GoogleCalendarGateway
from .provider_directory import (
    ProviderCalendarDirectory,
    ProviderProfileStore,
    SqlProviderProfileStore,
)
from .readiness import ReadinessGate
from .resilience import ResilienceWrapper
from .routing import RoutingEngine
from .session_events import SessionEventManager

logger = logging.getLogger(__name__)


class SchedulingService:
    """Entry point used by booking flows and the HTTP layer.

    Each call first waits for the readiness gate so upstream credentials
    have been loaded (or have definitively failed) before any calendar
    traffic.
    """

    def __init__(
        self,
        *,
        settings: CalendarSettings,
        gate: ReadinessGate,
        directory: ProviderCalendarDirectory,
        routing: RoutingEngine,
        events: SessionEventManager,
        conflicts: ConflictChecker,
    ) -> None:
        self.settings = settings
        self.gate = gate
        self.directory = directory
        self.routing = routing
        self.events = events
        self.conflicts = conflicts

    async def book_session(
        self,
        provider_id: Optional[str],
        session_type: Optional[str],
        start: datetime,
        end: datetime,
        attendees: List[Attendee],
        appointment_id: Optional[str],
        *,
        session_category: Optional[SessionCategory] = None,
        title: Optional[str] = None,
        description: str = "",
        force_admin_calendar: Optional[bool] = None,
    ) -> Optional[BookingResult]:
        await self.gate.ensure_ready()
        spec = SessionEventSpec(
            title=title or session_type or "Therapy Session",
            start_time=start,
            end_time=end,
            attendees=list(attendees),
            description=description,
            appointment_id=appointment_id,
            provider_id=provider_id,
            session_category=session_category,
            session_type=session_type,
            force_admin_calendar=force_admin_calendar,
            buffer_minutes=self.settings.session_buffer_minutes,
        )
        try:
            created = await self.events.create_routed_event(spec)
        except MissingConferenceError as exc:
            await self._discard_event(exc.event_id, exc.calendar_id, provider_id)
            raise
        if created is None:
            return None
        event, decision = created
        return BookingResult(
            event_id=event.event_id,
            calendar_id=event.calendar_id,
            conference_url=event.conference_url or "",
            routing=decision,
            conference_id=event.conference_id,
        )

    async def _discard_event(
        self, event_id: Optional[str], calendar_id: Optional[str], provider_id: Optional[str]
    ) -> bool:
        """Remove an event the booking is abandoning so invitations are withdrawn."""
        if not event_id or not calendar_id:
            return False
        removed = await self.events.delete_event(
            event_id, calendar_id, provider_id=provider_id
        )
        log = logger.info if removed else logger.error
        log(
            "calendar_event_compensated",
            extra={"event_id": event_id, "calendar_id": calendar_id, "deleted": removed},
        )
        return removed

    async def discard_booking(
        self, event_id: str, calendar_id: str, *, provider_id: Optional[str] = None
    ) -> bool:
        await self.gate.ensure_ready()
        return await self._discard_event(event_id, calendar_id, provider_id)

    async def reschedule_session(
        self,
        event_id: str,
        calendar_id: str,
        new_start: datetime,
        new_end: datetime,
        *,
        provider_id: Optional[str] = None,
    ) -> bool:
        await self.gate.ensure_ready()
        return await self.events.update_event(
            event_id,
            calendar_id,
            SessionEventChanges(start_time=new_start, end_time=new_end),
            provider_id=provider_id,
        )

    async def cancel_session(
        self, event_id: str, calendar_id: str, *, provider_id: Optional[str] = None
    ) -> bool:
        await self.gate.ensure_ready()
        return await self.events.delete_event(
            event_id, calendar_id, provider_id=provider_id
        )

    async def get_session(
        self, event_id: str, calendar_id: str, *, provider_id: Optional[str] = None
    ) -> EventLookup:
        await self.gate.ensure_ready()
        return await self.events.get_event(event_id, calendar_id, provider_id=provider_id)

    async def block_time(
        self,
        calendar_id: str,
        title: str,
        start: datetime,
        end: datetime,
        description: str = "",
    ) -> Optional[str]:
        await self.gate.ensure_ready()
        return await self.events.create_blocking_event(
            calendar_id, title, start, end, description
        )

    async def clear_blocks(
        self,
        title_pattern: str,
        *,
        provider_id: Optional[str] = None,
        use_admin_calendar: bool = False,
    ) -> int:
        await self.gate.ensure_ready()
        return await self.events.delete_blocking_events(
            title_pattern, provider_id=provider_id, use_admin_calendar=use_admin_calendar
        )

    async def check_availability(self, provider_id: str, day: date) -> BusyQueryResult:
        await self.gate.ensure_ready()
        return await self.conflicts.query_busy_intervals(
            provider_id, self.conflicts.day_range(day)
        )

    async def get_availability(self, provider_id: str, day: date) -> List[BusyInterval]:
        result = await self.check_availability(provider_id, day)
        return result.intervals

    def working_window(self, day: date) -> TimeRange:
        tz = self.conflicts.timezone
        open_at = datetime(
            day.year, day.month, day.day, self.settings.default_open_hour, tzinfo=tz
        )
        close_at = datetime(
            day.year, day.month, day.day, self.settings.default_close_hour, tzinfo=tz
        )
        return TimeRange(start=open_at, end=close_at)

    async def find_free_slots(
        self, provider_id: str, day: date, duration_minutes: int
    ) -> Optional[List[TimeRange]]:
        """Open slots within working hours; None when the calendar could not be read."""
        result = await self.check_availability(provider_id, day)
        if not result.ok:
            return None
        window = self.working_window(day)
        if window.end <= window.start:
            return []
        return free_slots(
            result.intervals,
            window.start,
            window.end,
            timedelta(minutes=duration_minutes),
        )

    async def invalidate_provider(self, provider_id: str) -> bool:
        await self.gate.ensure_ready()
        return self.directory.invalidate(provider_id)

    async def invalidate_all_providers(self) -> int:
        await self.gate.ensure_ready()
        return self.directory.invalidate_all()

    async def provider_calendar(self, provider_id: str) -> ProviderCalendarInfo:
        await self.gate.ensure_ready()
        return await self.directory.resolve(provider_id)

    async def validate_provider_calendar_access(self, provider_id: str) -> bool:
        await self.gate.ensure_ready()
        return await self.conflicts.validate_provider_calendar_access(provider_id)

    def list_provider_calendars(self) -> List[ProviderCalendarInfo]:
        return self.directory.list_provider_calendars()


def build_scheduling_service(
    settings: AppSettings | None = None,
    *,
    gateway: CalendarGateway | None = None,
    store: ProviderProfileStore | None = None,
    session_factory: Callable[[], Session] | None = None,
    monotonic: Callable[[], float] | None = None,
    clock: Callable[[], datetime] | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
) -> SchedulingService:
    """Wire the scheduling layer together.

    Construction is synchronous and performs no I/O; credential loading
    happens later through the readiness gate.
    """
    settings = settings or get_settings()
    cal = settings.calendar

    if store is None:
        if session_factory is None:
            from ..db import SessionLocal

            session_factory = SessionLocal
        store = SqlProviderProfileStore(session_factory)
    if gateway is None:
        gateway = GoogleCalendarGateway(cal)

    cache_kwargs: dict = {}
    gate_kwargs: dict = {}
    if monotonic is not None:
        cache_kwargs["clock"] = monotonic
        gate_kwargs["clock"] = monotonic
    resilience_kwargs: dict = {}
    if sleep is not None:
        resilience_kwargs["sleep"] = sleep
    event_kwargs: dict = {}
    if clock is not None:
        event_kwargs["clock"] = clock

    directory = ProviderCalendarDirectory(
        store,
        cal.admin_calendar_id,
        TTLCache[ProviderCalendarInfo](cal.cache_ttl_seconds, **cache_kwargs),
    )
    resilience = ResilienceWrapper(
        max_attempts=cal.max_attempts,
        base_delay_seconds=cal.base_retry_delay_seconds,
        max_delay_seconds=cal.max_retry_delay_seconds,
        **resilience_kwargs,
    )
    routing = RoutingEngine(directory)
    events = SessionEventManager(
        gateway,
        routing,
        resilience,
        organizer_name=cal.admin_display_name,
        timezone=cal.timezone,
        default_buffer_minutes=cal.session_buffer_minutes,
        **event_kwargs,
    )
    conflicts = ConflictChecker(gateway, directory, resilience, timezone=cal.timezone)
    gate = ReadinessGate(
        gateway.setup,
        timeout_seconds=cal.readiness_timeout_seconds,
        retry_cooldown_seconds=cal.readiness_retry_cooldown_seconds,
        **gate_kwargs,
    )
    logger.info(
        "scheduling_service_built",
        extra={
            "admin_calendar_id": cal.admin_calendar_id,
            "timezone": cal.timezone,
            "cache_ttl_seconds": cal.cache_ttl_seconds,
        },
    )
    return SchedulingService(
        settings=cal,
        gate=gate,
        directory=directory,
        routing=routing,
        events=events,
        conflicts=conflicts,
    )
