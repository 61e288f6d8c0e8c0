from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
import logging
from typing import Any, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from ..metrics import metrics
from ..models import BusyInterval, BusyQueryResult, TimeRange, ensure_utc, to_rfc3339
from .google_calendar import CalendarGateway
from .provider_directory import ProviderCalendarDirectory
from .resilience import ResilienceWrapper, status_of
from .session_events import parse_event_boundary

logger = logging.getLogger(__name__)

DEFAULT_EVENT_LENGTH = timedelta(hours=1)


def busy_intervals_from_events(
    items: Iterable[Dict[str, Any]], tz: ZoneInfo
) -> List[BusyInterval]:
    """Turn raw upstream events into sorted busy intervals.

    Cancelled and transparent ("free") events never block time. All-day
    events block whole days in ``tz``; timed events missing an end are
    treated as one hour long.
    """
    intervals: List[BusyInterval] = []
    for item in items:
        if item.get("status") == "cancelled":
            continue
        if item.get("transparency") == "transparent":
            continue
        start_raw = item.get("start") or {}
        start = parse_event_boundary(start_raw, tz)
        if start is None:
            continue
        end = parse_event_boundary(item.get("end"), tz)
        if end is None or end <= start:
            if "date" in start_raw and "dateTime" not in start_raw:
                end = start + timedelta(days=1)
            else:
                end = start + DEFAULT_EVENT_LENGTH
        intervals.append(
            BusyInterval(start=start, end=end, label=item.get("summary") or "Busy")
        )
    intervals.sort(key=lambda interval: interval.start)
    return intervals


def free_slots(
    busy: Iterable[BusyInterval],
    window_start: datetime,
    window_end: datetime,
    duration: timedelta,
    step: Optional[timedelta] = None,
) -> List[TimeRange]:
    """Return candidate slots of ``duration`` inside the window that avoid busy time."""
    if duration <= timedelta(0):
        return []
    if step is None or step <= timedelta(0):
        step = duration
    window_start = ensure_utc(window_start)
    window_end = ensure_utc(window_end)
    blocked = sorted(busy, key=lambda interval: interval.start)

    slots: List[TimeRange] = []
    candidate = window_start
    while candidate + duration <= window_end:
        slot_end = candidate + duration
        clash = next((b for b in blocked if b.overlaps(candidate, slot_end)), None)
        if clash is None:
            slots.append(TimeRange(start=candidate, end=slot_end))
            candidate += step
            continue
        # Jump past the clash, staying on the step grid.
        while candidate < clash.end:
            candidate += step
    return slots


class ConflictChecker:
    """Reads a provider's calendar and reports when they are busy."""

    def __init__(
        self,
        gateway: CalendarGateway,
        directory: ProviderCalendarDirectory,
        resilience: ResilienceWrapper,
        *,
        timezone: str = "Europe/London",
    ) -> None:
        self._gateway = gateway
        self._directory = directory
        self._resilience = resilience
        self._tz = ZoneInfo(timezone)

    @property
    def timezone(self) -> ZoneInfo:
        return self._tz

    async def query_busy_intervals(
        self, provider_id: str, time_range: TimeRange
    ) -> BusyQueryResult:
        metrics.calendar_busy_queries += 1
        info = await self._directory.resolve(provider_id)
        calendar_id = info.calendar_id
        subject = self._directory.subject_for(info)
        time_min = to_rfc3339(time_range.start)
        time_max = to_rfc3339(time_range.end)

        try:
            items = await self._resilience.with_retry(
                lambda: self._gateway.list_events(
                    calendar_id, time_min, time_max, subject=subject
                ),
                "list_events",
            )
            intervals = busy_intervals_from_events(items, self._tz)
        except Exception as exc:
            metrics.calendar_busy_query_failures += 1
            metrics.for_provider(provider_id).busy_query_failures += 1
            logger.warning(
                "calendar_busy_query_failed",
                extra={
                    "provider_id": provider_id,
                    "calendar_id": calendar_id,
                    "status": status_of(exc),
                    "detail": str(exc),
                },
            )
            return BusyQueryResult(
                intervals=[], ok=False, calendar_id=calendar_id, error=str(exc)
            )

        logger.info(
            "calendar_busy_query",
            extra={
                "provider_id": provider_id,
                "calendar_id": calendar_id,
                "busy_count": len(intervals),
            },
        )
        return BusyQueryResult(intervals=intervals, ok=True, calendar_id=calendar_id)

    async def get_busy_intervals(
        self, provider_id: str, time_range: TimeRange
    ) -> List[BusyInterval]:
        result = await self.query_busy_intervals(provider_id, time_range)
        return result.intervals

    async def has_conflict(
        self, provider_id: str, start: datetime, end: datetime
    ) -> Optional[bool]:
        """True/False for a known calendar state, None when it could not be read."""
        start = ensure_utc(start)
        end = ensure_utc(end)
        result = await self.query_busy_intervals(
            provider_id, TimeRange(start=start, end=end)
        )
        if not result.ok:
            return None
        return any(interval.overlaps(start, end) for interval in result.intervals)

    async def validate_provider_calendar_access(self, provider_id: str) -> bool:
        """Check that the provider's resolved calendar can be read upstream."""
        info = await self._directory.resolve(provider_id)
        subject = self._directory.subject_for(info)
        calendar = await self._resilience.safe(
            lambda: self._gateway.get_calendar(info.calendar_id, subject=subject),
            "validate_calendar_access",
            None,
            context={"provider_id": provider_id, "calendar_id": info.calendar_id},
        )
        accessible = calendar is not None
        log = logger.info if accessible else logger.warning
        log(
            "calendar_access_validated",
            extra={
                "provider_id": provider_id,
                "calendar_id": info.calendar_id,
                "is_configured": info.is_configured,
                "accessible": accessible,
            },
        )
        return accessible

    def day_range(self, day: date) -> TimeRange:
        """Full calendar day in the provider timezone, as UTC bounds."""
        start = datetime(day.year, day.month, day.day, tzinfo=self._tz)
        end = datetime.combine(
            day + timedelta(days=1), datetime.min.time(), tzinfo=self._tz
        )
        return TimeRange(start=start.astimezone(UTC), end=end.astimezone(UTC))
