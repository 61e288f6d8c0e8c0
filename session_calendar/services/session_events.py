from __future__ import annotations

import dataclasses
from datetime import UTC, datetime, time, timedelta
import logging
import re
from typing import Any, Callable, Dict, List, Optional
import uuid
from zoneinfo import ZoneInfo

from ..errors import (
    CalendarBookingError,
    DelegationFallbackError,
    MissingConferenceError,
    SessionValidationError,
)
from ..metrics import metrics
from ..models import (
    Attendee,
    AttendeeRole,
    EventLookup,
    RoutingDecision,
    RoutingRequest,
    SessionEvent,
    SessionEventChanges,
    SessionEventSpec,
    ensure_utc,
    to_rfc3339,
)
from .google_calendar import CalendarGateway
from .resilience import (
    ResilienceWrapper,
    is_auth_delegation_error,
    is_not_found,
    status_of,
)
from .routing import RoutingEngine

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_LOCAL_FORMAT = "%Y-%m-%dT%H:%M:%S"
BLOCK_CLEANUP_HORIZON_DAYS = 90

SESSION_REMINDERS = {
    "useDefault": False,
    "overrides": [
        {"method": "email", "minutes": 24 * 60},
        {"method": "email", "minutes": 60},
        {"method": "popup", "minutes": 15},
    ],
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def is_valid_email(value: str | None) -> bool:
    if not value:
        return False
    return _EMAIL_RE.match(value.strip()) is not None


def dedupe_attendees(attendees: List[Attendee]) -> List[Attendee]:
    """Drop invalid emails and repeat addresses (case-insensitive), keeping order."""
    seen: set[str] = set()
    unique: List[Attendee] = []
    for attendee in attendees:
        email = (attendee.email or "").strip()
        if not is_valid_email(email):
            continue
        key = email.lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(dataclasses.replace(attendee, email=email))
    return unique


def conference_url_of(event: Dict[str, Any]) -> Optional[str]:
    """Return the video entry point URI of an upstream event, if any."""
    conference = event.get("conferenceData") or {}
    for entry in conference.get("entryPoints") or []:
        if entry.get("entryPointType") == "video" and entry.get("uri"):
            return entry["uri"]
    return None


def parse_event_boundary(value: Dict[str, Any] | None, tz: ZoneInfo) -> Optional[datetime]:
    """Parse an upstream ``start``/``end`` object into an aware UTC datetime.

    All-day boundaries (``date``) are midnight in ``tz``. Naive ``dateTime``
    values use the object's own ``timeZone`` when present, else ``tz``.
    """
    if not value:
        return None
    raw_dt = value.get("dateTime")
    if raw_dt:
        try:
            parsed = datetime.fromisoformat(str(raw_dt).replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            zone = tz
            if value.get("timeZone"):
                try:
                    zone = ZoneInfo(value["timeZone"])
                except (KeyError, ValueError):
                    zone = tz
            parsed = parsed.replace(tzinfo=zone)
        return parsed.astimezone(UTC)
    raw_date = value.get("date")
    if raw_date:
        try:
            day = datetime.strptime(str(raw_date), "%Y-%m-%d").date()
        except ValueError:
            return None
        return datetime.combine(day, time.min, tzinfo=tz).astimezone(UTC)
    return None


class SessionEventManager:
    """Creates, updates, reads and deletes session events upstream.

    Every upstream call goes through the resilience wrapper. Creation
    targets the calendar chosen by the routing engine and falls back to the
    admin calendar exactly once when a delegated provider calendar rejects
    the impersonated account.
    """

    def __init__(
        self,
        gateway: CalendarGateway,
        routing: RoutingEngine,
        resilience: ResilienceWrapper,
        *,
        organizer_name: str = "Practice Support",
        timezone: str = "Europe/London",
        default_buffer_minutes: int = 10,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._gateway = gateway
        self._routing = routing
        self._resilience = resilience
        self._organizer_name = organizer_name
        self._timezone = timezone
        self._tz = ZoneInfo(timezone)
        self._default_buffer_minutes = default_buffer_minutes
        self._clock = clock

    @property
    def admin_calendar_id(self) -> str:
        return self._routing.admin_calendar_id

    @property
    def timezone(self) -> ZoneInfo:
        return self._tz

    async def subject_for(
        self, calendar_id: str, provider_id: Optional[str] = None
    ) -> Optional[str]:
        """Account to impersonate for an existing event's calendar."""
        directory = self._routing.directory
        return await directory.subject_for_calendar(calendar_id, provider_id)

    def _local(self, value: datetime) -> Dict[str, str]:
        return {
            "dateTime": ensure_utc(value).astimezone(self._tz).strftime(_LOCAL_FORMAT),
            "timeZone": self._timezone,
        }

    def is_past_session(self, spec: SessionEventSpec) -> bool:
        start = ensure_utc(spec.start_time)
        end = ensure_utc(spec.end_time)
        duration = spec.session_duration if spec.session_duration is not None else end - start
        buffer_minutes = (
            spec.buffer_minutes
            if spec.buffer_minutes is not None
            else self._default_buffer_minutes
        )
        cutoff = start + duration + timedelta(minutes=buffer_minutes)
        return ensure_utc(self._clock()) > cutoff

    def build_description(self, spec: SessionEventSpec, attendees: List[Attendee]) -> str:
        client = next((a for a in attendees if a.role == AttendeeRole.CLIENT), None)
        provider = next((a for a in attendees if a.role == AttendeeRole.PROVIDER), None)
        minutes = int(
            (ensure_utc(spec.end_time) - ensure_utc(spec.start_time)).total_seconds() // 60
        )

        def _describe(label: str, attendee: Optional[Attendee]) -> str:
            if attendee is None:
                return f"{label}: not provided"
            name = attendee.display_name or attendee.email
            return f"{label}: {name} ({attendee.email})"

        lines = [
            f"Session scheduled via {self._organizer_name}",
            "",
            _describe("Client", client),
            _describe("Provider", provider),
            f"Duration: {minutes} minutes",
            "",
            "Join the session:",
            "The video link is attached to this calendar event.",
        ]
        if spec.description:
            lines.extend(["", "Additional details:", spec.description.strip()])
        return "\n".join(lines)

    def build_event_body(self, spec: SessionEventSpec) -> Dict[str, Any]:
        attendees = dedupe_attendees(spec.attendees)
        return {
            "summary": spec.title,
            "description": self.build_description(spec, attendees),
            "start": self._local(spec.start_time),
            "end": self._local(spec.end_time),
            "attendees": [
                {
                    "email": attendee.email,
                    "displayName": attendee.display_name or attendee.email,
                    "responseStatus": "needsAction",
                }
                for attendee in attendees
            ],
            "conferenceData": {
                "createRequest": {
                    "requestId": spec.appointment_id or uuid.uuid4().hex,
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            },
            "reminders": SESSION_REMINDERS,
            "transparency": "opaque",
            "visibility": "private",
            "guestsCanModify": False,
            "guestsCanInviteOthers": False,
            "guestsCanSeeOtherGuests": True,
        }

    async def create_event(self, spec: SessionEventSpec) -> Optional[SessionEvent]:
        created = await self.create_routed_event(spec)
        return created[0] if created is not None else None

    async def create_routed_event(
        self, spec: SessionEventSpec
    ) -> Optional[tuple[SessionEvent, RoutingDecision]]:
        """Create the session event and report where it actually landed.

        Returns None, without touching the upstream calendar, when the
        session has already finished.
        """
        if ensure_utc(spec.start_time) >= ensure_utc(spec.end_time):
            raise SessionValidationError("Session start_time must be before end_time")

        if self.is_past_session(spec):
            metrics.calendar_events_skipped_past += 1
            logger.info(
                "calendar_event_skipped_past",
                extra={
                    "appointment_id": spec.appointment_id,
                    "provider_id": spec.provider_id,
                    "start_time": ensure_utc(spec.start_time).isoformat(),
                },
            )
            return None

        decision = await self._routing.decide_target(
            RoutingRequest(
                session_category=spec.session_category,
                session_type=spec.session_type,
                provider_id=spec.provider_id,
                force_admin_calendar=spec.force_admin_calendar,
            )
        )
        body = self.build_event_body(spec)
        calendar_id = decision.target_calendar_id

        try:
            created = await self._resilience.with_retry(
                lambda: self._gateway.insert_event(
                    calendar_id, body, subject=decision.delegated_subject
                ),
                "create_event",
            )
        except Exception as exc:
            if not (decision.targets_provider_calendar and is_auth_delegation_error(exc)):
                metrics.calendar_event_failures += 1
                logger.error(
                    "calendar_event_create_failed",
                    extra={
                        "calendar_id": calendar_id,
                        "appointment_id": spec.appointment_id,
                        "status": status_of(exc),
                        "detail": str(exc),
                    },
                )
                raise CalendarBookingError(
                    f"Could not create session event on {calendar_id}",
                    calendar_id=calendar_id,
                ) from exc
            created = await self._create_on_admin(spec, body, calendar_id, exc)
            calendar_id = self.admin_calendar_id
            decision = dataclasses.replace(
                decision,
                target_calendar_id=calendar_id,
                used_fallback=True,
                delegated_subject=None,
            )

        event_id = created.get("id") or ""
        conference_url = conference_url_of(created)
        if not conference_url:
            metrics.calendar_missing_conference += 1
            logger.error(
                "calendar_event_missing_conference",
                extra={"calendar_id": calendar_id, "event_id": event_id},
            )
            raise MissingConferenceError(
                "Session event was created without a video link",
                calendar_id=calendar_id,
                event_id=event_id,
            )

        metrics.calendar_events_created += 1
        if spec.provider_id:
            metrics.for_provider(spec.provider_id).events_created += 1
        logger.info(
            "calendar_event_created",
            extra={
                "event_id": event_id,
                "calendar_id": calendar_id,
                "appointment_id": spec.appointment_id,
                "used_fallback": decision.used_fallback,
            },
        )
        event = SessionEvent(
            event_id=event_id,
            calendar_id=calendar_id,
            title=spec.title,
            description=body["description"],
            start_time=spec.start_time,
            end_time=spec.end_time,
            attendees=dedupe_attendees(spec.attendees),
            conference_url=conference_url,
            conference_id=(created.get("conferenceData") or {}).get("conferenceId"),
        )
        return event, decision

    async def _create_on_admin(
        self,
        spec: SessionEventSpec,
        body: Dict[str, Any],
        original_calendar_id: str,
        cause: BaseException,
    ) -> Dict[str, Any]:
        admin_id = self.admin_calendar_id
        metrics.calendar_delegated_fallbacks += 1
        if spec.provider_id:
            metrics.for_provider(spec.provider_id).delegated_fallbacks += 1
        logger.warning(
            "calendar_delegated_fallback",
            extra={
                "provider_id": spec.provider_id,
                "original_calendar_id": original_calendar_id,
                "fallback_calendar_id": admin_id,
                "detail": str(cause),
            },
        )
        try:
            return await self._resilience.with_retry(
                lambda: self._gateway.insert_event(admin_id, body, subject=None),
                "create_event_admin_fallback",
                max_attempts=1,
            )
        except Exception as exc:
            metrics.calendar_event_failures += 1
            logger.error(
                "calendar_delegated_fallback_failed",
                extra={
                    "original_calendar_id": original_calendar_id,
                    "fallback_calendar_id": admin_id,
                    "status": status_of(exc),
                    "detail": str(exc),
                },
            )
            raise DelegationFallbackError(
                f"Provider calendar {original_calendar_id} and admin calendar "
                f"{admin_id} both rejected the session",
                original_calendar_id=original_calendar_id,
                fallback_calendar_id=admin_id,
            ) from exc

    async def update_event(
        self,
        event_id: str,
        calendar_id: str,
        changes: SessionEventChanges,
        *,
        provider_id: Optional[str] = None,
    ) -> bool:
        if changes.start_time and changes.end_time:
            if ensure_utc(changes.start_time) >= ensure_utc(changes.end_time):
                raise SessionValidationError("Session start_time must be before end_time")

        body: Dict[str, Any] = {}
        if changes.title is not None:
            body["summary"] = changes.title
        if changes.description is not None:
            body["description"] = changes.description
        if changes.start_time is not None:
            body["start"] = self._local(changes.start_time)
        if changes.end_time is not None:
            body["end"] = self._local(changes.end_time)
        if changes.attendees is not None:
            body["attendees"] = [
                {"email": a.email, "displayName": a.display_name or a.email}
                for a in dedupe_attendees(changes.attendees)
            ]
        if not body:
            return True

        subject = await self.subject_for(calendar_id, provider_id)
        try:
            await self._resilience.with_retry(
                lambda: self._gateway.patch_event(
                    calendar_id, event_id, body, subject=subject
                ),
                "update_event",
            )
        except Exception as exc:
            if is_not_found(exc):
                logger.info(
                    "calendar_event_missing",
                    extra={"event_id": event_id, "calendar_id": calendar_id},
                )
            else:
                logger.error(
                    "calendar_event_update_failed",
                    extra={
                        "event_id": event_id,
                        "calendar_id": calendar_id,
                        "status": status_of(exc),
                        "detail": str(exc),
                    },
                )
            return False

        metrics.calendar_events_updated += 1
        logger.info(
            "calendar_event_updated",
            extra={
                "event_id": event_id,
                "calendar_id": calendar_id,
                "fields": sorted(body),
            },
        )
        return True

    async def delete_event(
        self, event_id: str, calendar_id: str, *, provider_id: Optional[str] = None
    ) -> bool:
        subject = await self.subject_for(calendar_id, provider_id)
        try:
            await self._resilience.with_retry(
                lambda: self._gateway.delete_event(calendar_id, event_id, subject=subject),
                "delete_event",
            )
        except Exception as exc:
            if is_not_found(exc):
                logger.info(
                    "calendar_event_already_deleted",
                    extra={"event_id": event_id, "calendar_id": calendar_id},
                )
                return True
            logger.error(
                "calendar_event_delete_failed",
                extra={
                    "event_id": event_id,
                    "calendar_id": calendar_id,
                    "status": status_of(exc),
                    "detail": str(exc),
                },
            )
            return False

        metrics.calendar_events_deleted += 1
        logger.info(
            "calendar_event_deleted",
            extra={"event_id": event_id, "calendar_id": calendar_id},
        )
        return True

    async def get_event(
        self, event_id: str, calendar_id: str, *, provider_id: Optional[str] = None
    ) -> EventLookup:
        subject = await self.subject_for(calendar_id, provider_id)
        try:
            event = await self._resilience.with_retry(
                lambda: self._gateway.get_event(calendar_id, event_id, subject=subject),
                "get_event",
            )
        except Exception as exc:
            if is_not_found(exc):
                return EventLookup(exists=False)
            raise

        if event.get("status") == "cancelled":
            return EventLookup(exists=False)
        return EventLookup(
            exists=True,
            title=event.get("summary"),
            start=parse_event_boundary(event.get("start"), self._tz),
            end=parse_event_boundary(event.get("end"), self._tz),
            attendees=[
                a["email"] for a in event.get("attendees") or [] if a.get("email")
            ],
            conference_url=conference_url_of(event) or event.get("hangoutLink"),
        )

    async def create_blocking_event(
        self,
        calendar_id: str,
        title: str,
        start: datetime,
        end: datetime,
        description: str = "",
    ) -> Optional[str]:
        """Block out time on a calendar; returns the event id or None."""
        if ensure_utc(start) >= ensure_utc(end):
            raise SessionValidationError("Block start must be before end")
        body = {
            "summary": title,
            "description": description,
            "start": self._local(start),
            "end": self._local(end),
            "transparency": "opaque",
            "visibility": "private",
        }
        subject = await self.subject_for(calendar_id)
        created = await self._resilience.safe(
            lambda: self._gateway.insert_event(calendar_id, body, subject=subject),
            "create_blocking_event",
            None,
            context={"calendar_id": calendar_id},
        )
        if not created:
            return None
        logger.info(
            "calendar_block_created",
            extra={"event_id": created.get("id"), "calendar_id": calendar_id},
        )
        return created.get("id")

    async def delete_blocking_events(
        self,
        title_pattern: str,
        *,
        provider_id: Optional[str] = None,
        use_admin_calendar: bool = False,
        horizon_days: int = BLOCK_CLEANUP_HORIZON_DAYS,
    ) -> int:
        """Delete upcoming events whose title contains ``title_pattern``.

        Targets the admin calendar unless a provider is given. Returns how
        many events were removed; a failed listing removes nothing.
        """
        pattern = (title_pattern or "").strip()
        if not pattern:
            raise SessionValidationError("A title pattern is required to clear blocks")

        directory = self._routing.directory
        if use_admin_calendar or not provider_id:
            calendar_id = self.admin_calendar_id
            subject = None
        else:
            info = await directory.resolve(provider_id)
            calendar_id = info.calendar_id
            subject = directory.subject_for(info)

        now = ensure_utc(self._clock())
        time_min = to_rfc3339(now)
        time_max = to_rfc3339(now + timedelta(days=horizon_days))
        items = await self._resilience.safe(
            lambda: self._gateway.list_events(
                calendar_id, time_min, time_max, subject=subject, query=pattern
            ),
            "list_blocking_events",
            None,
            context={"calendar_id": calendar_id, "pattern": pattern},
        )
        if items is None:
            return 0

        deleted = 0
        for item in items:
            event_id = item.get("id")
            if not event_id or pattern not in (item.get("summary") or ""):
                continue
            if await self.delete_event(event_id, calendar_id, provider_id=provider_id):
                deleted += 1
        logger.info(
            "calendar_blocks_cleared",
            extra={"calendar_id": calendar_id, "pattern": pattern, "deleted": deleted},
        )
        return deleted
