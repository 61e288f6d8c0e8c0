from __future__ import annotations

from datetime import UTC, date, datetime
import logging
from typing import List, Optional
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import get_db
from ..db_models import SessionBookingDB
from ..deps import get_scheduling_service, require_admin_auth
from ..errors import CalendarBookingError, SessionValidationError
from ..models import Attendee, AttendeeRole, SessionCategory, ensure_utc
from ..services.scheduling import SchedulingService


router = APIRouter()
logger = logging.getLogger(__name__)


class AttendeePayload(BaseModel):
    email: str = Field(..., max_length=320)
    display_name: str = Field(default="", max_length=200)
    role: AttendeeRole = AttendeeRole.CLIENT


class _TimeWindow(BaseModel):
    @model_validator(mode="after")
    def _check_order(self):  # type: ignore[no-untyped-def]
        if ensure_utc(self.start) >= ensure_utc(self.end):  # type: ignore[attr-defined]
            raise ValueError("start must be before end")
        return self


class BookSessionRequest(_TimeWindow):
    appointment_id: str | None = Field(default=None, max_length=128)
    provider_id: str | None = Field(default=None, max_length=128)
    session_type: str | None = Field(
        default=None, description="Legacy free-text session type", max_length=128
    )
    session_category: SessionCategory | None = None
    title: str | None = Field(default=None, max_length=200)
    description: str = Field(default="", max_length=4000)
    start: datetime
    end: datetime
    attendees: List[AttendeePayload] = Field(default_factory=list)
    force_admin_calendar: bool | None = None


class RoutingPayload(BaseModel):
    target_calendar_id: str
    used_fallback: bool
    reason: str


class BookSessionResponse(BaseModel):
    created: bool
    appointment_id: str | None = None
    event_id: str | None = None
    calendar_id: str | None = None
    conference_url: str | None = None
    routing: RoutingPayload | None = None


class RescheduleRequest(_TimeWindow):
    calendar_id: str = Field(..., max_length=255)
    start: datetime
    end: datetime


class BusyIntervalPayload(BaseModel):
    start: datetime
    end: datetime
    label: str


class SlotPayload(BaseModel):
    start: datetime
    end: datetime


class AvailabilityResponse(BaseModel):
    provider_id: str
    day: date
    ok: bool
    calendar_id: str | None = None
    busy: List[BusyIntervalPayload]
    free_slots: Optional[List[SlotPayload]] = None


class BlockTimeRequest(_TimeWindow):
    calendar_id: str = Field(..., max_length=255)
    title: str = Field(default="Unavailable", max_length=200)
    description: str = Field(default="", max_length=2000)
    start: datetime
    end: datetime


class ClearBlocksRequest(BaseModel):
    title_pattern: str = Field(..., min_length=1, max_length=200)
    provider_id: str | None = Field(default=None, max_length=128)
    use_admin_calendar: bool = False


def _find_booking(db: Session, event_id: str, calendar_id: str) -> SessionBookingDB | None:
    return (
        db.query(SessionBookingDB)
        .filter(
            SessionBookingDB.event_id == event_id,
            SessionBookingDB.calendar_id == calendar_id,
        )
        .one_or_none()
    )


def _naive_utc(value: datetime) -> datetime:
    return ensure_utc(value).replace(tzinfo=None)


@router.post(
    "",
    response_model=BookSessionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def book_session(
    payload: BookSessionRequest,
    response: Response,
    service: SchedulingService = Depends(get_scheduling_service),
    db: Session = Depends(get_db),
) -> BookSessionResponse:
    """Create the calendar event (with video link) for a session booking."""
    appointment_id = payload.appointment_id or uuid.uuid4().hex
    attendees = [
        Attendee(email=a.email, display_name=a.display_name, role=a.role)
        for a in payload.attendees
    ]
    try:
        result = await service.book_session(
            payload.provider_id,
            payload.session_type,
            payload.start,
            payload.end,
            attendees,
            appointment_id,
            session_category=payload.session_category,
            title=payload.title,
            description=payload.description,
            force_admin_calendar=payload.force_admin_calendar,
        )
    except SessionValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except CalendarBookingError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Could not create the calendar event; please try again.",
        ) from exc

    if result is None:
        response.status_code = status.HTTP_200_OK
        return BookSessionResponse(created=False, appointment_id=appointment_id)

    try:
        row = (
            db.query(SessionBookingDB)
            .filter(SessionBookingDB.appointment_id == appointment_id)
            .one_or_none()
        )
        if row is None:
            row = SessionBookingDB(appointment_id=appointment_id)  # type: ignore[call-arg]
        row.provider_id = payload.provider_id  # type: ignore[assignment]
        row.session_type = payload.session_type  # type: ignore[assignment]
        row.event_id = result.event_id  # type: ignore[assignment]
        row.calendar_id = result.calendar_id  # type: ignore[assignment]
        row.conference_url = result.conference_url  # type: ignore[assignment]
        row.start_time = _naive_utc(payload.start)  # type: ignore[assignment]
        row.end_time = _naive_utc(payload.end)  # type: ignore[assignment]
        row.status = "SCHEDULED"  # type: ignore[assignment]
        db.add(row)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(
            "session_booking_persist_failed",
            exc_info=True,
            extra={
                "appointment_id": appointment_id,
                "event_id": result.event_id,
                "calendar_id": result.calendar_id,
            },
        )
        await service.discard_booking(
            result.event_id, result.calendar_id, provider_id=payload.provider_id
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not save the booking; please try again.",
        ) from exc

    return BookSessionResponse(
        created=True,
        appointment_id=appointment_id,
        event_id=result.event_id,
        calendar_id=result.calendar_id,
        conference_url=result.conference_url,
        routing=RoutingPayload(
            target_calendar_id=result.routing.target_calendar_id,
            used_fallback=result.routing.used_fallback,
            reason=result.routing.reason,
        ),
    )


@router.patch("/{event_id}")
async def reschedule_session(
    event_id: str,
    payload: RescheduleRequest,
    service: SchedulingService = Depends(get_scheduling_service),
    db: Session = Depends(get_db),
) -> dict:
    row = _find_booking(db, event_id, payload.calendar_id)
    provider_id = row.provider_id if row is not None else None
    updated = await service.reschedule_session(
        event_id,
        payload.calendar_id,
        payload.start,
        payload.end,
        provider_id=provider_id,
    )
    if not updated:
        try:
            lookup = await service.get_session(
                event_id, payload.calendar_id, provider_id=provider_id
            )
        except Exception:
            lookup = None
        if lookup is not None and not lookup.exists:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail="Session event not found"
            )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Could not update the calendar event; please try again.",
        )

    if row is not None:
        row.start_time = _naive_utc(payload.start)  # type: ignore[assignment]
        row.end_time = _naive_utc(payload.end)  # type: ignore[assignment]
        row.status = "RESCHEDULED"  # type: ignore[assignment]
        db.add(row)
        db.commit()
    return {"updated": True}


@router.delete("/{event_id}")
async def cancel_session(
    event_id: str,
    calendar_id: str = Query(..., max_length=255),
    service: SchedulingService = Depends(get_scheduling_service),
    db: Session = Depends(get_db),
) -> dict:
    row = _find_booking(db, event_id, calendar_id)
    deleted = await service.cancel_session(
        event_id,
        calendar_id,
        provider_id=row.provider_id if row is not None else None,
    )
    if deleted and row is not None:
        row.status = "CANCELLED"  # type: ignore[assignment]
        db.add(row)
        db.commit()
    return {"deleted": deleted}


@router.get("/availability/{provider_id}", response_model=AvailabilityResponse)
async def provider_availability(
    provider_id: str,
    day: date = Query(..., alias="date", description="Calendar day, YYYY-MM-DD"),
    duration_minutes: int | None = Query(
        default=None, ge=5, le=8 * 60, description="Also return open slots of this length"
    ),
    service: SchedulingService = Depends(get_scheduling_service),
) -> AvailabilityResponse:
    result = await service.check_availability(provider_id, day)
    slots = None
    if duration_minutes is not None and result.ok:
        found = await service.find_free_slots(provider_id, day, duration_minutes)
        if found is not None:
            slots = [SlotPayload(start=s.start, end=s.end) for s in found]
    return AvailabilityResponse(
        provider_id=provider_id,
        day=day,
        ok=result.ok,
        calendar_id=result.calendar_id,
        busy=[
            BusyIntervalPayload(start=i.start, end=i.end, label=i.label)
            for i in result.intervals
        ],
        free_slots=slots,
    )


@router.post("/providers/{provider_id}/calendar/invalidate")
async def invalidate_provider_calendar(
    provider_id: str,
    service: SchedulingService = Depends(get_scheduling_service),
    _: None = Depends(require_admin_auth),
) -> dict:
    """Drop the cached calendar record after a provider's profile changes."""
    return {"invalidated": await service.invalidate_provider(provider_id)}


@router.post("/providers/calendar/invalidate")
async def invalidate_all_provider_calendars(
    service: SchedulingService = Depends(get_scheduling_service),
    _: None = Depends(require_admin_auth),
) -> dict:
    return {"cleared": await service.invalidate_all_providers()}


@router.get("/providers/calendars")
def list_provider_calendars(
    service: SchedulingService = Depends(get_scheduling_service),
    _: None = Depends(require_admin_auth),
) -> dict:
    calendars = service.list_provider_calendars()
    return {
        "generated_at": datetime.now(UTC).isoformat(),
        "providers": [
            {
                "provider_id": info.provider_id,
                "display_name": info.provider_display_name,
                "calendar_id": info.calendar_id,
                "is_configured": info.is_configured,
            }
            for info in calendars
        ],
    }


@router.post("/blocks", status_code=status.HTTP_201_CREATED)
async def block_time(
    payload: BlockTimeRequest,
    service: SchedulingService = Depends(get_scheduling_service),
    _: None = Depends(require_admin_auth),
) -> dict:
    """Block out unavailable time on a calendar."""
    event_id = await service.block_time(
        payload.calendar_id,
        payload.title,
        payload.start,
        payload.end,
        payload.description,
    )
    if event_id is None:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Could not block time on the calendar; please try again.",
        )
    return {"event_id": event_id}


@router.post("/blocks/clear")
async def clear_blocks(
    payload: ClearBlocksRequest,
    service: SchedulingService = Depends(get_scheduling_service),
    _: None = Depends(require_admin_auth),
) -> dict:
    """Remove upcoming blocks whose title contains the given pattern."""
    try:
        deleted = await service.clear_blocks(
            payload.title_pattern,
            provider_id=payload.provider_id,
            use_admin_calendar=payload.use_admin_calendar,
        )
    except SessionValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return {"deleted": deleted}


@router.get("/providers/{provider_id}/calendar/access")
async def provider_calendar_access(
    provider_id: str,
    service: SchedulingService = Depends(get_scheduling_service),
    _: None = Depends(require_admin_auth),
) -> dict:
    """Report whether the provider's resolved calendar is reachable upstream."""
    info = await service.provider_calendar(provider_id)
    accessible = await service.validate_provider_calendar_access(provider_id)
    return {
        "provider_id": provider_id,
        "calendar_id": info.calendar_id,
        "is_configured": info.is_configured,
        "accessible": accessible,
    }
