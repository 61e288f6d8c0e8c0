from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, String, Text

from .db import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid4())


class ProviderProfileDB(Base):
    """Calendar-relevant slice of a provider (therapist) profile.

    The rest of the profile is owned by the onboarding flow; this layer
    only reads the calendar identity columns.
    """

    __tablename__ = "provider_profiles"

    provider_id = Column(String, primary_key=True)
    display_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    calendar_id = Column(String(255), nullable=True)
    delegated_account_email = Column(String(255), nullable=True)
    calendar_permissions_configured = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class SessionBookingDB(Base):
    """Booking record persisted by callers of the scheduling layer.

    Events live on different calendars per provider, so the event id is
    always stored together with the calendar id it was created on.
    """

    __tablename__ = "session_bookings"

    id = Column(String, primary_key=True, default=_new_id)
    appointment_id = Column(String, nullable=False, unique=True, index=True)
    provider_id = Column(String, nullable=True, index=True)
    session_type = Column(String(128), nullable=True)
    event_id = Column(String(1024), nullable=True, index=True)
    calendar_id = Column(String(255), nullable=True)
    conference_url = Column(Text, nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String(32), nullable=False, default="SCHEDULED")
    created_at = Column(DateTime, nullable=False, default=_utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)
