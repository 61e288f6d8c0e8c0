from __future__ import annotations

import os

# The engine is built at import time; keep tests on a private in-memory db.
os.environ["DATABASE_URL"] = "sqlite://"

from datetime import UTC, datetime

import pytest

from session_calendar.config import AppSettings, CalendarSettings
from session_calendar.db import SessionLocal, init_db
from session_calendar.db_models import ProviderProfileDB, SessionBookingDB
from session_calendar.metrics import metrics
from session_calendar.services.scheduling import build_scheduling_service

from fakes import FakeCalendarGateway, InMemoryProfileStore, ManualClock, RecordingSleep

ADMIN_CALENDAR_ID = "admin@practice.example"
NOW = datetime(2025, 6, 10, 8, 0, tzinfo=UTC)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _isolate_global_state():
    metrics.reset()
    init_db()
    session = SessionLocal()
    try:
        session.query(SessionBookingDB).delete()
        session.query(ProviderProfileDB).delete()
        session.commit()
    finally:
        session.close()
    yield
    metrics.reset()


@pytest.fixture
def calendar_settings() -> CalendarSettings:
    return CalendarSettings(
        admin_calendar_id=ADMIN_CALENDAR_ID,
        admin_display_name="Practice Support",
        timezone="Europe/London",
        cache_ttl_seconds=300,
        max_attempts=3,
        base_retry_delay_seconds=1.0,
        max_retry_delay_seconds=30.0,
    )


@pytest.fixture
def gateway() -> FakeCalendarGateway:
    return FakeCalendarGateway()


@pytest.fixture
def store() -> InMemoryProfileStore:
    return InMemoryProfileStore()


@pytest.fixture
def monotonic() -> ManualClock:
    return ManualClock()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def scheduling(calendar_settings, gateway, store, monotonic, sleeper):
    return build_scheduling_service(
        AppSettings(calendar=calendar_settings),
        gateway=gateway,
        store=store,
        monotonic=monotonic,
        clock=lambda: NOW,
        sleep=sleeper,
    )
