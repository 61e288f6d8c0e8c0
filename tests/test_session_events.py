from datetime import UTC, datetime, timedelta

import pytest
from google.auth.exceptions import RefreshError

from session_calendar.errors import (
    CalendarBookingError,
    DelegationFallbackError,
    MissingConferenceError,
    SessionValidationError,
)
from session_calendar.metrics import metrics
from session_calendar.models import (
    Attendee,
    AttendeeRole,
    SessionCategory,
    SessionEventChanges,
    SessionEventSpec,
)
from session_calendar.services.provider_directory import ProviderProfile

from fakes import MEET_URL, http_error

ADMIN = "admin@practice.example"
PROVIDER_CAL = "rivers@practice.example"


def _spec(**overrides) -> SessionEventSpec:
    values = dict(
        title="Therapy Session",
        start_time=datetime(2025, 6, 10, 9, 0, tzinfo=UTC),
        end_time=datetime(2025, 6, 10, 9, 50, tzinfo=UTC),
        attendees=[
            Attendee("client@example.com", "Sam Client", AttendeeRole.CLIENT),
            Attendee(PROVIDER_CAL, "Dr Rivers", AttendeeRole.PROVIDER),
        ],
        appointment_id="appt-123",
        provider_id="prov-1",
        session_category=SessionCategory.THERAPY,
    )
    values.update(overrides)
    return SessionEventSpec(**values)


@pytest.fixture
def configured_provider(store):
    store.add(
        ProviderProfile(
            provider_id="prov-1",
            calendar_id=PROVIDER_CAL,
            delegated_account_email=PROVIDER_CAL,
            calendar_permissions_configured=True,
        )
    )


@pytest.mark.anyio
async def test_finished_session_is_skipped_without_upstream_calls(scheduling, gateway):
    spec = _spec(
        start_time=datetime(2025, 6, 9, 9, 0, tzinfo=UTC),
        end_time=datetime(2025, 6, 9, 9, 50, tzinfo=UTC),
    )

    assert await scheduling.events.create_event(spec) is None
    assert gateway.calls == []
    assert metrics.calendar_events_skipped_past == 1


@pytest.mark.anyio
async def test_session_inside_buffer_is_still_created(scheduling, gateway):
    # Ended 5 minutes before "now"; the 10 minute buffer keeps it bookable.
    spec = _spec(
        start_time=datetime(2025, 6, 10, 7, 5, tzinfo=UTC),
        end_time=datetime(2025, 6, 10, 7, 55, tzinfo=UTC),
    )

    event = await scheduling.events.create_event(spec)

    assert event is not None
    assert len(gateway.calls_to("insert_event")) == 1


@pytest.mark.anyio
async def test_inverted_times_are_rejected(scheduling, gateway):
    spec = _spec(end_time=datetime(2025, 6, 10, 8, 30, tzinfo=UTC))
    with pytest.raises(SessionValidationError):
        await scheduling.events.create_event(spec)
    assert gateway.calls == []


@pytest.mark.anyio
async def test_event_payload(scheduling, gateway, configured_provider):
    spec = _spec(
        attendees=[
            Attendee("Client@Example.com", "Sam Client", AttendeeRole.CLIENT),
            Attendee("client@example.com", "Duplicate", AttendeeRole.CLIENT),
            Attendee("not-an-email", "Broken", AttendeeRole.CLIENT),
            Attendee(PROVIDER_CAL, "Dr Rivers", AttendeeRole.PROVIDER),
        ],
        description="Bring your notes.",
    )

    event = await scheduling.events.create_event(spec)

    assert event is not None
    assert event.calendar_id == PROVIDER_CAL
    assert event.conference_url == MEET_URL
    assert event.conference_id == "abc-defg-hij"

    (call,) = gateway.calls_to("insert_event")
    body = call["body"]
    assert call["subject"] == PROVIDER_CAL
    assert body["start"] == {"dateTime": "2025-06-10T10:00:00", "timeZone": "Europe/London"}
    assert body["end"] == {"dateTime": "2025-06-10T10:50:00", "timeZone": "Europe/London"}
    assert [a["email"] for a in body["attendees"]] == ["Client@Example.com", PROVIDER_CAL]
    assert body["conferenceData"]["createRequest"] == {
        "requestId": "appt-123",
        "conferenceSolutionKey": {"type": "hangoutsMeet"},
    }
    assert [(r["method"], r["minutes"]) for r in body["reminders"]["overrides"]] == [
        ("email", 1440),
        ("email", 60),
        ("popup", 15),
    ]
    assert body["transparency"] == "opaque"
    assert body["visibility"] == "private"
    assert body["guestsCanModify"] is False
    assert body["guestsCanInviteOthers"] is False
    assert "Client: Sam Client (Client@Example.com)" in body["description"]
    assert "Provider: Dr Rivers" in body["description"]
    assert "Duration: 50 minutes" in body["description"]
    assert "Bring your notes." in body["description"]


@pytest.mark.anyio
async def test_generated_request_id_without_appointment(scheduling, gateway):
    await scheduling.events.create_event(_spec(appointment_id=None))
    body = gateway.calls_to("insert_event")[0]["body"]
    assert body["conferenceData"]["createRequest"]["requestId"]


@pytest.mark.anyio
async def test_delegation_failure_retries_admin_exactly_once(
    scheduling, gateway, configured_provider
):
    gateway.fail(
        "insert_event",
        RefreshError("invalid_grant: Invalid email or User ID"),
        calendar_id=PROVIDER_CAL,
    )

    created = await scheduling.events.create_routed_event(_spec())

    assert created is not None
    event, decision = created
    inserts = gateway.calls_to("insert_event")
    assert [(c["calendar_id"], c["subject"]) for c in inserts] == [
        (PROVIDER_CAL, PROVIDER_CAL),
        (ADMIN, None),
    ]
    assert inserts[0]["body"] == inserts[1]["body"]
    assert event.calendar_id == ADMIN
    assert event.conference_url == MEET_URL
    assert decision.used_fallback is True
    assert metrics.calendar_delegated_fallbacks == 1
    assert metrics.for_provider("prov-1").delegated_fallbacks == 1


@pytest.mark.anyio
async def test_fallback_failure_raises(scheduling, gateway, configured_provider):
    gateway.fail("insert_event", http_error(401, "unauthorized_client"), calendar_id=PROVIDER_CAL)
    gateway.fail("insert_event", http_error(500), calendar_id=ADMIN)

    with pytest.raises(DelegationFallbackError) as excinfo:
        await scheduling.events.create_event(_spec())

    assert excinfo.value.original_calendar_id == PROVIDER_CAL
    assert excinfo.value.fallback_calendar_id == ADMIN
    assert len(gateway.calls_to("insert_event")) == 2


@pytest.mark.anyio
async def test_missing_video_entry_point_raises(scheduling, gateway):
    gateway.include_conference = False

    with pytest.raises(MissingConferenceError) as excinfo:
        await scheduling.events.create_event(_spec())

    assert excinfo.value.event_id == "evt1"
    assert metrics.calendar_missing_conference == 1


@pytest.mark.anyio
async def test_transient_error_then_success(scheduling, gateway, sleeper):
    gateway.fail("insert_event", http_error(503))

    event = await scheduling.events.create_event(_spec())

    assert event is not None
    assert len(gateway.calls_to("insert_event")) == 2
    assert len(sleeper.delays) == 1


@pytest.mark.anyio
async def test_exhausted_retries_raise_booking_error(
    scheduling, gateway, configured_provider
):
    gateway.fail("insert_event", http_error(500), times=3)

    with pytest.raises(CalendarBookingError) as excinfo:
        await scheduling.events.create_event(_spec())

    assert not isinstance(excinfo.value, DelegationFallbackError)
    assert excinfo.value.calendar_id == PROVIDER_CAL
    assert len(gateway.calls_to("insert_event")) == 3
    assert metrics.calendar_delegated_fallbacks == 0


@pytest.mark.anyio
async def test_update_event_patches_same_calendar(scheduling, gateway, configured_provider):
    event = await scheduling.events.create_event(_spec())
    new_start = datetime(2025, 6, 11, 13, 0, tzinfo=UTC)

    updated = await scheduling.events.update_event(
        event.event_id,
        event.calendar_id,
        SessionEventChanges(start_time=new_start, end_time=new_start + timedelta(minutes=50)),
    )

    assert updated is True
    (call,) = gateway.calls_to("patch_event")
    assert call["calendar_id"] == PROVIDER_CAL
    assert call["subject"] == PROVIDER_CAL
    assert call["body"]["start"]["dateTime"] == "2025-06-11T14:00:00"
    assert set(call["body"]) == {"start", "end"}


@pytest.mark.anyio
async def test_update_missing_event_returns_false(scheduling, gateway):
    updated = await scheduling.events.update_event(
        "gone", ADMIN, SessionEventChanges(title="New title")
    )
    assert updated is False
    assert len(gateway.calls_to("patch_event")) == 1


@pytest.mark.anyio
async def test_delete_is_idempotent(scheduling, gateway):
    event = await scheduling.events.create_event(_spec(provider_id=None))

    assert await scheduling.events.delete_event(event.event_id, event.calendar_id) is True
    assert await scheduling.events.delete_event(event.event_id, event.calendar_id) is True
    assert len(gateway.calls_to("delete_event")) == 2
    assert metrics.calendar_events_deleted == 1


@pytest.mark.anyio
async def test_delete_other_failure_returns_false(scheduling, gateway):
    gateway.fail("delete_event", http_error(403, "forbidden"))
    assert await scheduling.events.delete_event("evt", ADMIN) is False


@pytest.mark.anyio
async def test_get_event_lookup(scheduling, gateway):
    event = await scheduling.events.create_event(_spec(provider_id=None))

    found = await scheduling.events.get_event(event.event_id, ADMIN)
    assert found.exists is True
    assert found.title == "Therapy Session"
    assert found.start == datetime(2025, 6, 10, 9, 0, tzinfo=UTC)
    assert found.conference_url == MEET_URL
    assert found.attendees == ["client@example.com", PROVIDER_CAL]

    missing = await scheduling.events.get_event("nope", ADMIN)
    assert missing.exists is False


@pytest.mark.anyio
async def test_get_event_falls_back_to_hangout_link(scheduling, gateway):
    gateway.events[(ADMIN, "legacy")] = {
        "id": "legacy",
        "summary": "Old session",
        "start": {"dateTime": "2025-06-10T10:00:00+01:00"},
        "end": {"dateTime": "2025-06-10T10:50:00+01:00"},
        "hangoutLink": "https://meet.google.com/old-link",
    }

    found = await scheduling.events.get_event("legacy", ADMIN)

    assert found.conference_url == "https://meet.google.com/old-link"
    assert found.start == datetime(2025, 6, 10, 9, 0, tzinfo=UTC)


@pytest.mark.anyio
async def test_blocking_event(scheduling, gateway):
    start = datetime(2025, 6, 12, 12, 0, tzinfo=UTC)
    event_id = await scheduling.events.create_blocking_event(
        ADMIN, "Unavailable", start, start + timedelta(hours=2)
    )
    assert event_id == "evt1"
    body = gateway.calls_to("insert_event")[0]["body"]
    assert "conferenceData" not in body
    assert body["transparency"] == "opaque"

    gateway.fail("insert_event", http_error(403, "forbidden"))
    assert (
        await scheduling.events.create_blocking_event(
            ADMIN, "Unavailable", start, start + timedelta(hours=2)
        )
        is None
    )


GROUP_CAL = "team-rivers@group.calendar.google.com"


@pytest.mark.anyio
async def test_shared_calendar_uses_delegated_account_for_every_call(scheduling, gateway, store):
    store.add(
        ProviderProfile(
            provider_id="prov-1",
            calendar_id=GROUP_CAL,
            delegated_account_email=PROVIDER_CAL,
            calendar_permissions_configured=True,
        )
    )

    event = await scheduling.events.create_event(_spec())
    assert event.calendar_id == GROUP_CAL

    await scheduling.events.update_event(
        event.event_id, GROUP_CAL, SessionEventChanges(title="Moved")
    )
    await scheduling.events.get_event(event.event_id, GROUP_CAL)
    assert await scheduling.events.delete_event(event.event_id, GROUP_CAL) is True

    subjects = {(c["method"], c["subject"]) for c in gateway.calls}
    assert subjects == {
        ("insert_event", PROVIDER_CAL),
        ("patch_event", PROVIDER_CAL),
        ("get_event", PROVIDER_CAL),
        ("delete_event", PROVIDER_CAL),
    }
    assert gateway.events == {}


@pytest.mark.anyio
async def test_shared_calendar_without_delegate_is_never_impersonated(
    scheduling, gateway, store
):
    store.add(
        ProviderProfile(
            provider_id="prov-1",
            calendar_id=GROUP_CAL,
            calendar_permissions_configured=True,
        )
    )

    created = await scheduling.events.create_routed_event(_spec())

    event, decision = created
    assert event.calendar_id == GROUP_CAL
    assert decision.used_fallback is False
    (call,) = gateway.calls_to("insert_event")
    assert call["calendar_id"] == GROUP_CAL
    assert call["subject"] is None

    assert await scheduling.events.delete_event(event.event_id, GROUP_CAL) is True
    assert gateway.calls_to("delete_event")[0]["subject"] is None
    assert metrics.calendar_delegated_fallbacks == 0


@pytest.mark.anyio
async def test_existing_event_subject_survives_cache_expiry(
    scheduling, gateway, store, monotonic
):
    store.add(
        ProviderProfile(
            provider_id="prov-1",
            calendar_id=GROUP_CAL,
            delegated_account_email=PROVIDER_CAL,
            calendar_permissions_configured=True,
        )
    )
    event = await scheduling.events.create_event(_spec())

    monotonic.advance(301)
    assert await scheduling.events.delete_event(event.event_id, GROUP_CAL) is True

    assert gateway.calls_to("delete_event")[0]["subject"] == PROVIDER_CAL


@pytest.mark.anyio
async def test_clear_blocks_deletes_matching_titles_only(scheduling, gateway):
    start = datetime(2025, 6, 12, 12, 0, tzinfo=UTC)
    for title in ("Holiday: June", "Holiday: July", "Supervision"):
        await scheduling.events.create_blocking_event(
            ADMIN, title, start, start + timedelta(hours=1)
        )
    gateway.listings[ADMIN] = [
        event for (calendar_id, _), event in gateway.events.items() if calendar_id == ADMIN
    ]

    deleted = await scheduling.events.delete_blocking_events("Holiday:")

    assert deleted == 2
    assert [e["summary"] for e in gateway.events.values()] == ["Supervision"]
    (listing,) = gateway.calls_to("list_events")
    assert listing["query"] == "Holiday:"
    assert listing["time_min"] == "2025-06-10T08:00:00Z"
    assert listing["time_max"] == "2025-09-08T08:00:00Z"


@pytest.mark.anyio
async def test_clear_blocks_on_provider_calendar(scheduling, gateway, configured_provider):
    gateway.listings[PROVIDER_CAL] = [
        {"id": "blk1", "summary": "Out of office"},
        {"id": "blk2", "summary": "Out of office (pm)"},
    ]

    deleted = await scheduling.events.delete_blocking_events(
        "Out of office", provider_id="prov-1"
    )

    # Neither event exists in the fake store; gone counts as removed.
    assert deleted == 2
    assert {c["subject"] for c in gateway.calls_to("delete_event")} == {PROVIDER_CAL}


@pytest.mark.anyio
async def test_clear_blocks_requires_pattern_and_survives_listing_failure(
    scheduling, gateway
):
    with pytest.raises(SessionValidationError):
        await scheduling.events.delete_blocking_events("   ")

    gateway.fail("list_events", http_error(403, "forbidden"))
    assert await scheduling.events.delete_blocking_events("Holiday") == 0
    assert gateway.calls_to("delete_event") == []
