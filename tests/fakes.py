from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional

import httplib2
from googleapiclient.errors import HttpError

from session_calendar.services.provider_directory import (
    ProviderNotFoundError,
    ProviderProfile,
)

MEET_URL = "https://meet.google.com/abc-defg-hij"


def http_error(status: int, message: str = "upstream error", **headers: str) -> HttpError:
    info = {"status": str(status)}
    info.update({k.replace("_", "-"): v for k, v in headers.items()})
    return HttpError(resp=httplib2.Response(info), content=message.encode())


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class InMemoryProfileStore:
    def __init__(self) -> None:
        self.profiles: Dict[str, ProviderProfile] = {}
        self.reads = 0
        self.error: Optional[Exception] = None

    def add(self, profile: ProviderProfile) -> None:
        self.profiles[profile.provider_id] = profile

    def get_profile(self, provider_id: str) -> ProviderProfile:
        self.reads += 1
        if self.error is not None:
            raise self.error
        try:
            return self.profiles[provider_id]
        except KeyError:
            raise ProviderNotFoundError(provider_id)

    def list_active_profiles(self) -> List[ProviderProfile]:
        if self.error is not None:
            raise self.error
        return list(self.profiles.values())


class FakeCalendarGateway:
    """In-memory stand-in for the Google Calendar gateway that records calls."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.events: Dict[tuple[str, str], Dict[str, Any]] = {}
        self.deleted: set[tuple[str, str]] = set()
        self.listings: Dict[str, List[Dict[str, Any]]] = {}
        self.planned_failures: List[tuple[str, Optional[str], Exception]] = []
        self.include_conference = True
        self.setup_calls = 0
        self.setup_error: Optional[Exception] = None
        self._counter = 0

    def fail(self, method: str, error: Exception, *, calendar_id: str | None = None, times: int = 1) -> None:
        for _ in range(times):
            self.planned_failures.append((method, calendar_id, error))

    def calls_to(self, method: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["method"] == method]

    def _record(self, method: str, calendar_id: str, subject: str | None, **extra: Any) -> None:
        self.calls.append(
            {"method": method, "calendar_id": calendar_id, "subject": subject, **extra}
        )
        for idx, (planned_method, planned_calendar, error) in enumerate(self.planned_failures):
            if planned_method != method:
                continue
            if planned_calendar is not None and planned_calendar != calendar_id:
                continue
            del self.planned_failures[idx]
            raise error

    async def setup(self) -> None:
        self.setup_calls += 1
        if self.setup_error is not None:
            raise self.setup_error

    async def insert_event(self, calendar_id, body, *, subject=None):
        self._record("insert_event", calendar_id, subject, body=copy.deepcopy(body))
        self._counter += 1
        event_id = f"evt{self._counter}"
        created = copy.deepcopy(body)
        created["id"] = event_id
        created["status"] = "confirmed"
        if self.include_conference and "conferenceData" in body:
            created["conferenceData"] = {
                "conferenceId": "abc-defg-hij",
                "entryPoints": [
                    {"entryPointType": "phone", "uri": "tel:+44-20-0000-0000"},
                    {"entryPointType": "video", "uri": MEET_URL},
                ],
            }
            created["hangoutLink"] = MEET_URL
        else:
            created.pop("conferenceData", None)
        self.events[(calendar_id, event_id)] = created
        return copy.deepcopy(created)

    async def patch_event(self, calendar_id, event_id, body, *, subject=None):
        self._record("patch_event", calendar_id, subject, event_id=event_id, body=body)
        key = (calendar_id, event_id)
        if key not in self.events:
            raise http_error(410 if key in self.deleted else 404, "Not Found")
        self.events[key].update(copy.deepcopy(body))
        return copy.deepcopy(self.events[key])

    async def get_event(self, calendar_id, event_id, *, subject=None):
        self._record("get_event", calendar_id, subject, event_id=event_id)
        key = (calendar_id, event_id)
        if key not in self.events:
            raise http_error(404, "Not Found")
        return copy.deepcopy(self.events[key])

    async def delete_event(self, calendar_id, event_id, *, subject=None):
        self._record("delete_event", calendar_id, subject, event_id=event_id)
        key = (calendar_id, event_id)
        if key not in self.events:
            raise http_error(410 if key in self.deleted else 404, "Resource has been deleted")
        del self.events[key]
        self.deleted.add(key)

    async def get_calendar(self, calendar_id, *, subject=None):
        self._record("get_calendar", calendar_id, subject)
        return {"id": calendar_id, "timeZone": "Europe/London"}

    async def list_events(self, calendar_id, time_min, time_max, *, subject=None, query=None):
        self._record(
            "list_events",
            calendar_id,
            subject,
            time_min=time_min,
            time_max=time_max,
            query=query,
        )
        items = self.listings.get(calendar_id, [])
        if query:
            items = [item for item in items if query in (item.get("summary") or "")]
        return copy.deepcopy(items)
