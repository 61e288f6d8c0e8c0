from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import google_auth_httplib2
import httplib2
from google.oauth2.service_account import Credentials as ServiceAccountCredentials
from googleapiclient.discovery import build

from ..config import CalendarSettings
from ..errors import CalendarUnavailableError

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]


class CalendarGateway(Protocol):
    """Upstream calendar operations used by the scheduling layer.

    ``subject`` is the account to act as. ``None`` means the administrative
    account.
    """

    async def setup(self) -> None: ...

    async def insert_event(
        self, calendar_id: str, body: Dict[str, Any], *, subject: Optional[str] = None
    ) -> Dict[str, Any]: ...

    async def patch_event(
        self,
        calendar_id: str,
        event_id: str,
        body: Dict[str, Any],
        *,
        subject: Optional[str] = None,
    ) -> Dict[str, Any]: ...

    async def get_event(
        self, calendar_id: str, event_id: str, *, subject: Optional[str] = None
    ) -> Dict[str, Any]: ...

    async def delete_event(
        self, calendar_id: str, event_id: str, *, subject: Optional[str] = None
    ) -> None: ...

    async def get_calendar(
        self, calendar_id: str, *, subject: Optional[str] = None
    ) -> Dict[str, Any]: ...

    async def list_events(
        self,
        calendar_id: str,
        time_min: str,
        time_max: str,
        *,
        subject: Optional[str] = None,
        query: Optional[str] = None,
    ) -> List[Dict[str, Any]]: ...


class GoogleCalendarGateway:
    """Google Calendar v3 client acting through domain-wide delegation.

    A single service account impersonates either the administrative account
    or a provider's delegated workspace account. Blocking client calls are
    pushed to a worker thread with a fresh HTTP transport per request since
    httplib2 connections are not thread safe.
    """

    def __init__(self, settings: CalendarSettings) -> None:
        self._settings = settings
        self._credentials: ServiceAccountCredentials | None = None
        self._services: Dict[str, Any] = {}

    @property
    def is_configured(self) -> bool:
        return self._credentials is not None

    def _load_credentials(self) -> ServiceAccountCredentials:
        raw = (self._settings.service_account_json or "").strip()
        if raw:
            info = json.loads(raw)
            return ServiceAccountCredentials.from_service_account_info(
                info, scopes=SCOPES
            )
        creds_path = self._settings.service_account_file
        if creds_path and Path(creds_path).exists():
            return ServiceAccountCredentials.from_service_account_file(
                creds_path, scopes=SCOPES
            )
        raise CalendarUnavailableError("No Google service account credentials configured")

    async def setup(self) -> None:
        self._credentials = await asyncio.to_thread(self._load_credentials)
        self._services.clear()
        logger.info(
            "google_calendar_credentials_loaded",
            extra={"admin_calendar_id": self._settings.admin_calendar_id},
        )

    def _delegated_credentials(self, subject: Optional[str]) -> ServiceAccountCredentials:
        if self._credentials is None:
            # Setup failed or never ran; try once more on demand.
            self._credentials = self._load_credentials()
        return self._credentials.with_subject(subject or self._settings.admin_calendar_id)

    def _service(self, subject: Optional[str]) -> tuple[Any, Any]:
        key = subject or self._settings.admin_calendar_id
        creds = self._delegated_credentials(subject)
        service = self._services.get(key)
        if service is None:
            service = build("calendar", "v3", credentials=creds, cache_discovery=False)
            self._services[key] = service
        http = google_auth_httplib2.AuthorizedHttp(
            creds, http=httplib2.Http(timeout=self._settings.request_timeout_seconds)
        )
        return service, http

    async def insert_event(
        self, calendar_id: str, body: Dict[str, Any], *, subject: Optional[str] = None
    ) -> Dict[str, Any]:
        def _call() -> Dict[str, Any]:
            service, http = self._service(subject)
            return (
                service.events()
                .insert(
                    calendarId=calendar_id,
                    body=body,
                    conferenceDataVersion=1,
                    sendUpdates="all",
                )
                .execute(http=http)
            )

        return await asyncio.to_thread(_call)

    async def patch_event(
        self,
        calendar_id: str,
        event_id: str,
        body: Dict[str, Any],
        *,
        subject: Optional[str] = None,
    ) -> Dict[str, Any]:
        def _call() -> Dict[str, Any]:
            service, http = self._service(subject)
            return (
                service.events()
                .patch(
                    calendarId=calendar_id,
                    eventId=event_id,
                    body=body,
                    sendUpdates="all",
                )
                .execute(http=http)
            )

        return await asyncio.to_thread(_call)

    async def get_event(
        self, calendar_id: str, event_id: str, *, subject: Optional[str] = None
    ) -> Dict[str, Any]:
        def _call() -> Dict[str, Any]:
            service, http = self._service(subject)
            return (
                service.events()
                .get(calendarId=calendar_id, eventId=event_id)
                .execute(http=http)
            )

        return await asyncio.to_thread(_call)

    async def delete_event(
        self, calendar_id: str, event_id: str, *, subject: Optional[str] = None
    ) -> None:
        def _call() -> None:
            service, http = self._service(subject)
            (
                service.events()
                .delete(calendarId=calendar_id, eventId=event_id, sendUpdates="all")
                .execute(http=http)
            )

        await asyncio.to_thread(_call)

    async def get_calendar(
        self, calendar_id: str, *, subject: Optional[str] = None
    ) -> Dict[str, Any]:
        def _call() -> Dict[str, Any]:
            service, http = self._service(subject)
            return service.calendars().get(calendarId=calendar_id).execute(http=http)

        return await asyncio.to_thread(_call)

    async def list_events(
        self,
        calendar_id: str,
        time_min: str,
        time_max: str,
        *,
        subject: Optional[str] = None,
        query: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        def _call() -> List[Dict[str, Any]]:
            service, http = self._service(subject)
            items: List[Dict[str, Any]] = []
            page_token: Optional[str] = None
            params: Dict[str, Any] = {
                "calendarId": calendar_id,
                "timeMin": time_min,
                "timeMax": time_max,
                "singleEvents": True,
                "orderBy": "startTime",
                "showDeleted": False,
            }
            if query:
                params["q"] = query
            while True:
                resp = (
                    service.events()
                    .list(pageToken=page_token, **params)
                    .execute(http=http)
                )
                items.extend(resp.get("items", []))
                page_token = resp.get("nextPageToken")
                if not page_token:
                    return items

        return await asyncio.to_thread(_call)
