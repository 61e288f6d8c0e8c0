from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable, List, Optional, Protocol

from sqlalchemy.orm import Session

from ..db_models import ProviderProfileDB
from ..metrics import metrics
from ..models import ProviderCalendarInfo
from .cache import TTLCache

logger = logging.getLogger(__name__)

SHARED_CALENDAR_SUFFIX = "@group.calendar.google.com"


def is_shared_calendar(calendar_id: str | None) -> bool:
    return bool(calendar_id) and calendar_id.endswith(SHARED_CALENDAR_SUFFIX)


def impersonation_subject(
    calendar_id: str | None,
    delegated_account_email: str | None,
    admin_calendar_id: str,
) -> Optional[str]:
    """Account to act as when touching ``calendar_id``; None means the admin account.

    Shared calendars are not accounts and can never be impersonated, so they
    are reached through the delegated email when there is one and through
    the admin account otherwise.
    """
    if not calendar_id or calendar_id == admin_calendar_id:
        return None
    if delegated_account_email:
        return delegated_account_email
    if is_shared_calendar(calendar_id):
        return None
    return calendar_id


@dataclass(frozen=True)
class ProviderProfile:
    provider_id: str
    calendar_id: Optional[str] = None
    delegated_account_email: Optional[str] = None
    calendar_permissions_configured: bool = False
    display_name: str = ""


class ProviderNotFoundError(LookupError):
    pass


class ProviderProfileStore(Protocol):
    def get_profile(self, provider_id: str) -> ProviderProfile: ...

    def list_active_profiles(self) -> List[ProviderProfile]: ...


def _profile_from_row(row: ProviderProfileDB) -> ProviderProfile:
    return ProviderProfile(
        provider_id=row.provider_id,
        calendar_id=(row.calendar_id or None),
        delegated_account_email=(row.delegated_account_email or None),
        calendar_permissions_configured=bool(row.calendar_permissions_configured),
        display_name=(row.display_name or "").strip(),
    )


class SqlProviderProfileStore:
    """Reads calendar identity columns from the provider_profiles table."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def get_profile(self, provider_id: str) -> ProviderProfile:
        session_db = self._session_factory()
        try:
            row = session_db.get(ProviderProfileDB, provider_id)
            if row is None:
                raise ProviderNotFoundError(f"Provider {provider_id} not found")
            return _profile_from_row(row)
        finally:
            session_db.close()

    def list_active_profiles(self) -> List[ProviderProfile]:
        session_db = self._session_factory()
        try:
            rows = (
                session_db.query(ProviderProfileDB)
                .filter(ProviderProfileDB.is_active.is_(True))
                .order_by(ProviderProfileDB.provider_id)
                .all()
            )
            return [_profile_from_row(row) for row in rows]
        finally:
            session_db.close()


class ProviderCalendarDirectory:
    """Resolves a provider id to the calendar its sessions belong on.

    Resolution never raises: anything that goes wrong while reading the
    profile store degrades to the administrative calendar so bookings can
    still proceed.
    """

    def __init__(
        self,
        store: ProviderProfileStore,
        admin_calendar_id: str,
        cache: TTLCache[ProviderCalendarInfo],
    ) -> None:
        self._store = store
        self._admin_calendar_id = admin_calendar_id
        self._cache = cache

    @property
    def admin_calendar_id(self) -> str:
        return self._admin_calendar_id

    @property
    def cache(self) -> TTLCache[ProviderCalendarInfo]:
        return self._cache

    def build_info(self, profile: ProviderProfile) -> ProviderCalendarInfo:
        calendar_id = self._admin_calendar_id
        is_configured = False
        delegated = profile.delegated_account_email or ""

        if profile.calendar_id and profile.calendar_permissions_configured:
            calendar_id = profile.calendar_id
            is_configured = True
        elif delegated:
            is_configured = bool(profile.calendar_permissions_configured)
            if is_configured:
                calendar_id = delegated

        return ProviderCalendarInfo(
            provider_id=profile.provider_id,
            calendar_id=calendar_id,
            delegated_account_email=delegated,
            is_configured=is_configured,
            provider_display_name=profile.display_name,
        )

    def fallback_info(self, provider_id: str) -> ProviderCalendarInfo:
        return ProviderCalendarInfo(
            provider_id=provider_id,
            calendar_id=self._admin_calendar_id,
            delegated_account_email="",
            is_configured=False,
            provider_display_name="Unknown Provider",
        )

    async def resolve(self, provider_id: str) -> ProviderCalendarInfo:
        cached = self._cache.get(provider_id)
        if cached is not None:
            metrics.directory_cache_hits += 1
            return cached
        metrics.directory_cache_misses += 1

        try:
            profile = self._store.get_profile(provider_id)
        except Exception:
            metrics.directory_fallbacks += 1
            logger.warning(
                "provider_calendar_resolution_failed",
                exc_info=True,
                extra={
                    "provider_id": provider_id,
                    "calendar_id": self._admin_calendar_id,
                },
            )
            return self.fallback_info(provider_id)

        info = self.build_info(profile)
        if not info.is_configured:
            logger.info(
                "provider_calendar_not_configured",
                extra={
                    "provider_id": provider_id,
                    "calendar_id": info.calendar_id,
                },
            )
        self._cache.set(provider_id, info)
        return info

    async def calendar_id_for(self, provider_id: str) -> str:
        info = await self.resolve(provider_id)
        if info.is_configured and info.calendar_id != self._admin_calendar_id:
            return info.calendar_id
        return self._admin_calendar_id

    def subject_for(self, info: ProviderCalendarInfo) -> Optional[str]:
        return impersonation_subject(
            info.calendar_id, info.delegated_account_email, self._admin_calendar_id
        )

    async def subject_for_calendar(
        self, calendar_id: str, provider_id: str | None = None
    ) -> Optional[str]:
        """Subject for an existing event's calendar.

        Uses the owning provider's record so reads, patches and deletes act
        as the same account the event was created with.
        """
        if not calendar_id or calendar_id == self._admin_calendar_id:
            return None
        info: ProviderCalendarInfo | None = None
        if provider_id:
            resolved = await self.resolve(provider_id)
            if resolved.calendar_id == calendar_id:
                info = resolved
        if info is None:
            info = self.find_by_calendar(calendar_id)
        if info is not None:
            return self.subject_for(info)
        return impersonation_subject(calendar_id, None, self._admin_calendar_id)

    def find_by_calendar(self, calendar_id: str) -> ProviderCalendarInfo | None:
        for info in self._cache.values():
            if info.calendar_id == calendar_id:
                return info
        for info in self.list_provider_calendars():
            if info.calendar_id == calendar_id:
                self._cache.set(info.provider_id, info)
                return info
        return None

    def invalidate(self, provider_id: str) -> bool:
        removed = self._cache.invalidate(provider_id)
        logger.info(
            "provider_calendar_cache_invalidated",
            extra={"provider_id": provider_id, "removed": removed},
        )
        return removed

    def invalidate_all(self) -> int:
        count = self._cache.invalidate_all()
        logger.info("provider_calendar_cache_cleared", extra={"entries": count})
        return count

    def list_provider_calendars(self) -> List[ProviderCalendarInfo]:
        try:
            profiles = self._store.list_active_profiles()
        except Exception:
            logger.warning("provider_calendar_listing_failed", exc_info=True)
            return []
        return [self.build_info(profile) for profile in profiles]
