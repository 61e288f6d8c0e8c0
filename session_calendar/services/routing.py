from __future__ import annotations

import logging

from ..models import RoutingDecision, RoutingRequest, SessionCategory
from .provider_directory import ProviderCalendarDirectory
from .session_types import legacy_category_for

logger = logging.getLogger(__name__)

REASON_EXPLICIT_OVERRIDE = "explicit override"
REASON_ADMIN_SESSION = "admin session type"
REASON_PROVIDER_SESSION = "provider session"
REASON_NO_PROVIDER = "no provider specified"


class RoutingEngine:
    """Decides which calendar a booking operation should target."""

    def __init__(self, directory: ProviderCalendarDirectory) -> None:
        self._directory = directory

    @property
    def directory(self) -> ProviderCalendarDirectory:
        return self._directory

    @property
    def admin_calendar_id(self) -> str:
        return self._directory.admin_calendar_id

    def _admin(self, reason: str) -> RoutingDecision:
        return RoutingDecision(
            target_calendar_id=self.admin_calendar_id,
            used_fallback=False,
            reason=reason,
        )

    async def decide_target(self, request: RoutingRequest) -> RoutingDecision:
        decision = await self._decide(request)
        logger.info(
            "calendar_routing_decision",
            extra={
                "provider_id": request.provider_id,
                "session_category": (
                    request.session_category.value if request.session_category else None
                ),
                "session_type": request.session_type,
                "target_calendar_id": decision.target_calendar_id,
                "used_fallback": decision.used_fallback,
                "reason": decision.reason,
            },
        )
        return decision

    async def _decide(self, request: RoutingRequest) -> RoutingDecision:
        if request.force_admin_calendar is True:
            return self._admin(REASON_EXPLICIT_OVERRIDE)

        category = request.session_category
        if category is None:
            category = legacy_category_for(request.session_type)
        if category is SessionCategory.ADMINISTRATIVE:
            return self._admin(REASON_ADMIN_SESSION)

        if request.provider_id:
            info = await self._directory.resolve(request.provider_id)
            on_admin = info.calendar_id == self.admin_calendar_id
            return RoutingDecision(
                target_calendar_id=info.calendar_id,
                used_fallback=on_admin,
                reason=REASON_PROVIDER_SESSION,
                delegated_subject=self._directory.subject_for(info),
            )

        return self._admin(REASON_NO_PROVIDER)
