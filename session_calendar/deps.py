from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from .config import get_settings
from .services.scheduling import SchedulingService


def get_scheduling_service(request: Request) -> SchedulingService:
    """Return the scheduling service wired up by ``create_app``."""
    service = getattr(request.app.state, "scheduling", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduling service not initialised",
        )
    return service


async def require_admin_auth(
    x_admin_api_key: str | None = Header(default=None, alias="X-Admin-API-Key"),
) -> None:
    """Optional admin authentication for calendar maintenance routes.

    - If ADMIN_API_KEY is not set, the routes are open (development mode).
    - If ADMIN_API_KEY is set, callers must send a matching X-Admin-API-Key
      header or receive 401 Unauthorized.
    """
    expected = get_settings().admin_api_key
    if not expected:
        return

    if x_admin_api_key != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin API key",
        )
