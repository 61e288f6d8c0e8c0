"""Legacy free-text session type adapter.

Older callers only send a session title or type string such as
"Initial Consultation". New callers tag bookings with an explicit
SessionCategory; this module maps the old strings onto a category so the
routing engine never has to inspect free text itself.
"""

from __future__ import annotations

from typing import Optional

from ..models import SessionCategory

ADMIN_SESSION_KEYWORDS = (
    "consultation",
    "intake",
    "assessment",
    "onboarding",
    "introduction",
    "demo",
)


def is_admin_session_type(session_type: Optional[str]) -> bool:
    if not session_type:
        return False
    lowered = session_type.lower()
    return any(keyword in lowered for keyword in ADMIN_SESSION_KEYWORDS)


def legacy_category_for(session_type: Optional[str]) -> Optional[SessionCategory]:
    """Infer a category from a legacy session type string.

    Returns None when no session type was given so the caller can fall
    through to provider-based routing.
    """
    if not session_type or not session_type.strip():
        return None
    if is_admin_session_type(session_type):
        return SessionCategory.ADMINISTRATIVE
    return SessionCategory.THERAPY


def parse_category(raw: Optional[str]) -> Optional[SessionCategory]:
    if raw is None:
        return None
    try:
        return SessionCategory(raw.strip().lower())
    except ValueError:
        return None
