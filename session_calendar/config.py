from __future__ import annotations

import os
from functools import lru_cache
import logging

from pydantic import BaseModel


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class CalendarSettings(BaseModel):
    # Shared calendar used for administrative sessions and as the safe
    # fallback whenever a provider calendar is unusable.
    admin_calendar_id: str = "support@example.com"
    admin_display_name: str = "Practice Support"
    service_account_file: str | None = None
    service_account_json: str | None = None
    timezone: str = "Europe/London"
    request_timeout_seconds: float = 10.0
    cache_ttl_seconds: int = 300
    readiness_timeout_seconds: float = 5.0
    # Minimum wait before a failed credential setup is attempted again.
    readiness_retry_cooldown_seconds: float = 60.0
    max_attempts: int = 3
    base_retry_delay_seconds: float = 1.0
    max_retry_delay_seconds: float = 30.0
    session_buffer_minutes: int = 10
    # Working hours (calendar timezone) for free-slot computation.
    default_open_hour: int = 9
    default_close_hour: int = 17

    @property
    def has_service_account(self) -> bool:
        return bool(self.service_account_file or self.service_account_json)


class AppSettings(BaseModel):
    calendar: CalendarSettings = CalendarSettings()
    database_url: str | None = None
    admin_api_key: str | None = None

    @classmethod
    def from_env(cls) -> "AppSettings":
        """Load settings from environment variables with safe defaults."""
        calendar = CalendarSettings(
            admin_calendar_id=os.getenv("ADMIN_CALENDAR_ID", "support@example.com"),
            admin_display_name=os.getenv("ADMIN_CALENDAR_NAME", "Practice Support"),
            service_account_file=os.getenv("GOOGLE_SERVICE_ACCOUNT_FILE"),
            service_account_json=os.getenv("GOOGLE_SERVICE_ACCOUNT_KEY"),
            timezone=os.getenv("CALENDAR_TIMEZONE", "Europe/London"),
            request_timeout_seconds=_env_float("CALENDAR_REQUEST_TIMEOUT_SECONDS", 10.0),
            cache_ttl_seconds=_env_int("CALENDAR_CACHE_TTL_SECONDS", 300),
            readiness_timeout_seconds=_env_float(
                "CALENDAR_READINESS_TIMEOUT_SECONDS", 5.0
            ),
            readiness_retry_cooldown_seconds=_env_float(
                "CALENDAR_READINESS_RETRY_SECONDS", 60.0
            ),
            max_attempts=_env_int("CALENDAR_MAX_ATTEMPTS", 3),
            base_retry_delay_seconds=_env_float("CALENDAR_RETRY_BASE_SECONDS", 1.0),
            max_retry_delay_seconds=_env_float("CALENDAR_RETRY_MAX_SECONDS", 30.0),
            session_buffer_minutes=_env_int("SESSION_BUFFER_MINUTES", 10),
            default_open_hour=_env_int("WORKING_HOURS_OPEN", 9),
            default_close_hour=_env_int("WORKING_HOURS_CLOSE", 17),
        )
        return cls(
            calendar=calendar,
            database_url=os.getenv("DATABASE_URL"),
            admin_api_key=os.getenv("ADMIN_API_KEY"),
        )

    def validate_combinations(self) -> None:
        """Warn when calendar settings are inconsistent to avoid runtime surprises."""
        logger = logging.getLogger(__name__)
        warnings: list[str] = []
        cal = self.calendar

        if not cal.has_service_account:
            warnings.append(
                "GOOGLE_SERVICE_ACCOUNT_KEY or GOOGLE_SERVICE_ACCOUNT_FILE is not set; "
                "calendar operations will fail and fall back."
            )
        if cal.service_account_file and not os.path.exists(cal.service_account_file):
            warnings.append(
                f"GOOGLE_SERVICE_ACCOUNT_FILE points to a missing file: {cal.service_account_file}"
            )
        if "@" not in cal.admin_calendar_id:
            warnings.append(
                "ADMIN_CALENDAR_ID should be the delegated admin account email."
            )
        if cal.default_close_hour <= cal.default_open_hour:
            warnings.append(
                "WORKING_HOURS_CLOSE must be later than WORKING_HOURS_OPEN."
            )
        if cal.max_attempts < 1:
            warnings.append("CALENDAR_MAX_ATTEMPTS must be at least 1.")
        if warnings:
            for msg in warnings:
                logger.warning("configuration_warning", extra={"detail": msg})


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Return application settings loaded from the environment.

    The result is cached for the lifetime of the process so configuration
    is stable and we avoid repeatedly parsing environment variables.
    """
    settings = AppSettings.from_env()
    settings.validate_combinations()
    return settings
