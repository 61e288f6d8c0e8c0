from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from google.auth.exceptions import RefreshError

from ..errors import CalendarUnavailableError, SessionValidationError
from ..metrics import metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

NON_RETRYABLE_STATUSES = frozenset({400, 401, 403, 404, 409, 422})
NOT_FOUND_STATUSES = frozenset({404, 410})
RATE_LIMITED_STATUS = 429

_CREDENTIAL_MARKERS = (
    "invalid_grant",
    "invalid_token",
    "invalid_client",
    "unauthorized_client",
    "token has been expired",
    "token expired",
    "credentials have expired",
)
_PERMISSION_MARKERS = (
    "permission",
    "forbidden",
    "insufficient",
    "access denied",
)
_DELEGATION_MARKERS = (
    "invalid_grant",
    "invalid email or user id",
    "unauthorized_client",
    "not authorized to access this resource",
    "delegation denied",
    "domain-wide delegation",
)


def status_of(error: BaseException) -> Optional[int]:
    """Best-effort HTTP status extraction from an upstream error."""
    resp = getattr(error, "resp", None)
    status = getattr(resp, "status", None) if resp is not None else None
    if status is None:
        for attr in ("status_code", "status", "code"):
            value = getattr(error, attr, None)
            if value is not None:
                status = value
                break
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _message_of(error: BaseException) -> str:
    parts = [str(error)]
    reason = getattr(error, "reason", None)
    if isinstance(reason, str):
        parts.append(reason)
    return " ".join(parts).lower()


def retry_after_of(error: BaseException) -> Optional[float]:
    """Return the Retry-After hint in seconds, when the upstream sent one."""
    headers: Any = getattr(error, "resp", None)
    if headers is None:
        headers = getattr(error, "headers", None)
    if not headers:
        return None
    raw = None
    getter = getattr(headers, "get", None)
    if callable(getter):
        raw = getter("retry-after") or getter("Retry-After")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        pass
    try:
        when = parsedate_to_datetime(str(raw))
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def is_not_found(error: BaseException) -> bool:
    return status_of(error) in NOT_FOUND_STATUSES


def is_non_retryable(error: BaseException) -> bool:
    if isinstance(error, (CalendarUnavailableError, SessionValidationError)):
        return True
    if isinstance(error, RefreshError) and not getattr(error, "retryable", False):
        return True
    if status_of(error) in NON_RETRYABLE_STATUSES:
        return True
    message = _message_of(error)
    markers = _CREDENTIAL_MARKERS + _PERMISSION_MARKERS + _DELEGATION_MARKERS
    return any(marker in message for marker in markers)


def is_auth_delegation_error(error: BaseException) -> bool:
    """True when impersonating a delegated account was rejected."""
    if isinstance(error, RefreshError):
        return True
    if status_of(error) == 401:
        return True
    message = _message_of(error)
    return any(marker in message for marker in _DELEGATION_MARKERS)


class ResilienceWrapper:
    """Retry/backoff policy applied to every upstream calendar call."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._sleep = sleep
        self._rand = rand

    def compute_delay(self, attempt: int, error: BaseException) -> float:
        """Backoff before the attempt after ``attempt`` (1-based)."""
        base = self.base_delay_seconds
        exponential = base * (2 ** (attempt - 1))
        jitter = self._rand() * base

        if status_of(error) == RATE_LIMITED_STATUS:
            hinted = retry_after_of(error)
            if hinted is not None:
                return min(hinted, self.max_delay_seconds)
            return min(exponential * 2 + jitter, self.max_delay_seconds)

        return min(exponential + jitter, self.max_delay_seconds)

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
        max_attempts: int | None = None,
    ) -> T:
        attempts = self.max_attempts if max_attempts is None else max(1, max_attempts)
        last_error: BaseException | None = None

        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except Exception as exc:
                last_error = exc
                if is_non_retryable(exc):
                    logger.info(
                        "calendar_non_retryable_error",
                        extra={
                            "operation": name,
                            "status": status_of(exc),
                            "detail": str(exc),
                        },
                    )
                    raise

                logger.warning(
                    "calendar_attempt_failed",
                    extra={
                        "operation": name,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "status": status_of(exc),
                        "detail": str(exc),
                    },
                )
                if attempt < attempts:
                    delay = self.compute_delay(attempt, exc)
                    metrics.calendar_retries += 1
                    logger.info(
                        "calendar_retry_scheduled",
                        extra={"operation": name, "delay_seconds": round(delay, 3)},
                    )
                    await self._sleep(delay)

        logger.error(
            "calendar_retries_exhausted",
            extra={"operation": name, "attempts": attempts, "detail": str(last_error)},
        )
        raise last_error  # type: ignore[misc]

    async def safe(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
        fallback_value: T,
        context: dict | None = None,
    ) -> T:
        try:
            return await self.with_retry(operation, name)
        except Exception as exc:
            status = status_of(exc)
            extra = {"operation": name, "status": status, "detail": str(exc)}
            if context:
                extra["context"] = context
            if status == RATE_LIMITED_STATUS:
                logger.error("calendar_rate_limited", extra=extra)
            elif status == 401:
                logger.error("calendar_auth_error", extra=extra)
            elif status == 403:
                logger.error("calendar_permission_error", extra=extra)
            else:
                logger.error("calendar_operation_failed", extra=extra)
            return fallback_value
