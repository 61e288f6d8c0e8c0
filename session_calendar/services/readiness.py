from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from ..metrics import metrics

logger = logging.getLogger(__name__)


class ReadinessGate:
    """Makes sure upstream auth setup has run (or definitively failed).

    Concurrent callers share one in-flight setup task. Every outcome,
    including a timeout, marks the gate ready so callers never hang; a
    failed setup only means the calendar calls that follow will fail and
    take their own fallback paths. After a failure the memoized task is
    dropped and a later call retries setup once the cooldown has passed.
    """

    def __init__(
        self,
        setup: Callable[[], Awaitable[None]],
        timeout_seconds: float = 5.0,
        retry_cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._setup = setup
        self._timeout = timeout_seconds
        self._retry_cooldown = retry_cooldown_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task[None]] = None
        self._ready = False
        self._failed_at: Optional[float] = None
        self.setup_succeeded = False
        self.last_error: Optional[BaseException] = None
        self.attempts = 0

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def retry_cooldown_seconds(self) -> float:
        return self._retry_cooldown

    def _should_retry(self) -> bool:
        if self.setup_succeeded or self._failed_at is None:
            return False
        return self._clock() - self._failed_at >= self._retry_cooldown

    async def ensure_ready(self) -> None:
        if self._ready and not self._should_retry():
            return
        if self._task is None:
            self._task = asyncio.ensure_future(self._attempt())
        # Shield so a cancelled caller does not cancel the shared attempt.
        await asyncio.shield(self._task)

    async def _attempt(self) -> None:
        self.attempts += 1
        try:
            await asyncio.wait_for(self._setup(), timeout=self._timeout)
        except Exception as exc:
            self.setup_succeeded = False
            self.last_error = exc
            self._failed_at = self._clock()
            self._task = None
            metrics.readiness_failures += 1
            logger.error(
                "calendar_readiness_failed",
                extra={
                    "attempt": self.attempts,
                    "timed_out": isinstance(exc, asyncio.TimeoutError),
                    "detail": str(exc) or type(exc).__name__,
                },
            )
        else:
            self.setup_succeeded = True
            self.last_error = None
            self._failed_at = None
            logger.info("calendar_ready", extra={"attempt": self.attempts})
        finally:
            self._ready = True
