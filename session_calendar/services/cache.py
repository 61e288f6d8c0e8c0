from __future__ import annotations

import time
from typing import Callable, Dict, Generic, List, Optional, TypeVar

from ..models import CacheEntry


V = TypeVar("V")


class TTLCache(Generic[V]):
    """Small keyed cache with a fixed time-to-live per entry.

    The clock is injectable so tests can move time without sleeping.
    Expired entries are dropped lazily on read.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, CacheEntry[V]] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_fresh(self._clock()):
            return entry.value
        self._entries.pop(key, None)
        return None

    def set(self, key: str, value: V) -> CacheEntry[V]:
        entry = CacheEntry(value=value, expires_at=self._clock() + self._ttl)
        self._entries[key] = entry
        return entry

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_all(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def values(self) -> List[V]:
        """Fresh values only; expired entries are dropped on the way."""
        now = self._clock()
        fresh: List[V] = []
        for key, entry in list(self._entries.items()):
            if entry.is_fresh(now):
                fresh.append(entry.value)
            else:
                self._entries.pop(key, None)
        return fresh

    def entry(self, key: str) -> Optional[CacheEntry[V]]:
        """Raw entry (fresh or not) for inspection."""
        return self._entries.get(key)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None
