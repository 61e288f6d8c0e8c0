from session_calendar.services.cache import TTLCache

from fakes import ManualClock


def test_entries_expire_after_ttl():
    clock = ManualClock()
    cache: TTLCache[str] = TTLCache(300, clock=clock)
    cache.set("prov-1", "cal-1")

    clock.advance(299)
    assert cache.get("prov-1") == "cal-1"

    clock.advance(1)
    assert cache.get("prov-1") is None
    # Expired entries are dropped on read.
    assert len(cache) == 0


def test_set_returns_entry_with_expiry():
    clock = ManualClock(start=50.0)
    cache: TTLCache[int] = TTLCache(10, clock=clock)
    entry = cache.set("a", 1)
    assert entry.expires_at == 60.0
    assert entry.is_fresh(59.9)
    assert not entry.is_fresh(60.0)
    assert cache.entry("a") is entry


def test_invalidate_and_invalidate_all():
    cache: TTLCache[str] = TTLCache(60, clock=ManualClock())
    cache.set("a", "1")
    cache.set("b", "2")

    assert cache.invalidate("a") is True
    assert cache.invalidate("a") is False
    assert "a" not in cache
    assert "b" in cache

    assert cache.invalidate_all() == 1
    assert len(cache) == 0


def test_values_skips_and_drops_expired_entries():
    clock = ManualClock()
    cache: TTLCache[str] = TTLCache(60, clock=clock)
    cache.set("old", "cal-old")
    clock.advance(30)
    cache.set("new", "cal-new")
    clock.advance(30)

    assert cache.values() == ["cal-new"]
    assert len(cache) == 1
