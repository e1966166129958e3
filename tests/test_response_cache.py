"""
Tests for ResponseCache TTL semantics and housekeeping.
"""
from core.response_cache import ResponseCache
from tests.helpers import FakeClock


def test_fresh_entry_returned_within_ttl():
    clock = FakeClock()
    cache = ResponseCache(clock=clock)
    cache.put("price:BONK", 0.5, ttl=30)

    clock.advance(29.9)
    entry = cache.get("price:BONK")
    assert entry is not None
    assert entry.value == 0.5


def test_entry_expires_at_ttl():
    clock = FakeClock()
    cache = ResponseCache(clock=clock)
    cache.put("price:BONK", 0.5, ttl=30)

    clock.advance(30)
    assert cache.get("price:BONK") is None


def test_stale_entry_still_available():
    clock = FakeClock()
    cache = ResponseCache(clock=clock)
    cache.put("balance:wallet", 3.2, ttl=30)

    clock.advance(10_000)
    stale = cache.get_stale("balance:wallet")
    assert stale.value == 3.2
    assert stale.age(clock()) == 10_000


def test_put_overwrites_entry():
    clock = FakeClock()
    cache = ResponseCache(clock=clock)
    cache.put("k", 1, ttl=10)
    clock.advance(5)
    cache.put("k", 2, ttl=10)

    clock.advance(6)
    assert cache.get("k").value == 2


def test_purge_drops_only_long_expired_entries():
    clock = FakeClock()
    cache = ResponseCache(clock=clock)
    cache.put("old", 1, ttl=10)
    clock.advance(3_000)
    cache.put("recent", 2, ttl=10)

    clock.advance(700)  # "old" expired 3690s ago, "recent" 690s ago
    removed = cache.purge_expired(max_stale_seconds=3600)

    assert removed == 1
    assert cache.get_stale("old") is None
    assert cache.get_stale("recent") is not None
    assert len(cache) == 1


def test_invalidate_removes_entry():
    cache = ResponseCache(clock=FakeClock())
    cache.put("k", 1, ttl=10)
    cache.invalidate("k")
    assert cache.get_stale("k") is None
