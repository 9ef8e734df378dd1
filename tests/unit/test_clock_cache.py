"""Unit tests for clocks and the adapter-owned TTL cache."""
import pytest

from croupier.core.clock import Clock, SystemClock, VirtualClock
from croupier.integrations.ledger.cache import TTLCache


class TestVirtualClock:
    def test_advance_and_set(self):
        clock = VirtualClock(start=100)
        clock.advance(5)
        assert clock.now() == 105
        clock.set(200)
        assert clock.now() == 200

    def test_cannot_go_backwards(self):
        clock = VirtualClock(start=100)
        with pytest.raises(ValueError):
            clock.advance(-1)
        with pytest.raises(ValueError):
            clock.set(50)

    @pytest.mark.asyncio
    async def test_sleep_advances_time(self):
        clock = VirtualClock(start=0)
        await clock.sleep(30)
        assert clock.now() == 30

    def test_clocks_satisfy_protocol(self):
        assert isinstance(VirtualClock(), Clock)
        assert isinstance(SystemClock(), Clock)


class TestTTLCache:
    def test_hit_then_expiry(self):
        clock = VirtualClock(start=0)
        cache = TTLCache(ttl_seconds=10, clock=clock)
        cache.set("a", 1)
        assert cache.get("a") == 1
        clock.advance(10)
        assert cache.get("a") is None
        assert cache.hits == 1
        assert cache.misses == 1

    def test_zero_ttl_disables_caching(self):
        cache = TTLCache(ttl_seconds=0, clock=VirtualClock())
        cache.set("a", 1)
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_invalidate_and_clear(self):
        cache = TTLCache(ttl_seconds=10, clock=VirtualClock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.invalidate("a")
        assert cache.get("a") is None
        assert cache.get("b") == 2
        cache.clear()
        assert len(cache) == 0

    def test_evicts_oldest_when_full(self):
        cache = TTLCache(ttl_seconds=10, max_entries=2, clock=VirtualClock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)
        assert cache.get("a") is None
        assert cache.get("c") == 3
        assert len(cache) == 2

    def test_negative_ttl_rejected(self):
        with pytest.raises(ValueError):
            TTLCache(ttl_seconds=-1)

    def test_stats(self):
        cache = TTLCache(ttl_seconds=10, clock=VirtualClock())
        cache.get("missing")
        assert cache.stats() == {"entries": 0, "hits": 0, "misses": 1}
