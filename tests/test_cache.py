"""
Response Cache Tests
--------------------
Expiry, eviction policies, key derivation and statistics.
"""

from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from api.cache import CacheConfig, EvictionPolicy, ResponseCache, fingerprint
from api.models import APIRequest


def cache(clock, **kwargs) -> ResponseCache:
    return ResponseCache(CacheConfig(**kwargs), clock=clock)


class TestCacheBasics:
    """Get, set and expiry."""

    def test_hit_after_set(self, clock):
        """Stored value is returned."""
        c = cache(clock)
        c.set("a", "value")

        assert c.get("a") == "value"

    def test_expired_entry_is_a_miss(self, clock):
        """Lookups at or past expiry miss and remove the entry."""
        c = cache(clock, ttl=10.0)
        c.set("a", "value")

        clock.advance(10.0)

        assert c.get("a") is None
        assert "a" not in c

    def test_per_entry_ttl(self, clock):
        """Explicit ttl overrides the default."""
        c = cache(clock, ttl=10.0)
        c.set("a", "value", ttl=1.0)

        clock.advance(1.0)

        assert c.get("a") is None

    def test_disabled_cache_stores_nothing(self, clock):
        """Disabled cache never hits."""
        c = cache(clock, enabled=False)
        c.set("a", "value")

        assert c.get("a") is None
        assert len(c) == 0


class TestEviction:
    """Eviction only when a new key arrives at a full cache."""

    def test_lru_evicts_least_recently_used(self, clock):
        """Reading an entry protects it from LRU eviction."""
        c = cache(clock, max_size=2, strategy=EvictionPolicy.LRU)
        c.set("a", 1)
        c.set("b", 2)
        c.get("a")

        c.set("c", 3)

        assert "a" in c and "c" in c
        assert "b" not in c

    def test_lfu_evicts_least_hit(self, clock):
        """Entry with the fewest hits goes first."""
        c = cache(clock, max_size=2, strategy=EvictionPolicy.LFU)
        c.set("a", 1)
        c.set("b", 2)
        c.get("a")
        c.get("a")
        c.get("b")

        c.set("c", 3)

        assert "b" not in c
        assert "a" in c

    def test_fifo_ignores_access(self, clock):
        """FIFO evicts the oldest insert even if it was read."""
        c = cache(clock, max_size=2, strategy=EvictionPolicy.FIFO)
        c.set("a", 1)
        clock.advance(1.0)
        c.set("b", 2)
        c.get("a")

        c.set("c", 3)

        assert "a" not in c
        assert "b" in c

    def test_overwrite_does_not_evict(self, clock):
        """Replacing an existing key at capacity keeps every entry."""
        c = cache(clock, max_size=2)
        c.set("a", 1)
        c.set("b", 2)

        c.set("a", 10)

        assert len(c) == 2
        assert c.get("a") == 10


class TestCacheKeys:
    """Fingerprints and cacheability."""

    def test_get_ignores_body(self):
        """GET fingerprints do not depend on data."""
        first = APIRequest(method="GET", url="/x", params={"a": 1}, data={"ignored": 1})
        second = APIRequest(method="GET", url="/x", params={"a": 1})

        assert fingerprint(first) == fingerprint(second)

    def test_post_includes_body(self):
        """POST fingerprints depend on the body unless disabled."""
        first = APIRequest(method="POST", url="/x", data={"a": 1})
        second = APIRequest(method="POST", url="/x", data={"a": 2})

        assert fingerprint(first) != fingerprint(second)
        assert fingerprint(first, include_body=False) == fingerprint(second, include_body=False)

    def test_param_order_irrelevant(self):
        """Parameter order does not change the key."""
        first = APIRequest(method="GET", url="/x", params={"a": 1, "b": 2})
        second = APIRequest(method="GET", url="/x", params={"b": 2, "a": 1})

        assert fingerprint(first) == fingerprint(second)

    def test_custom_key_func(self, clock):
        """Configured key function replaces the fingerprint."""
        c = cache(clock, key_func=lambda r: f"{r.method}:{r.url}")

        assert c.key_for(APIRequest(method="GET", url="/x")) == "GET:/x"


class TestCacheStats:
    """Statistics and clear."""

    def test_stats_report_hits_and_entries(self, clock):
        """Stats include hit rate and per-entry details."""
        c = cache(clock, max_size=5)
        c.set("a", 1)
        c.get("a")
        c.get("missing")
        clock.advance(2.0)

        stats = c.stats()

        assert stats["size"] == 1
        assert stats["max_size"] == 5
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["entries"] == [{"key": "a", "hits": 1, "age": 2.0}]

    def test_clear_empties(self, clock):
        """clear() removes every entry."""
        c = cache(clock)
        c.set("a", 1)
        c.clear()

        assert len(c) == 0
        assert c.stats()["hits"] == 0

    def test_purge_expired(self, clock):
        """purge_expired() drops only expired entries."""
        c = cache(clock, ttl=5.0)
        c.set("old", 1)
        clock.advance(3.0)
        c.set("new", 2)
        clock.advance(3.0)

        assert c.purge_expired() == 1
        assert "new" in c


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
