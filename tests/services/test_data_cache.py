"""Tests for the TTL data cache."""

from claude_analytics.services import DataCache

from factories import FakeClock


class TestDataCacheTTL:
    """SUT: DataCache.get"""

    def test_hit_within_ttl(self):
        """A fresh entry is returned and counted as a hit."""
        clock = FakeClock()
        cache = DataCache(default_ttl=15, clock=clock)
        cache.set("k", "v")
        clock.advance(14.9)
        assert cache.get("k") == "v"
        assert cache.stats()["hits"] == 1

    def test_expired_is_miss(self):
        """An entry past its TTL is a miss and is dropped."""
        clock = FakeClock()
        cache = DataCache(default_ttl=15, clock=clock)
        cache.set("k", "v")
        clock.advance(15)
        assert cache.get("k", "default") == "default"
        assert len(cache) == 0
        stats = cache.stats()
        assert stats["misses"] == 1
        assert stats["expired"] == 1

    def test_per_entry_ttl(self):
        """An explicit TTL overrides the default."""
        clock = FakeClock()
        cache = DataCache(default_ttl=15, clock=clock)
        cache.set("short", 1, ttl=1)
        cache.set("long", 2)
        clock.advance(2)
        assert not cache.contains("short")
        assert cache.contains("long")

    def test_get_stale_ignores_ttl(self):
        """Degraded reads return an expired value that was never looked up."""
        clock = FakeClock()
        cache = DataCache(default_ttl=1, clock=clock)
        cache.set("k", "old")
        clock.advance(5)
        assert cache.get_stale("k") == "old"
        assert cache.get_stale("missing", "none") == "none"

    def test_evict_expired(self):
        """Periodic sweep removes only expired entries."""
        clock = FakeClock()
        cache = DataCache(default_ttl=10, clock=clock)
        cache.set("a", 1, ttl=1)
        cache.set("b", 2)
        clock.advance(5)
        assert cache.evict_expired() == 1
        assert cache.contains("b")

    def test_hit_rate(self):
        """Hit rate is a percentage of lookups."""
        cache = DataCache(clock=FakeClock())
        cache.set("k", 1)
        cache.get("k")
        cache.get("k")
        cache.get("other")
        assert cache.stats()["hitRate"] == 66.67


class TestDataCacheInvalidation:
    """SUT: DataCache invalidation"""

    def test_invalidate_exact(self):
        """Exact invalidation reports whether something was removed."""
        cache = DataCache(clock=FakeClock())
        cache.set("k", 1)
        assert cache.invalidate("k") is True
        assert cache.invalidate("k") is False

    def test_invalidate_prefix(self):
        """Prefix invalidation drops every key under the prefix."""
        cache = DataCache(clock=FakeClock())
        cache.set("computation::sessions", 1)
        cache.set("computation::summary", 2)
        cache.set("/logs/a.jsonl::parsed", 3)
        assert cache.invalidate_prefix("computation::") == 2
        assert len(cache) == 1

    def test_invalidate_file_drops_derived_and_dependents(self):
        """A file change drops keys derived from it and entries depending on it."""
        cache = DataCache(clock=FakeClock())
        cache.set("/logs/a.jsonl::parsed", "a")
        cache.set("/logs/b.jsonl::parsed", "b")
        cache.set("computation::sessions", "s", dependencies=["/logs/a.jsonl", "/logs/b.jsonl"])

        removed = cache.invalidate_file("/logs/a.jsonl")

        assert removed == 2
        assert cache.contains("/logs/b.jsonl::parsed")
        assert not cache.contains("computation::sessions")

    def test_clear(self):
        """Clear empties the cache."""
        cache = DataCache(clock=FakeClock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.clear()
        assert len(cache) == 0


class TestDataCacheSizeLimit:
    """SUT: DataCache LRU eviction"""

    def test_least_recently_used_is_evicted(self):
        """Reading a key protects it from eviction."""
        cache = DataCache(max_entries=2, clock=FakeClock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert cache.contains("a")
        assert not cache.contains("b")
        assert cache.stats()["evictions"] == 1
