"""Tests for stratum.cache -- LRU eviction, recency and statistics."""
from stratum.cache import LRUCache


class TestEviction:
    """Capacity and recency."""

    def test_scenario_evicts_oldest(self):
        cache = LRUCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)
        assert cache.get("b") == 2
        assert cache.get("c") == 3
        assert cache.get("a") is None
        assert len(cache) == 2

    def test_access_resets_recency(self):
        cache = LRUCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert "a" in cache
        assert "b" not in cache

    def test_overwrite_does_not_evict(self):
        cache = LRUCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        assert len(cache) == 2
        assert cache.get("a") == 10
        assert cache.get("b") == 2

    def test_overwrite_marks_recent(self):
        cache = LRUCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        cache.set("c", 3)
        assert cache.keys() == ["a", "c"]


class TestCapacityEdges:
    def test_zero_capacity_disables_cache(self):
        cache = LRUCache(max_size=0)
        cache.set("a", 1)
        assert len(cache) == 0
        assert cache.get("a") is None
        assert not cache.enabled

    def test_negative_capacity_is_unbounded(self):
        cache = LRUCache(max_size=-1)
        for i in range(1000):
            cache.set(i, i)
        assert len(cache) == 1000
        assert cache.get(0) == 0


class TestStats:
    def test_hit_rate(self):
        cache = LRUCache(max_size=4)
        cache.set("a", 1)
        cache.get("a")
        cache.get("a")
        cache.get("missing")
        assert cache.hits == 2
        assert cache.misses == 1
        assert abs(cache.hit_rate() - 2 / 3) < 1e-9

    def test_hit_rate_empty(self):
        assert LRUCache().hit_rate() == 0.0

    def test_contains_does_not_count(self):
        cache = LRUCache(max_size=2)
        cache.set("a", 1)
        assert "a" in cache
        assert cache.hits == 0 and cache.misses == 0

    def test_peek_does_not_count_or_reorder(self):
        cache = LRUCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.peek("a") == 1
        assert cache.peek("zzz", "fallback") == "fallback"
        assert cache.hits == 0 and cache.misses == 0
        cache.set("c", 3)
        assert cache.keys() == ["b", "c"]

    def test_reset_stats(self):
        cache = LRUCache(max_size=2)
        cache.get("x")
        cache.reset_stats()
        assert cache.misses == 0


class TestDeleteClear:
    def test_delete(self):
        cache = LRUCache(max_size=2)
        cache.set("a", 1)
        assert cache.delete("a") is True
        assert cache.delete("a") is False
        assert "a" not in cache

    def test_delete_none_value(self):
        cache = LRUCache(max_size=2)
        cache.set("a", None)
        assert cache.delete("a") is True

    def test_clear(self):
        cache = LRUCache(max_size=3)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.clear()
        assert len(cache) == 0
