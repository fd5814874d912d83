"""Tests for LRUCache (hot memory tier)."""

from __future__ import annotations

import pytest

from repic.infrastructure.services.memory_cache import LRUCache


class TestLRUCache:
    def test_put_and_get(self):
        cache = LRUCache(max_size=10)
        cache.put("k1", "data1")
        assert cache.get("k1") == "data1"

    def test_get_miss(self):
        cache = LRUCache(max_size=10)
        assert cache.get("missing") is None

    def test_eviction_on_max_size(self):
        cache = LRUCache(max_size=2)
        cache.put("k1", "d1")
        cache.put("k2", "d2")
        cache.put("k3", "d3")  # should evict k1
        assert cache.get("k1") is None
        assert cache.get("k2") == "d2"
        assert cache.get("k3") == "d3"

    def test_lru_eviction_order(self):
        cache = LRUCache(max_size=2)
        cache.put("k1", "d1")
        cache.put("k2", "d2")
        # Access k1 to make it recently used
        cache.get("k1")
        cache.put("k3", "d3")  # should evict k2 (LRU)
        assert cache.get("k1") == "d1"
        assert cache.get("k2") is None
        assert cache.get("k3") == "d3"

    def test_contains_does_not_promote(self):
        cache = LRUCache(max_size=2)
        cache.put("k1", "d1")
        cache.put("k2", "d2")
        assert cache.contains("k1")
        assert "k1" in cache
        cache.put("k3", "d3")  # k1 is still the LRU entry
        assert "k1" not in cache

    def test_put_updates_existing_key(self):
        cache = LRUCache(max_size=10)
        cache.put("k1", "old")
        cache.put("k1", "new")
        assert cache.get("k1") == "new"
        assert cache.size == 1

    def test_overwrite_promotes(self):
        cache = LRUCache(max_size=2)
        cache.put("k1", "d1")
        cache.put("k2", "d2")
        cache.put("k1", "d1b")
        cache.put("k3", "d3")
        assert cache.keys() == ["k1", "k3"]

    def test_size_never_exceeds_max(self):
        cache = LRUCache(max_size=50)
        for i in range(500):
            cache.put(f"k{i}", "x")
            assert cache.size <= 50
        assert cache.keys() == [f"k{i}" for i in range(450, 500)]

    def test_invalidate(self):
        cache = LRUCache(max_size=10)
        cache.put("k1", "data")
        assert cache.invalidate("k1") is True
        assert cache.get("k1") is None

    def test_invalidate_missing_key(self):
        cache = LRUCache(max_size=10)
        assert cache.invalidate("nope") is False

    def test_clear(self):
        cache = LRUCache(max_size=10)
        cache.put("a", "1")
        cache.put("b", "2")
        cache.clear()
        assert cache.size == 0
        assert len(cache) == 0
        assert cache.get("a") is None

    def test_payload_bytes(self):
        cache = LRUCache(max_size=10)
        cache.put("a", "12345")
        cache.put("b", "123")
        assert cache.payload_bytes == 8

    def test_iteration_is_lru_to_mru(self):
        cache = LRUCache(max_size=3)
        for key in ("a", "b", "c"):
            cache.put(key, key)
        cache.get("a")
        assert list(cache) == ["b", "c", "a"]

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            LRUCache(max_size=0)
