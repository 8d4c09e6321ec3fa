"""
Unit tests for the category cache.

Tests cover:
- Hit/miss behaviour and value isolation
- TTL expiration and the background sweep
- Size limits and LRU eviction
- Dependency tracking and cascade invalidation
- Single-flight get_or_compute
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import pytest

from ctx_optimizer.cache_manager import (
    DEFAULT_CATEGORY_LIMITS,
    CacheCategory,
    CacheManager,
    CategoryLimits,
)


class TestCacheBasics:
    """Tests for get/set/has."""

    def test_store_and_retrieve(self, cache):
        """Test storing and retrieving from cache."""
        cache.set("context", "key1", "value1")

        assert cache.get("context", "key1") == "value1"

    def test_miss_returns_default(self, cache):
        """Test cache miss returns None or the given default."""
        assert cache.get(CacheCategory.CONTEXT, "missing") is None
        assert cache.get(CacheCategory.CONTEXT, "missing", default="fallback") == "fallback"

    def test_categories_are_independent(self, cache):
        """Test the same key lives separately in each category."""
        cache.set(CacheCategory.CHUNKS, "key", "chunks")
        cache.set(CacheCategory.ROUTING, "key", "routing")

        assert cache.get(CacheCategory.CHUNKS, "key") == "chunks"
        assert cache.get(CacheCategory.ROUTING, "key") == "routing"

    def test_unknown_category_rejected(self, cache):
        """Test that unknown category names raise ValueError."""
        with pytest.raises(ValueError, match="Unknown cache category"):
            cache.set("nonsense", "key", "value")

    def test_values_are_copied(self, cache):
        """Test callers never hold a reference into the store."""
        original = {"items": [1, 2, 3]}
        cache.set("context", "key", original)
        original["items"].append(4)

        retrieved = cache.get("context", "key")
        assert retrieved == {"items": [1, 2, 3]}

        retrieved["items"].clear()
        assert cache.get("context", "key") == {"items": [1, 2, 3]}

    def test_non_string_keys_are_fingerprinted(self, cache):
        """Test structured keys hash identically regardless of dict ordering."""
        cache.set("context", {"task": "fix", "budget": 100}, "value")

        assert cache.get("context", {"budget": 100, "task": "fix"}) == "value"
        assert cache.get("context", {"budget": 101, "task": "fix"}) is None

    def test_fingerprint_handles_dataclasses_and_sets(self):
        """Test canonical fingerprints for dataclasses and sets."""

        @dataclass(frozen=True)
        class Key:
            name: str
            tags: frozenset

        first = CacheManager.fingerprint(Key("a", frozenset({"x", "y"})))
        second = CacheManager.fingerprint(Key("a", frozenset({"y", "x"})))

        assert first == second
        assert len(first) == 64
        assert CacheManager.fingerprint("plain") == "plain"

    def test_overwrite_existing_key(self, cache):
        """Test that setting the same key overwrites."""
        cache.set("context", "key", "v1")
        cache.set("context", "key", "v2")

        assert cache.get("context", "key") == "v2"
        assert cache.get_stats("context")["size"] == 1

    def test_hit_miss_tracking(self, cache):
        """Test cache hit/miss tracking."""
        cache.get("response", "key1")
        cache.set("response", "key1", "value1")
        cache.get("response", "key1")
        cache.get("response", "key1")

        stats = cache.get_stats("response")

        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 2 / 3

    def test_has_does_not_touch(self, cache):
        """Test has() leaves counters alone."""
        cache.set("context", "key", "value")

        assert cache.has("context", "key")
        assert not cache.has("context", "other")
        assert cache.get_stats("context")["hits"] == 0
        assert cache.entries("context")[0]["access_count"] == 0

    def test_default_limits(self):
        """Test the category table."""
        assert DEFAULT_CATEGORY_LIMITS[CacheCategory.PATTERN] == CategoryLimits(7 * 86400, 100)
        assert CacheCategory.CONTEXT.default_limits.max_size == 200
        assert CacheCategory.WORKFLOW.default_limits.ttl_seconds == 1800


class TestTTL:
    """Tests for expiration."""

    def test_entry_unchanged_before_ttl(self, cache, clock):
        """Test an entry read before its TTL is returned unchanged."""
        cache.configure_category("context", ttl_seconds=10)
        cache.set("context", "key", {"a": 1})

        clock.advance(10)

        assert cache.get("context", "key") == {"a": 1}

    def test_entry_removed_after_ttl(self, cache, clock):
        """Test that expired entries are absent and removed on access."""
        cache.configure_category("context", ttl_seconds=10)
        cache.set("context", "key", "value")

        clock.advance(10.5)

        assert cache.get("context", "key") is None
        stats = cache.get_stats("context")
        assert stats["size"] == 0
        assert stats["expirations"] == 1

    def test_access_does_not_extend_ttl(self, cache, clock):
        """Test TTL counts from creation, not last access."""
        cache.configure_category("context", ttl_seconds=10)
        cache.set("context", "key", "value")

        clock.advance(6)
        assert cache.get("context", "key") == "value"
        clock.advance(6)
        assert cache.get("context", "key") is None

    def test_sweep_expired(self, cache, clock):
        """Test sweeping removes only expired entries across categories."""
        cache.configure_category("context", ttl_seconds=10)
        cache.configure_category("chunks", ttl_seconds=100)
        cache.set("context", "a", 1)
        cache.set("context", "b", 2)
        cache.set("chunks", "c", 3)

        clock.advance(50)

        assert cache.sweep_expired() == 2
        assert cache.get_stats("context")["size"] == 0
        assert cache.get("chunks", "c") == 3

    def test_background_sweeper(self, clock):
        """Test the sweeper thread removes entries without any access."""
        cache = CacheManager(clock=clock)
        try:
            cache.configure_category("context", ttl_seconds=1)
            cache.set("context", "key", "value")
            clock.advance(5)

            cache.start_sweeper(interval=0.01)
            assert cache.sweeper_running

            deadline = time.monotonic() + 2
            while cache.get_stats("context")["size"] and time.monotonic() < deadline:
                time.sleep(0.01)

            assert cache.get_stats("context")["size"] == 0
        finally:
            cache.close()

        assert not cache.sweeper_running

    def test_invalid_limits_rejected(self, cache):
        """Test configure_category validation."""
        with pytest.raises(ValueError):
            cache.configure_category("context", ttl_seconds=0)
        with pytest.raises(ValueError):
            cache.configure_category("context", max_size=0)


class TestLRUEviction:
    """Tests for size caps."""

    def test_insert_order_eviction(self, cache, clock):
        """Test max size 2 with k1, k2, k3 inserted evicts k1."""
        cache.configure_category("context", max_size=2)

        cache.set("context", "k1", 1)
        clock.advance(1)
        cache.set("context", "k2", 2)
        clock.advance(1)
        cache.set("context", "k3", 3)

        assert not cache.has("context", "k1")
        assert cache.has("context", "k2")
        assert cache.has("context", "k3")

    def test_insert_order_eviction_same_timestamp(self, cache):
        """Test ties on access time fall back to insertion order."""
        cache.configure_category("context", max_size=2)

        cache.set("context", "k1", 1)
        cache.set("context", "k2", 2)
        cache.set("context", "k3", 3)

        assert not cache.has("context", "k1")
        assert cache.get_stats("context")["evictions"] == 1

    def test_just_accessed_entry_survives(self, cache):
        """Test a just-read entry is never the eviction victim, even on a timestamp tie."""
        cache.configure_category("context", max_size=2)

        cache.set("context", "k1", 1)
        cache.set("context", "k2", 2)
        cache.get("context", "k1")
        cache.set("context", "k3", 3)

        assert cache.has("context", "k1")
        assert not cache.has("context", "k2")
        assert cache.has("context", "k3")

    def test_eviction_removes_exactly_one(self, cache, clock):
        """Test one insert into a full category evicts one entry."""
        cache.configure_category("chunks", max_size=3)
        for i in range(3):
            cache.set("chunks", f"k{i}", i)
            clock.advance(1)

        cache.set("chunks", "new", 99)

        stats = cache.get_stats("chunks")
        assert stats["size"] == 3
        assert stats["evictions"] == 1

    def test_overwrite_never_evicts(self, cache):
        """Test overwriting a key in a full category keeps the others."""
        cache.configure_category("context", max_size=2)
        cache.set("context", "k1", 1)
        cache.set("context", "k2", 2)

        cache.set("context", "k1", 10)

        assert cache.get("context", "k1") == 10
        assert cache.get("context", "k2") == 2
        assert cache.get_stats("context")["evictions"] == 0

    def test_shrinking_cap_evicts(self, cache, clock):
        """Test lowering max_size evicts least recently used entries."""
        for i in range(4):
            cache.set("routing", f"k{i}", i)
            clock.advance(1)

        cache.configure_category("routing", max_size=2)

        assert [e["key"] for e in cache.entries("routing")] == ["k2", "k3"]


class TestInvalidation:
    """Tests for explicit and cascading invalidation."""

    def test_invalidate_single(self, cache):
        cache.set("context", "key", "value")

        assert cache.invalidate("context", "key") == 1
        assert cache.invalidate("context", "key") == 0
        assert cache.get("context", "key") is None

    def test_invalidate_without_cascade_keeps_dependents(self, cache):
        cache.set("chunks", "root", "chunks")
        cache.set("context", "child", "context", dependencies=["root"])

        cache.invalidate("chunks", "root")

        assert cache.has("context", "child")

    def test_cascade_removes_transitive_dependents(self, cache):
        """Test cascade follows dependents across categories."""
        cache.set("chunks", "root", "chunks")
        cache.set("context", "child", "context", dependencies=["root"])
        cache.set("routing", "grandchild", "routing", dependencies=["child"])
        cache.set("routing", "unrelated", "other")

        removed = cache.invalidate("chunks", "root", cascade=True)

        assert removed == 3
        assert not cache.has("context", "child")
        assert not cache.has("routing", "grandchild")
        assert cache.has("routing", "unrelated")

    def test_cascade_terminates_on_cycles(self, cache):
        """Test a dependency cycle is removed once and the traversal stops."""
        cache.set("context", "a", 1, dependencies=["c"])
        cache.set("context", "b", 2, dependencies=["a"])
        cache.set("context", "c", 3, dependencies=["b"])

        removed = cache.invalidate("context", "a", cascade=True)

        assert removed == 3
        assert cache.get_stats("context")["size"] == 0

    def test_self_dependency(self, cache):
        cache.set("context", "a", 1, dependencies=["a"])

        assert cache.invalidate("context", "a", cascade=True) == 1

    def test_cascade_with_missing_root(self, cache):
        """Test dependents are removed even when the root entry is gone."""
        cache.set("context", "child", "value", dependencies=["gone"])

        assert cache.invalidate("chunks", "gone", cascade=True) == 1
        assert not cache.has("context", "child")

    def test_invalidate_category(self, cache):
        cache.set("context", "a", 1)
        cache.set("context", "b", 2)
        cache.set("chunks", "c", 3)

        assert cache.invalidate_category("context") == 2
        assert cache.get_stats("context")["size"] == 0
        assert cache.has("chunks", "c")

    def test_clear_all(self, cache):
        cache.set("context", "a", 1)
        cache.set("chunks", "b", 2, dependencies=["a"])

        assert cache.clear_all() == 2
        assert cache.get_stats()["total_size"] == 0


class TestGetOrCompute:
    """Tests for memoized computation."""

    def test_computes_once(self, cache):
        calls = []

        def producer():
            calls.append(1)
            return {"result": 42}

        assert cache.get_or_compute("evaluation", "key", producer) == {"result": 42}
        assert cache.get_or_compute("evaluation", "key", producer) == {"result": 42}
        assert len(calls) == 1

    def test_failure_not_cached(self, cache):
        """Test producer failures propagate and leave no entry."""

        def failing():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            cache.get_or_compute("evaluation", "key", failing)

        assert not cache.has("evaluation", "key")
        assert cache.get_or_compute("evaluation", "key", lambda: "ok") == "ok"

    def test_dependencies_recorded(self, cache):
        cache.get_or_compute("context", "child", lambda: "value", dependencies=["root"])

        assert cache.invalidate("chunks", "root", cascade=True) == 1

    def test_single_flight(self, cache):
        """Test concurrent callers for one key share a single computation."""
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_producer():
            calls.append(1)
            started.set()
            release.wait(timeout=5)
            return "computed"

        with ThreadPoolExecutor(max_workers=4) as pool:
            first = pool.submit(cache.get_or_compute, "workflow", "key", slow_producer)
            assert started.wait(timeout=5)
            others = [
                pool.submit(cache.get_or_compute, "workflow", "key", slow_producer)
                for _ in range(3)
            ]
            time.sleep(0.05)
            release.set()

            results = [first.result(timeout=5)] + [f.result(timeout=5) for f in others]

        assert results == ["computed"] * 4
        assert len(calls) == 1
        assert cache.get_stats()["in_flight"] == 0

    def test_single_flight_propagates_failure(self, cache):
        """Test waiters receive the owner's exception."""
        started = threading.Event()
        release = threading.Event()

        def failing():
            started.set()
            release.wait(timeout=5)
            raise KeyError("missing")

        with ThreadPoolExecutor(max_workers=2) as pool:
            first = pool.submit(cache.get_or_compute, "workflow", "key", failing)
            assert started.wait(timeout=5)
            second = pool.submit(cache.get_or_compute, "workflow", "key", failing)
            time.sleep(0.05)
            release.set()

            with pytest.raises(KeyError):
                first.result(timeout=5)
            with pytest.raises(KeyError):
                second.result(timeout=5)

        assert not cache.has("workflow", "key")


class TestCacheStats:
    """Tests for statistics."""

    def test_overall_stats(self, cache):
        cache.set("context", "a", 1)
        cache.get("context", "a")
        cache.get("chunks", "missing")

        stats = cache.get_stats()

        assert stats["total_size"] == 1
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["by_category"]["context"]["sets"] == 1
        assert set(stats["by_category"]) == {c.value for c in CacheCategory}

    def test_reset_stats(self, cache):
        cache.get("context", "missing")
        cache.reset_stats()

        assert cache.get_stats("context")["misses"] == 0

    def test_context_manager_stops_sweeper(self, clock):
        with CacheManager(clock=clock, auto_sweep=True, sweep_interval=60) as cache:
            assert cache.sweeper_running

        assert not cache.sweeper_running
