"""
Cache Manager for context optimization

In-memory cache that memoizes every expensive pipeline stage.

Key features:
- Named categories with their own TTL and size cap
- LRU eviction when a category is full
- Dependency tracking with cascading invalidation (cycle safe)
- Background sweep of expired entries
- Single-flight get_or_compute: one computation per key at a time
"""

import copy
import dataclasses
import hashlib
import itertools
import json
import logging
import threading
import time
from collections import defaultdict, deque
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

logger = logging.getLogger(__name__)


DEFAULT_SWEEP_INTERVAL_SECONDS = 300.0  # 5 minutes

MINUTE = 60
HOUR = 60 * MINUTE
DAY = 24 * HOUR


@dataclass(frozen=True)
class CategoryLimits:
    """TTL and size cap of one cache category."""
    ttl_seconds: float
    max_size: int


class CacheCategory(str, Enum):
    RESPONSE = "response"
    DECOMPOSITION = "decomposition"
    WORKFLOW = "workflow"
    EVALUATION = "evaluation"
    PATTERN = "pattern"
    CHUNKS = "chunks"
    CONTEXT = "context"
    ROUTING = "routing"

    @property
    def default_limits(self) -> CategoryLimits:
        return DEFAULT_CATEGORY_LIMITS[self]

    @classmethod
    def resolve(cls, value: "str | CacheCategory") -> "CacheCategory":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown cache category: {value!r}") from None


DEFAULT_CATEGORY_LIMITS: dict[CacheCategory, CategoryLimits] = {
    CacheCategory.RESPONSE: CategoryLimits(ttl_seconds=HOUR, max_size=1000),
    CacheCategory.DECOMPOSITION: CategoryLimits(ttl_seconds=2 * HOUR, max_size=500),
    CacheCategory.WORKFLOW: CategoryLimits(ttl_seconds=30 * MINUTE, max_size=500),
    CacheCategory.EVALUATION: CategoryLimits(ttl_seconds=DAY, max_size=1000),
    CacheCategory.PATTERN: CategoryLimits(ttl_seconds=7 * DAY, max_size=100),
    CacheCategory.CHUNKS: CategoryLimits(ttl_seconds=HOUR, max_size=500),
    CacheCategory.CONTEXT: CategoryLimits(ttl_seconds=30 * MINUTE, max_size=200),
    CacheCategory.ROUTING: CategoryLimits(ttl_seconds=30 * MINUTE, max_size=200),
}


@dataclass
class CacheEntry:
    """A cached value. Owned by the CacheManager, never handed out."""
    key: str
    value: Any
    created_at: float
    last_access: float
    access_count: int = 0
    dependencies: tuple[str, ...] = ()
    touch_seq: int = 0  # Global order of set/get touches, breaks LRU ties

    def snapshot(self, now: float) -> dict[str, Any]:
        return {
            "key": self.key,
            "created_at": self.created_at,
            "last_access": self.last_access,
            "access_count": self.access_count,
            "dependencies": list(self.dependencies),
            "age_seconds": now - self.created_at,
        }


@dataclass
class CategoryStats:
    """Counters for one cache category."""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    invalidations: int = 0
    expirations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


def _canonicalize(value: Any) -> Any:
    """Reduce a key to JSON-serializable primitives with a stable layout."""
    if isinstance(value, Enum):
        return _canonicalize(value.value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            "__type__": type(value).__name__,
            **{f.name: _canonicalize(getattr(value, f.name)) for f in dataclasses.fields(value)},
        }
    if isinstance(value, Mapping):
        return {str(k): _canonicalize(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        items = [_canonicalize(v) for v in value]
        return sorted(items, key=lambda item: json.dumps(item, sort_keys=True, default=str))
    if isinstance(value, (list, tuple)):
        return [_canonicalize(v) for v in value]
    if isinstance(value, bytes):
        return value.hex()
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return repr(value)


class CacheManager:
    """
    Category-based in-memory cache shared by all pipeline stages.

    Every store mutation happens under a single re-entrant lock, so the
    background sweeper never races with foreground get/set/invalidate calls.
    Values are deep-copied on the way in and on the way out.
    """

    def __init__(
        self,
        limits: Mapping["CacheCategory | str", CategoryLimits] | None = None,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        auto_sweep: bool = False,
    ):
        """
        Initialize the cache.

        Args:
            limits: Per-category overrides of the default TTL/size table
            clock: Wall-clock source in seconds (injectable for tests)
            sweep_interval: Seconds between background expiry sweeps
            auto_sweep: Start the background sweeper immediately
        """
        self._clock = clock
        self._lock = threading.RLock()
        self._limits: dict[CacheCategory, CategoryLimits] = dict(DEFAULT_CATEGORY_LIMITS)
        for category, category_limits in (limits or {}).items():
            self._limits[CacheCategory.resolve(category)] = category_limits

        self._stores: dict[CacheCategory, dict[str, CacheEntry]] = {c: {} for c in CacheCategory}
        self._stats: dict[CacheCategory, CategoryStats] = {c: CategoryStats() for c in CacheCategory}

        # dependency key -> entries that declared it
        self._dependents: dict[str, set[tuple[CacheCategory, str]]] = defaultdict(set)

        self._touch_counter = itertools.count(1)
        self._in_flight: dict[tuple[CacheCategory, str], Future] = {}

        self._sweep_interval = sweep_interval
        self._stop_event = threading.Event()
        self._sweeper: threading.Thread | None = None

        if auto_sweep:
            self.start_sweeper()

    # ------------------------------------------------------------------ keys

    @staticmethod
    def fingerprint(key: Any) -> str:
        """Strings are used as-is; anything else is hashed from a canonical form."""
        if isinstance(key, str):
            return key
        canonical = json.dumps(
            _canonicalize(key), sort_keys=True, separators=(",", ":"), default=str
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    # ---------------------------------------------------------------- limits

    def configure_category(
        self,
        category: "CacheCategory | str",
        ttl_seconds: float | None = None,
        max_size: int | None = None,
    ) -> CategoryLimits:
        """
        Override TTL and/or size cap of a category.

        Shrinking the cap below the current size evicts LRU entries until it fits.
        """
        cat = CacheCategory.resolve(category)
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_size is not None and max_size < 1:
            raise ValueError("max_size must be at least 1")

        with self._lock:
            current = self._limits[cat]
            updated = CategoryLimits(
                ttl_seconds=current.ttl_seconds if ttl_seconds is None else ttl_seconds,
                max_size=current.max_size if max_size is None else max_size,
            )
            self._limits[cat] = updated
            while len(self._stores[cat]) > updated.max_size:
                self._evict_lru(cat)

        logger.info(
            f"Cache category {cat.value} configured: ttl={updated.ttl_seconds}s, "
            f"max_size={updated.max_size}"
        )
        return updated

    # ------------------------------------------------------------ operations

    def get(self, category: "CacheCategory | str", key: Any, default: Any = None) -> Any:
        """Return a copy of the cached value, or `default` on miss/expiry."""
        cat = CacheCategory.resolve(category)
        fp = self.fingerprint(key)
        with self._lock:
            found, value = self._lookup(cat, fp)
        return value if found else default

    def has(self, category: "CacheCategory | str", key: Any) -> bool:
        """Check for a live entry without touching access time or counters."""
        cat = CacheCategory.resolve(category)
        fp = self.fingerprint(key)
        with self._lock:
            entry = self._stores[cat].get(fp)
            return entry is not None and not self._is_expired(entry, cat, self._clock())

    def set(
        self,
        category: "CacheCategory | str",
        key: Any,
        value: Any,
        dependencies: Iterable[Any] | None = None,
    ) -> str:
        """
        Store a value.

        Args:
            category: Cache category
            key: Cache key (fingerprinted if not a string)
            value: Value to cache (stored as a deep copy)
            dependencies: Keys this entry depends on, for cascade invalidation

        Returns:
            The fingerprint the value was stored under
        """
        cat = CacheCategory.resolve(category)
        fp = self.fingerprint(key)
        deps = tuple(dict.fromkeys(self.fingerprint(d) for d in (dependencies or ())))
        stored_value = copy.deepcopy(value)

        with self._lock:
            store = self._stores[cat]
            now = self._clock()

            existing = store.pop(fp, None)
            if existing is not None:
                self._unlink(cat, existing)
            else:
                while len(store) >= self._limits[cat].max_size:
                    self._evict_lru(cat)

            store[fp] = CacheEntry(
                key=fp,
                value=stored_value,
                created_at=now,
                last_access=now,
                dependencies=deps,
                touch_seq=next(self._touch_counter),
            )
            for dep in deps:
                self._dependents[dep].add((cat, fp))

            self._stats[cat].sets += 1

        logger.debug(f"Cache set: {cat.value}/{fp}")
        return fp

    def invalidate(
        self,
        category: "CacheCategory | str",
        key: Any,
        cascade: bool = False,
    ) -> int:
        """
        Remove an entry; with `cascade`, also every entry depending on it.

        Dependents are followed transitively across all categories, even when
        the entry itself is already gone.

        Returns:
            Number of entries removed
        """
        cat = CacheCategory.resolve(category)
        fp = self.fingerprint(key)

        with self._lock:
            removed = 0
            if self._remove(cat, fp):
                removed += 1
                self._stats[cat].invalidations += 1
                logger.debug(f"Cache invalidated: {cat.value}/{fp}")

            if cascade:
                removed += self._invalidate_dependents(fp)

        return removed

    def invalidate_category(self, category: "CacheCategory | str") -> int:
        """Remove every entry of one category."""
        cat = CacheCategory.resolve(category)
        with self._lock:
            store = self._stores[cat]
            count = len(store)
            for entry in list(store.values()):
                self._unlink(cat, entry)
            store.clear()
            self._stats[cat].invalidations += count

        logger.info(f"Cache category cleared: {cat.value} ({count} entries)")
        return count

    def clear_all(self) -> int:
        """Remove every entry of every category."""
        with self._lock:
            total = 0
            for cat, store in self._stores.items():
                total += len(store)
                self._stats[cat].invalidations += len(store)
                store.clear()
            self._dependents.clear()

        logger.info(f"All caches cleared ({total} entries)")
        return total

    def get_or_compute(
        self,
        category: "CacheCategory | str",
        key: Any,
        producer: Callable[[], Any],
        dependencies: Iterable[Any] | None = None,
    ) -> Any:
        """
        Return the cached value, computing and caching it on a miss.

        Concurrent callers for the same key share a single computation: the
        first caller runs `producer`, the others wait for its outcome.
        Failures propagate to every waiting caller and are not cached.
        """
        cat = CacheCategory.resolve(category)
        fp = self.fingerprint(key)
        slot = (cat, fp)

        with self._lock:
            found, value = self._lookup(cat, fp)
            if found:
                return value
            future = self._in_flight.get(slot)
            is_owner = future is None
            if is_owner:
                future = Future()
                self._in_flight[slot] = future

        if not is_owner:
            logger.debug(f"Waiting on in-flight computation: {cat.value}/{fp}")
            return copy.deepcopy(future.result())

        try:
            value = producer()
            self.set(cat, fp, value, dependencies)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            # waiters copy from this snapshot, not from the returned value
            future.set_result(copy.deepcopy(value))
            return value
        finally:
            with self._lock:
                self._in_flight.pop(slot, None)

    # ----------------------------------------------------------------- sweep

    def sweep_expired(self) -> int:
        """Remove all expired entries. Returns the number removed."""
        total = 0
        with self._lock:
            now = self._clock()
            for cat, store in self._stores.items():
                expired = [fp for fp, entry in store.items() if self._is_expired(entry, cat, now)]
                for fp in expired:
                    self._remove(cat, fp)
                self._stats[cat].expirations += len(expired)
                total += len(expired)

        if total > 0:
            logger.info(f"Cleanup: removed {total} expired entries")
        return total

    def start_sweeper(self, interval: float | None = None) -> None:
        """Start the background expiry sweep (no-op if already running)."""
        with self._lock:
            if self._sweeper is not None and self._sweeper.is_alive():
                return
            if interval is not None:
                if interval <= 0:
                    raise ValueError("interval must be positive")
                self._sweep_interval = interval
            self._stop_event.clear()
            self._sweeper = threading.Thread(
                target=self._sweep_loop, name="ctx-cache-sweeper", daemon=True
            )
            self._sweeper.start()

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self._sweep_interval):
            try:
                self.sweep_expired()
            except Exception:
                logger.exception("Background cache sweep failed")

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def close(self) -> None:
        """Stop the background sweeper."""
        self._stop_event.set()
        sweeper = self._sweeper
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join(timeout=5)
        self._sweeper = None

    def __enter__(self) -> "CacheManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ----------------------------------------------------------------- stats

    def entries(self, category: "CacheCategory | str") -> list[dict[str, Any]]:
        """Snapshots of live entries, in insertion order (for debugging)."""
        cat = CacheCategory.resolve(category)
        with self._lock:
            now = self._clock()
            return [
                entry.snapshot(now)
                for entry in self._stores[cat].values()
                if not self._is_expired(entry, cat, now)
            ]

    def get_stats(self, category: "CacheCategory | str | None" = None) -> dict[str, Any]:
        """Get cache statistics as a dictionary."""
        with self._lock:
            if category is not None:
                return self._category_stats(CacheCategory.resolve(category))

            per_category = {cat.value: self._category_stats(cat) for cat in CacheCategory}
            hits = sum(s["hits"] for s in per_category.values())
            misses = sum(s["misses"] for s in per_category.values())
            return {
                "total_size": sum(s["size"] for s in per_category.values()),
                "hits": hits,
                "misses": misses,
                "hit_rate": hits / (hits + misses) if hits + misses > 0 else 0.0,
                "evictions": sum(s["evictions"] for s in per_category.values()),
                "in_flight": len(self._in_flight),
                "sweeper_running": self.sweeper_running,
                "by_category": per_category,
            }

    def reset_stats(self) -> None:
        """Reset cache statistics."""
        with self._lock:
            self._stats = {c: CategoryStats() for c in CacheCategory}

    def _category_stats(self, cat: CacheCategory) -> dict[str, Any]:
        stats = self._stats[cat]
        limits = self._limits[cat]
        return {
            "category": cat.value,
            "size": len(self._stores[cat]),
            "max_size": limits.max_size,
            "ttl_seconds": limits.ttl_seconds,
            "hits": stats.hits,
            "misses": stats.misses,
            "sets": stats.sets,
            "evictions": stats.evictions,
            "invalidations": stats.invalidations,
            "expirations": stats.expirations,
            "hit_rate": stats.hit_rate,
        }

    # --------------------------------------------------------------- helpers
    # All helpers below expect self._lock to be held.

    def _lookup(self, cat: CacheCategory, fp: str) -> tuple[bool, Any]:
        stats = self._stats[cat]
        entry = self._stores[cat].get(fp)

        if entry is None:
            stats.misses += 1
            logger.debug(f"Cache miss: {cat.value}/{fp}")
            return False, None

        now = self._clock()
        if self._is_expired(entry, cat, now):
            self._remove(cat, fp)
            stats.expirations += 1
            stats.misses += 1
            logger.debug(f"Cache expired: {cat.value}/{fp}")
            return False, None

        entry.last_access = now
        entry.access_count += 1
        entry.touch_seq = next(self._touch_counter)
        stats.hits += 1
        logger.debug(f"Cache hit: {cat.value}/{fp}")
        return True, copy.deepcopy(entry.value)

    def _is_expired(self, entry: CacheEntry, cat: CacheCategory, now: float) -> bool:
        return now - entry.created_at > self._limits[cat].ttl_seconds

    def _remove(self, cat: CacheCategory, fp: str) -> bool:
        entry = self._stores[cat].pop(fp, None)
        if entry is None:
            return False
        self._unlink(cat, entry)
        return True

    def _unlink(self, cat: CacheCategory, entry: CacheEntry) -> None:
        """Drop the entry's outgoing dependency edges."""
        for dep in entry.dependencies:
            dependents = self._dependents.get(dep)
            if dependents is None:
                continue
            dependents.discard((cat, entry.key))
            if not dependents:
                del self._dependents[dep]

    def _evict_lru(self, cat: CacheCategory) -> None:
        store = self._stores[cat]
        victim: str | None = None
        victim_rank: tuple[float, int] | None = None

        for fp, entry in store.items():
            rank = (entry.last_access, entry.touch_seq)
            if victim_rank is None or rank < victim_rank:
                victim, victim_rank = fp, rank

        if victim is not None:
            self._remove(cat, victim)
            self._stats[cat].evictions += 1
            logger.debug(f"LRU eviction: {cat.value}/{victim}")

    def _invalidate_dependents(self, root: str) -> int:
        """Breadth-first removal of everything that transitively depends on root."""
        removed = 0
        visited = {root}
        queue = deque([root])

        while queue:
            current = queue.popleft()
            for dep_cat, dep_key in list(self._dependents.get(current, ())):
                if self._remove(dep_cat, dep_key):
                    removed += 1
                    self._stats[dep_cat].invalidations += 1
                    logger.debug(f"Cascade invalidation: {dep_cat.value}/{dep_key}")
                if dep_key not in visited:
                    visited.add(dep_key)
                    queue.append(dep_key)

        return removed
