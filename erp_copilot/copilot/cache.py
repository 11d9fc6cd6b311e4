"""
Query result caching layer.

In-memory TTL cache for sub-query results.  Keys are derived from the
normalized ``(entity, operation, domain, groupBy, limit, orderBy)`` tuple so
near-duplicate phrasing of the same query lands on the same entry.

Eviction is FIFO: when full, the oldest insertion goes first.  Entries are
never mutated once stored; ``put`` on an existing key replaces the entry
wholesale and counts as a fresh insertion.

One instance per deployment, passed to the executor.  ``get_cache()`` holds
the default instance used by the API process.
"""
from __future__ import annotations

import hashlib
import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from erp_copilot.core.config import get_settings
from erp_copilot.core.logging import get_logger

logger = get_logger(__name__)


# ── Cache entry ─────────────────────────────────────────


@dataclass(frozen=True)
class CacheEntry:
    """A single cached result."""
    key: str
    value: Any
    created_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return (now - self.created_at) > self.ttl


# ── Key normalization ───────────────────────────────────


def _norm(value: Any) -> Any:
    if isinstance(value, str):
        return " ".join(value.lower().split())
    if isinstance(value, (list, tuple)):
        return [_norm(v) for v in value]
    return value


def make_cache_key(
    entity: str,
    operation: str,
    domain: Sequence[Any],
    group_by: Sequence[str] = (),
    limit: int | None = None,
    order_by: str | None = None,
) -> str:
    """Deterministic cache key; text components are lower-cased and whitespace-collapsed."""
    raw = json.dumps(
        [_norm(entity), _norm(operation), _norm(list(domain)), _norm(list(group_by)), limit, _norm(order_by)],
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(raw.encode()).hexdigest()


# ── Cache implementation ────────────────────────────────


class QueryCache:
    """Thread-safe in-memory TTL cache with FIFO eviction.

    Parameters
    ----------
    ttl : float
        Time-to-live in seconds for each entry.
    max_size : int
        Maximum number of entries.
    clock : callable
        Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        ttl: float = 300.0,
        max_size: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._store: dict[str, CacheEntry] = {}   # insertion-ordered
        self._lock = threading.Lock()
        self._ttl = ttl
        self._max_size = max_size
        self._clock = clock
        self._hits = 0
        self._misses = 0

    # ── Public API ──────────────────────────────────────

    def get(self, key: str) -> Any | None:
        """Retrieve a cached value, or ``None`` on miss / expiry."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(self._clock()):
                del self._store[key]
                self._misses += 1
                logger.debug("Cache EXPIRED key=%s", key[:16])
                return None
            self._hits += 1
        logger.debug("Cache HIT key=%s", key[:16])
        return entry.value

    def put(self, key: str, value: Any) -> None:
        """Store a value, replacing any previous entry under the same key."""
        with self._lock:
            if key in self._store:
                del self._store[key]
            elif len(self._store) >= self._max_size:
                self._evict_oldest()
            self._store[key] = CacheEntry(key=key, value=value, created_at=self._clock(), ttl=self._ttl)
            size = len(self._store)
        logger.debug("Cache PUT key=%s size=%d", key[:16], size)

    def invalidate(self, key: str | None = None) -> int:
        """Remove one entry or flush all. Returns number of entries removed."""
        with self._lock:
            if key is None:
                count = len(self._store)
                self._store.clear()
                return count
            return 1 if self._store.pop(key, None) is not None else 0

    def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, v in self._store.items() if v.is_expired(now)]
            for k in expired:
                del self._store[k]
            return len(expired)

    def stats(self) -> dict[str, Any]:
        """Return cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._store),
                "max_size": self._max_size,
                "ttl_seconds": self._ttl,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total, 3) if total else 0.0,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    # ── Internals ───────────────────────────────────────

    def _evict_oldest(self) -> None:
        oldest = next(iter(self._store), None)
        if oldest is not None:
            del self._store[oldest]
            logger.debug("Cache EVICT key=%s", oldest[:16])


# ── Module-level default ────────────────────────────────

_cache: QueryCache | None = None
_cache_lock = threading.Lock()


def get_cache() -> QueryCache:
    """Return the process-wide cache instance (API process only)."""
    global _cache
    with _cache_lock:
        if _cache is None:
            settings = get_settings()
            _cache = QueryCache(ttl=settings.cache_ttl_seconds, max_size=settings.cache_max_size)
        return _cache
