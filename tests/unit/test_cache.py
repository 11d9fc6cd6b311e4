"""
Unit tests -- Query result cache: keys, TTL, FIFO eviction, stats.
"""
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from erp_copilot.copilot.cache import QueryCache, get_cache, make_cache_key


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


DOMAIN = [["state", "=", "sale"], ["date_order", ">=", "2024-03-01"]]


# ── Keys ────────────────────────────────────────────────

def test_key_normalizes_case_and_whitespace():
    a = make_cache_key("sale.order", "aggregate", DOMAIN, ["partner_id"])
    b = make_cache_key("  Sale.Order ", "AGGREGATE", [["state", "=", "SALE"], ["date_order", ">=", "2024-03-01"]],
                       ["Partner_ID"])
    assert a == b


def test_key_differs_by_component():
    base = make_cache_key("sale.order", "aggregate", DOMAIN, ["partner_id"], limit=10)
    assert base != make_cache_key("sale.order", "count", DOMAIN, ["partner_id"], limit=10)
    assert base != make_cache_key("sale.order", "aggregate", DOMAIN[:1], ["partner_id"], limit=10)
    assert base != make_cache_key("sale.order", "aggregate", DOMAIN, ["user_id"], limit=10)
    assert base != make_cache_key("sale.order", "aggregate", DOMAIN, ["partner_id"], limit=20)
    assert base != make_cache_key("sale.order", "aggregate", DOMAIN, ["partner_id"], limit=10, order_by="name")


def test_key_is_stable_hex():
    key = make_cache_key("sale.order", "search", [])
    assert len(key) == 64
    assert key == make_cache_key("sale.order", "search", [])


# ── Get / put ───────────────────────────────────────────

def test_put_and_get(clock):
    cache = QueryCache(ttl=60, clock=clock)
    cache.put("k1", {"result": "data"})
    assert cache.get("k1") == {"result": "data"}


def test_cache_miss(clock):
    cache = QueryCache(ttl=60, clock=clock)
    assert cache.get("unknown") is None


def test_cache_expiry(clock):
    cache = QueryCache(ttl=300, clock=clock)
    cache.put("k1", "value")
    clock.advance(299)
    assert cache.get("k1") == "value"
    clock.advance(2)
    assert cache.get("k1") is None
    assert len(cache) == 0


def test_put_overwrites_and_refreshes(clock):
    cache = QueryCache(ttl=10, clock=clock)
    cache.put("k1", "old")
    clock.advance(8)
    cache.put("k1", "new")
    clock.advance(8)
    assert cache.get("k1") == "new"


def test_invalidate_specific(clock):
    cache = QueryCache(ttl=60, clock=clock)
    cache.put("q1", "v1")
    cache.put("q2", "v2")
    assert cache.invalidate("q1") == 1
    assert cache.invalidate("q1") == 0
    assert cache.get("q1") is None
    assert cache.get("q2") == "v2"


def test_invalidate_all(clock):
    cache = QueryCache(ttl=60, clock=clock)
    cache.put("q1", "v1")
    cache.put("q2", "v2")
    assert cache.invalidate() == 2
    assert len(cache) == 0


# ── Eviction ────────────────────────────────────────────

def test_fifo_eviction(clock):
    cache = QueryCache(ttl=60, max_size=2, clock=clock)
    cache.put("q1", "v1")
    cache.put("q2", "v2")
    cache.get("q1")  # reads do not protect an entry
    cache.put("q3", "v3")
    assert cache.get("q1") is None
    assert cache.get("q2") == "v2"
    assert cache.get("q3") == "v3"


def test_overwrite_counts_as_fresh_insertion(clock):
    cache = QueryCache(ttl=60, max_size=2, clock=clock)
    cache.put("q1", "v1")
    cache.put("q2", "v2")
    cache.put("q1", "v1b")
    cache.put("q3", "v3")  # q2 is now the oldest
    assert cache.get("q2") is None
    assert cache.get("q1") == "v1b"


def test_max_size_must_be_positive():
    with pytest.raises(ValueError):
        QueryCache(max_size=0)


def test_cleanup_expired(clock):
    cache = QueryCache(ttl=10, clock=clock)
    cache.put("q1", "v1")
    clock.advance(5)
    cache.put("q2", "v2")
    clock.advance(6)
    assert cache.cleanup_expired() == 1
    assert cache.get("q2") == "v2"


# ── Stats ───────────────────────────────────────────────

def test_stats(clock):
    cache = QueryCache(ttl=60, max_size=7, clock=clock)
    cache.put("q1", "v1")
    cache.get("q1")  # hit
    cache.get("q2")  # miss
    stats = cache.stats()
    assert stats["size"] == 1
    assert stats["max_size"] == 7
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 0.5


def test_get_cache_singleton():
    assert get_cache() is get_cache()


# ── Concurrency ─────────────────────────────────────────

def test_concurrent_get_put_keeps_stats_and_bound_consistent():
    cache = QueryCache(ttl=60, max_size=10)
    workers, rounds = 8, 400

    def hammer(worker: int) -> list[tuple[str, object]]:
        seen = []
        for i in range(rounds):
            key = f"k{(worker * 7 + i) % 30}"
            value = cache.get(key)
            if value is None:
                cache.put(key, key.upper())
            else:
                seen.append((key, value))
        return seen

    with ThreadPoolExecutor(max_workers=workers) as pool:
        observed = [pair for batch in pool.map(hammer, range(workers)) for pair in batch]

    stats = cache.stats()
    assert stats["hits"] + stats["misses"] == workers * rounds
    assert stats["hits"] == len(observed)
    assert stats["size"] <= 10
    assert len(cache) == stats["size"]
    assert all(value == key.upper() for key, value in observed)


def test_concurrent_distinct_puts_all_land_when_under_bound():
    cache = QueryCache(ttl=60, max_size=200)
    barrier = threading.Barrier(4)

    def fill(worker: int) -> None:
        barrier.wait()
        for i in range(50):
            cache.put(f"w{worker}-{i}", i)

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(fill, range(4)))

    assert len(cache) == 200
    assert cache.get("w3-49") == 49
