"""
Tests for the bounded insight cache: TTL expiry, LRU eviction and sweeping.
"""
import threading

import pytest

from insights.cache import TTLCache


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def test_get_returns_value_before_expiry(clock):
    cache = TTLCache(capacity=4, default_ttl=10, clock=clock)
    cache.set("a", 1)
    clock.advance(9.9)
    assert cache.get("a") == 1


def test_get_evicts_expired_entry(clock):
    cache = TTLCache(capacity=4, default_ttl=10, clock=clock)
    cache.set("a", 1)
    clock.advance(10)
    assert cache.get("a") is None
    assert len(cache) == 0


def test_per_entry_ttl_overrides_default(clock):
    cache = TTLCache(capacity=4, default_ttl=10, clock=clock)
    cache.set("short", 1, ttl=1)
    cache.set("long", 2, ttl=100)
    clock.advance(50)
    assert "short" not in cache
    assert cache.get("long") == 2


def test_set_evicts_least_recently_used(clock):
    cache = TTLCache(capacity=2, default_ttl=60, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")          # "b" is now least recently used
    cache.set("c", 3)
    assert len(cache) == 2
    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3


def test_sweep_removes_only_expired_entries(clock):
    cache = TTLCache(capacity=10, default_ttl=10, clock=clock)
    cache.set("old1", 1)
    cache.set("old2", 2)
    clock.advance(5)
    cache.set("fresh", 3)
    clock.advance(6)

    assert cache.sweep() == 2
    assert len(cache) == 1
    assert cache.get("fresh") == 3
    assert cache.sweep() == 0


def test_get_default_for_missing_key(clock):
    cache = TTLCache(clock=clock)
    assert cache.get("missing", "fallback") == "fallback"


def test_falsy_values_are_cached(clock):
    cache = TTLCache(clock=clock)
    cache.set("empty", [])
    assert "empty" in cache
    assert cache.get("empty", "fallback") == []


def test_clear(clock):
    cache = TTLCache(clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.clear()
    assert len(cache) == 0


@pytest.mark.parametrize("capacity, ttl", [(0, 10), (5, 0), (5, -1)])
def test_invalid_bounds_rejected(capacity, ttl):
    with pytest.raises(ValueError):
        TTLCache(capacity=capacity, default_ttl=ttl)


def test_concurrent_access_stays_within_capacity():
    cache = TTLCache(capacity=8, default_ttl=0.01)
    errors = []
    start = threading.Barrier(6)

    def writer(worker):
        start.wait()
        try:
            for i in range(500):
                cache.set((worker, i % 20), i, ttl=0.001 if i % 3 == 0 else None)
                assert len(cache) <= 8
        except Exception as e:
            errors.append(e)

    def reader(worker):
        start.wait()
        try:
            for i in range(500):
                if (worker % 4, i % 20) in cache:
                    cache.get((worker % 4, i % 20))
                if i % 50 == 0:
                    cache.sweep()
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    threads += [threading.Thread(target=reader, args=(n,)) for n in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert not any(thread.is_alive() for thread in threads)
    assert errors == []
    assert len(cache) <= 8
