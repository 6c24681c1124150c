"""
Tests for the LRU+LFU embedding cache.
"""

import numpy as np
import pytest

from ragguard.vector.cache import EmbeddingCache, EmbeddingCacheEntry, cache_key


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


def test_miss_then_hit(clock):
    cache = EmbeddingCache(max_size=10, clock=clock)

    assert cache.get("hello") is None
    cache.set("hello", [1.0, 2.0])
    assert cache.get("hello").tolist() == [1.0, 2.0]

    stats = cache.get_stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == pytest.approx(0.5)


def test_returned_vector_is_a_copy(clock):
    cache = EmbeddingCache(max_size=10, clock=clock)
    cache.set("hello", np.array([1.0, 2.0]))

    cache.get("hello")[0] = 99.0

    assert cache.get("hello")[0] == 1.0


def test_entries_expire_after_ttl(clock):
    cache = EmbeddingCache(max_size=10, ttl_seconds=60, clock=clock)
    cache.set("hello", [1.0])

    clock.now += 61

    assert cache.get("hello") is None
    assert cache.has("hello") is False
    assert len(cache) == 0


def test_full_cache_evicts_lowest_score(clock):
    """Frequently used entries survive; the coldest one goes."""
    cache = EmbeddingCache(max_size=5, clock=clock)
    for text in ["a", "b", "c", "d", "e"]:
        cache.set(text, [1.0])
    for _ in range(5):
        cache.get("a")

    cache.set("f", [1.0])

    assert len(cache) == 5
    assert cache.has("a")
    assert not cache.has("b")
    assert cache.has("f")
    assert cache.get_stats()["evictions"] == 1


def test_most_recent_entry_is_never_evicted(clock):
    """The most recently touched entry survives even with the lowest score."""
    cache = EmbeddingCache(max_size=3, clock=clock)
    for text in ["a", "b", "c"]:
        cache.set(text, [1.0])
    for _ in range(3):
        cache.get("b")
        cache.get("c")
    cache.set("a", [2.0])  # refresh: "a" is now most recent with one hit

    cache.set("d", [1.0])

    assert cache.has("a")
    assert not cache.has("b")
    assert cache.has("c")
    assert cache.has("d")


def test_single_slot_cache(clock):
    cache = EmbeddingCache(max_size=1, clock=clock)
    cache.set("a", [1.0])
    cache.set("b", [2.0])

    assert len(cache) == 1
    assert cache.has("b")


def test_score_formula(clock):
    cache = EmbeddingCache(max_size=10, ttl_seconds=100, clock=clock)

    hot = EmbeddingCacheEntry(vector=np.zeros(1), timestamp=0, hit_count=100, last_accessed=0)
    assert cache.score(hot, now=0) == pytest.approx(1.0)

    cold = EmbeddingCacheEntry(vector=np.zeros(1), timestamp=0, hit_count=1, last_accessed=0)
    assert cache.score(cold, now=50) == pytest.approx(0.15)


def test_cache_key_is_sha256():
    assert cache_key("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


def test_clear_resets_stats(clock):
    cache = EmbeddingCache(max_size=10, clock=clock)
    cache.set("a", [1.0])
    cache.get("a")

    cache.clear()

    assert len(cache) == 0
    assert cache.get_stats()["hits"] == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
