"""
Embedding cache with combined LRU+LFU eviction and TTL expiry.

Entries are keyed by the SHA-256 of the exact input text. When the cache is
full, expired entries are dropped first and then the lowest-scoring entries
until the cache is back to 80% of capacity, where

    score = 0.3 * recency + 0.7 * frequency
    recency = max(0, 1 - (now - last_accessed) / ttl)
    frequency = min(1, log(hits) / log(100))

The most recently accessed entry is never evicted.
"""

import hashlib
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import numpy as np


PRUNE_TARGET_RATIO = 0.8
RECENCY_WEIGHT = 0.3
FREQUENCY_WEIGHT = 0.7


@dataclass
class EmbeddingCacheEntry:
    """A cached vector with its access bookkeeping."""

    vector: np.ndarray
    timestamp: float
    hit_count: int = 1
    last_accessed: float = 0.0


def cache_key(text: str) -> str:
    """SHA-256 hex digest of the exact text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class EmbeddingCache:
    """Thread-safe bounded cache of text embeddings."""

    def __init__(self, max_size: int = 1000, ttl_seconds: float = 7 * 24 * 60 * 60,
                 clock: Optional[Callable[[], float]] = None):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time
        self._entries: Dict[str, EmbeddingCacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._most_recent_key: Optional[str] = None

    def get(self, text: str) -> Optional[np.ndarray]:
        """Return a copy of the cached vector for text, or None on miss or expiry."""
        key = cache_key(text)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            now = self._clock()
            if self._is_expired(entry, now):
                del self._entries[key]
                self._misses += 1
                return None

            entry.hit_count += 1
            entry.last_accessed = now
            self._most_recent_key = key
            self._hits += 1
            return entry.vector.copy()

    def set(self, text: str, vector) -> None:
        """Cache a vector for text, pruning first if the cache is full."""
        key = cache_key(text)
        now = self._clock()
        stored = np.array(vector, dtype=np.float32).reshape(-1)

        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                existing.vector = stored
                existing.timestamp = now
                existing.last_accessed = now
                self._most_recent_key = key
                return

            if len(self._entries) >= self.max_size:
                self._prune(now)

            self._entries[key] = EmbeddingCacheEntry(
                vector=stored, timestamp=now, hit_count=1, last_accessed=now
            )
            self._most_recent_key = key

    def has(self, text: str) -> bool:
        key = cache_key(text)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if self._is_expired(entry, self._clock()):
                del self._entries[key]
                return False
            return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0
            self._most_recent_key = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def score(self, entry: EmbeddingCacheEntry, now: float) -> float:
        """Eviction score of an entry; lower is evicted first."""
        if self.ttl_seconds > 0:
            recency = max(0.0, 1.0 - (now - entry.last_accessed) / self.ttl_seconds)
        else:
            recency = 0.0
        frequency = min(1.0, math.log(max(entry.hit_count, 1)) / math.log(100))
        return RECENCY_WEIGHT * recency + FREQUENCY_WEIGHT * frequency

    def get_stats(self) -> Dict[str, float]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": self._hits / total if total > 0 else 0.0,
            }

    def _is_expired(self, entry: EmbeddingCacheEntry, now: float) -> bool:
        return self.ttl_seconds > 0 and now - entry.timestamp > self.ttl_seconds

    def _prune(self, now: float) -> None:
        # Caller holds the lock.
        expired = [k for k, e in self._entries.items() if self._is_expired(e, now)]
        for key in expired:
            del self._entries[key]
            self._evictions += 1

        target = int(self.max_size * PRUNE_TARGET_RATIO)
        # Always leave room for the incoming entry.
        target = min(target, self.max_size - 1)
        if len(self._entries) <= target:
            return

        # With a single slot the incoming entry becomes the most recent one.
        protected = self._most_recent_key if self.max_size > 1 else None
        # sorted() is stable, so equal scores evict in insertion order.
        scored = sorted(
            ((self.score(e, now), k) for k, e in self._entries.items() if k != protected),
            key=lambda item: item[0],
        )
        to_remove = len(self._entries) - target
        for _, key in scored[:to_remove]:
            del self._entries[key]
            self._evictions += 1
