"""
Embedding providers and the EmbeddingService.

The service prefers a model-backed provider (sentence-transformers) and
degrades to a deterministic hash-feature generator when the model keeps
failing. The MODEL -> FALLBACK switch is one-directional for the life of the
service; force_reinitialize() is the explicit way back.
"""

import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from enum import Enum
from typing import Dict, List, Optional

import numpy as np
from sentence_transformers import SentenceTransformer

from ..core.config import (
    EMBED_BACKOFF_BASE_SEC,
    EMBED_BATCH_SIZE,
    EMBED_DIM,
    EMBED_MAX_RETRIES,
    EMBED_TIMEOUT_SEC,
    get_cache_settings,
)
from ..core.errors import EmbeddingModelUnavailable
from ..core.timeouts import DeadlineExceeded, run_with_timeout
from ..util.logging import logger as default_logger
from .cache import EmbeddingCache
from .similarity import cosine_similarity


class IEmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    @abstractmethod
    def embed_text(self, text: str) -> list[float]:
        """Generate embedding vector for given text."""
        pass

    @abstractmethod
    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        pass


def simple_hash(value: str) -> int:
    """Non-negative 31-multiplier string hash over 32-bit signed arithmetic."""
    h = 0
    for ch in value:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


class DeterministicHashEmbedding(IEmbeddingProvider):
    """Deterministic fallback embedding built from character and word hash features.

    Each character bumps the slot at ``ord(char) % dimension`` with a
    position-damped update, each whitespace-separated word adds 0.1 at its
    hash slot, and the result is scaled to unit length. Identical text always
    yields a bit-identical vector; empty or whitespace-only text yields the
    zero vector.
    """

    def __init__(self, dimension: int = 384):
        if dimension < 1:
            raise ValueError("dimension must be >= 1")
        self.dimension = dimension

    def embed_text(self, text: str) -> list[float]:
        """Generate deterministic embedding vector from hash features."""
        normalized = (text or "").lower().strip()
        embedding = [0.0] * self.dimension

        for i, ch in enumerate(normalized):
            position = ord(ch) % self.dimension
            embedding[position] = (embedding[position] + 1.0) / (i + 1)

        for word in normalized.split():
            embedding[simple_hash(word) % self.dimension] += 0.1

        magnitude = sum(v * v for v in embedding) ** 0.5
        if magnitude == 0:
            return embedding
        return [v / magnitude for v in embedding]

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        return self.dimension


class SentenceTransformerEmbedding(IEmbeddingProvider):
    """Sentence transformers embedding provider using pre-trained models.

    The primary model is loaded lazily on first use; if it cannot be loaded
    each backup model is tried in order.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", backup_models: Optional[List[str]] = None):
        self.model_name = model_name
        self.backup_models = list(backup_models or [])
        self.loaded_model_name = None
        self._model = None
        self._dimension = None
        self._load_lock = threading.Lock()

    @property
    def model(self):
        if self._model is None:
            with self._load_lock:
                if self._model is None:
                    self._model = self._load()
        return self._model

    def _load(self):
        errors = []
        for name in [self.model_name] + self.backup_models:
            try:
                model = SentenceTransformer(name)
            except Exception as e:
                errors.append(f"{name}: {e}")
                default_logger.log_embedding_event("model_load", "failed", {"model": name, "error": str(e)})
                continue
            self.loaded_model_name = name
            default_logger.log_embedding_event("model_load", "success", {"model": name})
            return model
        raise EmbeddingModelUnavailable("All model loading attempts failed: " + "; ".join(errors))

    def embed_text(self, text: str) -> list[float]:
        """Generate embedding vector using sentence transformers."""
        embedding = self.model.encode(text, convert_to_tensor=False, normalize_embeddings=True)
        return embedding.tolist()

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        if self._dimension is None:
            # Get dimension by encoding a dummy string
            dummy_embedding = self.model.encode("test", convert_to_tensor=False)
            self._dimension = len(dummy_embedding)
        return self._dimension

    def reset(self):
        """Drop the loaded model so the next call reloads it."""
        with self._load_lock:
            self._model = None
            self._dimension = None
            self.loaded_model_name = None


class EmbeddingMode(Enum):
    MODEL = "model"
    FALLBACK = "fallback"


class EmbeddingService:
    """
    Text -> vector service with a model path, a deterministic fallback path
    and a shared LRU+LFU cache in front of both.
    """

    def __init__(self, provider: Optional[IEmbeddingProvider] = None,
                 fallback: Optional[IEmbeddingProvider] = None,
                 cache: Optional[EmbeddingCache] = None,
                 dimension: int = EMBED_DIM,
                 max_retries: int = EMBED_MAX_RETRIES,
                 backoff_base: float = EMBED_BACKOFF_BASE_SEC,
                 default_timeout: Optional[float] = EMBED_TIMEOUT_SEC,
                 batch_size: int = EMBED_BATCH_SIZE,
                 sleep=time.sleep,
                 logger=None):
        """
        Initialize the embedding service.

        Args:
            provider: Model-backed provider; defaults to the configured provider
            fallback: Degraded-mode provider; defaults to DeterministicHashEmbedding
            cache: Shared embedding cache; if omitted one is built from EMBED_CACHE_MAX_SIZE and EMBED_CACHE_TTL_SEC
            dimension: Vector length every returned embedding must have
            max_retries: Consecutive model failures before the permanent fallback switch
            backoff_base: First retry delay in seconds, doubled per attempt
            default_timeout: Per-call deadline when embed() gets none; None runs inline
            batch_size: Default embed_batch() batch size and worker pool size
            sleep: Injected sleep used for backoff
            logger: StructuredLogger to report through
        """
        if provider is None:
            from ..core.config import get_embedding_provider
            provider = get_embedding_provider(dimension)

        self.provider = provider
        self.fallback = fallback or DeterministicHashEmbedding(dimension)
        self.cache = cache if cache is not None else EmbeddingCache(**get_cache_settings())
        self.dimension = dimension
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self.default_timeout = default_timeout
        self.batch_size = max(1, batch_size)
        self.logger = logger or default_logger
        self._sleep = sleep

        if self.fallback.get_dimension() != dimension:
            raise ValueError(
                f"Fallback dimension {self.fallback.get_dimension()} does not match service dimension {dimension}"
            )

        self._mode = EmbeddingMode.MODEL
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._pool_size = max(self.batch_size, 2)
        self._executor = ThreadPoolExecutor(max_workers=self._pool_size, thread_name_prefix="ragguard-embed")
        self._closed = False
        self._stats = {
            "requests": 0,
            "cache_hits": 0,
            "model_successes": 0,
            "model_failures": 0,
            "fallback_embeddings": 0,
            "timeouts": 0,
        }

    @property
    def mode(self) -> EmbeddingMode:
        return self._mode

    def is_using_fallback(self) -> bool:
        return self._mode is EmbeddingMode.FALLBACK

    def embed(self, text: str, timeout: Optional[float] = None) -> np.ndarray:
        """
        Embed one text.

        Cache hits return immediately. In MODEL mode the model is tried up to
        max_retries times with exponential backoff; exhausting the retries
        switches the service to FALLBACK permanently. The timeout is one
        deadline for the whole call, retries and backoff included. A deadline
        miss degrades only this call: the model job keeps running and fills
        the cache when it completes.
        """
        text = text or ""
        self._bump("requests")

        cached = self.cache.get(text)
        if cached is not None:
            self._bump("cache_hits")
            return cached

        if self.is_using_fallback():
            return self._fallback_embed(text, cache=True)

        effective_timeout = timeout if timeout is not None else self.default_timeout
        deadline = None if effective_timeout is None else time.monotonic() + effective_timeout
        attempt = 0
        while not self.is_using_fallback():
            remaining = self._remaining(deadline)
            if remaining is not None and remaining <= 0:
                return self._deadline_spent(text, effective_timeout, attempt)
            try:
                vector = run_with_timeout(self._executor, self._model_embed, remaining,
                                          text, label="embed")
            except DeadlineExceeded:
                return self._deadline_spent(text, effective_timeout, attempt)
            except Exception as e:
                if self._record_failure(e):
                    break
                delay = self.backoff_base * (2 ** attempt)
                attempt += 1
                self.logger.log_embedding_event(
                    "embed_retry", "degraded", {"attempt": attempt, "delay": delay, "error": str(e)}
                )
                remaining = self._remaining(deadline)
                if remaining is not None and remaining <= delay:
                    # No room left for another attempt after the backoff.
                    return self._deadline_spent(text, effective_timeout, attempt)
                if delay > 0:
                    self._sleep(delay)
                continue

            self._record_success()
            return vector

        return self._fallback_embed(text, cache=True)

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return deadline - time.monotonic()

    def _deadline_spent(self, text: str, timeout: float, attempts: int) -> np.ndarray:
        self._bump("timeouts")
        self.logger.log_embedding_event("embed", "timeout", {"timeout": timeout, "attempts": attempts})
        return self._fallback_embed(text, cache=False)

    def embed_batch(self, texts: List[str], batch_size: Optional[int] = None,
                    per_item_timeout: Optional[float] = None) -> List[np.ndarray]:
        """
        Embed texts in bounded batches.

        Items of a batch are dispatched together and per_item_timeout runs from
        dispatch. A batch wider than the shared worker pool gets a pool of its
        own so that no item waits in a queue. An item that misses its
        deadline or fails gets a fallback vector without failing the batch;
        its model job keeps running and fills the cache when it completes.
        Output order matches input order.
        """
        batch_size = max(1, batch_size or self.batch_size)
        timeout = per_item_timeout if per_item_timeout is not None else self.default_timeout
        results: List[Optional[np.ndarray]] = [None] * len(texts)

        width = min(batch_size, len(texts))
        executor = self._executor
        if width > self._pool_size:
            executor = ThreadPoolExecutor(max_workers=width, thread_name_prefix="ragguard-embed-batch")

        try:
            for start in range(0, len(texts), batch_size):
                batch = [(i, texts[i] or "") for i in range(start, min(start + batch_size, len(texts)))]
                self._embed_one_batch(executor, batch, timeout, results)
                self.logger.log_embedding_event(
                    "embed_batch", "success",
                    {"batch": start // batch_size + 1, "items": len(batch), "mode": self._mode.value}
                )
        finally:
            if executor is not self._executor:
                executor.shutdown(wait=False)

        return results

    def _embed_one_batch(self, executor: ThreadPoolExecutor, batch, timeout: Optional[float],
                         results: List[Optional[np.ndarray]]):
        pending = {}
        for index, text in batch:
            self._bump("requests")
            cached = self.cache.get(text)
            if cached is not None:
                self._bump("cache_hits")
                results[index] = cached
            elif self.is_using_fallback():
                results[index] = self._fallback_embed(text, cache=True)
            else:
                pending[index] = (text, executor.submit(self._model_embed, text))

        started = time.monotonic()
        for index, (text, future) in pending.items():
            remaining = None
            if timeout is not None:
                remaining = max(0.0, timeout - (time.monotonic() - started))
            try:
                results[index] = future.result(timeout=remaining)
                self._record_success()
            except FutureTimeoutError:
                self._bump("timeouts")
                self.logger.log_embedding_event("embed_batch_item", "timeout", {"index": index})
                results[index] = self._fallback_embed(text, cache=False)
            except Exception as e:
                self._record_failure(e)
                results[index] = self._fallback_embed(text, cache=False)

    def force_reinitialize(self) -> bool:
        """
        Reset to MODEL mode and try the provider once.

        Clears the cache so fallback vectors do not shadow model vectors.
        Returns True if the model answered, False if the service fell back again.
        """
        self.logger.log_embedding_event("force_reinitialize", "started")
        with self._lock:
            self._mode = EmbeddingMode.MODEL
            self._consecutive_failures = 0
        self.cache.clear()

        reset = getattr(self.provider, "reset", None)
        if callable(reset):
            reset()

        try:
            run_with_timeout(self._executor, self._check_model, self.default_timeout, label="reinitialize")
        except Exception as e:
            with self._lock:
                self._mode = EmbeddingMode.FALLBACK
            self.logger.log_embedding_event("force_reinitialize", "fallback", {"error": str(e)})
            return False

        self.logger.log_embedding_event("force_reinitialize", "success")
        return True

    def find_most_similar(self, query: str, candidates: List[str], limit: int = 3) -> List[Dict[str, object]]:
        """Rank candidate texts by cosine similarity to the query."""
        query_vector = self.embed(query)
        vectors = self.embed_batch(candidates)
        scored = [
            {"text": text, "score": cosine_similarity(query_vector, vector)}
            for text, vector in zip(candidates, vectors)
        ]
        scored.sort(key=lambda item: item["score"], reverse=True)
        return scored[:limit]

    def get_stats(self) -> Dict[str, object]:
        with self._lock:
            stats = dict(self._stats)
            mode = self._mode.value
        model_attempts = stats["model_successes"] + stats["model_failures"]
        stats["mode"] = mode
        stats["success_rate"] = stats["model_successes"] / model_attempts if model_attempts else 0.0
        stats["dimension"] = self.dimension
        stats["cache"] = self.cache.get_stats()
        return stats

    def health_check(self) -> bool:
        """True when the service can produce a vector of the right length."""
        try:
            vector = np.asarray(self.fallback.embed_text("health check"), dtype=np.float32)
            return not self._closed and vector.shape[0] == self.dimension
        except Exception as e:
            self.logger.log_embedding_event("health_check", "failed", {"error": str(e)})
            return False

    def close(self):
        """Shut the worker pool down without waiting for in-flight model calls."""
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _model_embed(self, text: str) -> np.ndarray:
        vector = np.asarray(self.provider.embed_text(text), dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.dimension:
            raise EmbeddingModelUnavailable(
                f"Model returned {vector.shape[0]} dimensions, expected {self.dimension}"
            )
        if not np.all(np.isfinite(vector)):
            raise EmbeddingModelUnavailable("Model returned non-finite values")
        # A late result still warms the cache, unless the service has since fallen back.
        if not self.is_using_fallback():
            self.cache.set(text, vector)
        return vector.copy()

    def _check_model(self):
        vector = np.asarray(self.provider.embed_text("Test embedding"), dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.dimension:
            raise EmbeddingModelUnavailable(
                f"Model returned {vector.shape[0]} dimensions, expected {self.dimension}"
            )
        return vector

    def _fallback_embed(self, text: str, cache: bool) -> np.ndarray:
        vector = np.asarray(self.fallback.embed_text(text), dtype=np.float32).reshape(-1)
        self._bump("fallback_embeddings")
        if cache:
            self.cache.set(text, vector)
        return vector

    def _record_success(self):
        with self._lock:
            self._stats["model_successes"] += 1
            self._consecutive_failures = 0

    def _record_failure(self, error: Exception) -> bool:
        """Count a model failure; returns True if it triggered the fallback switch."""
        with self._lock:
            self._stats["model_failures"] += 1
            self._consecutive_failures += 1
            switched = (self._mode is EmbeddingMode.MODEL
                        and self._consecutive_failures >= self.max_retries)
            if switched:
                self._mode = EmbeddingMode.FALLBACK

        if switched:
            self.logger.log_embedding_event(
                "mode_switch", "fallback",
                {"from": "model", "to": "fallback", "failures": self.max_retries, "error": str(error)}
            )
        return switched

    def _bump(self, key: str):
        with self._lock:
            self._stats[key] += 1
