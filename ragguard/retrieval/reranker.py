"""
Multi-signal reranker.

Each candidate gets five feature scores in [0, 1]:

    semantic    cosine(query, record vector), floored at 0
    lexical     weighted query-term overlap; longer terms weigh more
    recency     1 / (1 + (age_hours / 24) ** 1.5), 0.5 without a timestamp
    importance  metadata["importance"], default 0.5
    contextual  linearly decayed similarity to the session's recent queries

final = (ws*semantic + wl*lexical + wr*recency + wi*importance) * boost,
where boost is context_boost when contextual > 0.6 and 1.0 otherwise.
Results under score_threshold are dropped and the rest cut to top_k.
If scoring fails or misses its deadline, the original candidates are
returned sorted by importance instead.
"""

import re
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Deque, Dict, List, Optional

from ..core.config import (
    RERANK_CONTEXT_BOOST,
    RERANK_IMPORTANCE_WEIGHT,
    RERANK_LEXICAL_WEIGHT,
    RERANK_RECENCY_WEIGHT,
    RERANK_SCORE_THRESHOLD,
    RERANK_SEMANTIC_WEIGHT,
    RERANK_TIMEOUT_SEC,
    RERANK_TOP_K,
)
from ..core.errors import RerankFailure
from ..core.timeouts import DeadlineExceeded, run_with_timeout
from ..util.logging import logger as default_logger
from ..vector.similarity import cosine_similarity
from ..vector.types import FeatureScores, RankedResult, RetrievalCandidate

MAX_RECENT_QUERIES = 5
CONTEXT_BOOST_THRESHOLD = 0.6
RECENCY_HALF_LIFE_HOURS = 24.0
DEFAULT_SESSION = "_default"

LEXICAL_STOP_WORDS = frozenset([
    "the", "and", "or", "but", "in", "on", "at", "to", "for", "with", "by", "is", "are", "was", "were",
])

_TOKEN_SPLIT = re.compile(r"\W+")


@dataclass
class RerankerConfig:
    """Weights and limits for one rerank pass."""

    top_k: int = RERANK_TOP_K
    semantic_weight: float = RERANK_SEMANTIC_WEIGHT
    lexical_weight: float = RERANK_LEXICAL_WEIGHT
    recency_weight: float = RERANK_RECENCY_WEIGHT
    importance_weight: float = RERANK_IMPORTANCE_WEIGHT
    score_threshold: float = RERANK_SCORE_THRESHOLD
    context_boost: float = RERANK_CONTEXT_BOOST
    use_context: bool = True


FIRST_STAGE_CONFIG = RerankerConfig(
    top_k=20, semantic_weight=0.8, lexical_weight=0.2, recency_weight=0.0,
    importance_weight=0.0, use_context=False,
)
SECOND_STAGE_CONFIG = RerankerConfig(
    top_k=5, semantic_weight=0.5, lexical_weight=0.2, recency_weight=0.1,
    importance_weight=0.2, context_boost=1.5, use_context=True,
)


@dataclass
class RerankOutcome:
    """Reranker output plus how it was produced."""

    results: List[RankedResult]
    used_fallback: bool = False
    error: Optional[str] = None


def lexical_score(query: str, content: str) -> float:
    """Weighted fraction of query terms (longer than 2 chars) present in content."""
    query_terms = {t for t in _TOKEN_SPLIT.split((query or "").lower()) if len(t) > 2}
    if not query_terms:
        return 0.0

    weights = {}
    for term in query_terms:
        weight = 0.5 + len(term) / 20
        if len(term) >= 8:
            weight *= 1.5
        weights[term] = weight

    matched = 0.0
    for term in _TOKEN_SPLIT.split((content or "").lower()):
        if len(term) > 2 and term not in LEXICAL_STOP_WORDS and term in weights:
            matched += weights[term]

    return min(1.0, matched / sum(weights.values()))


def recency_score(timestamp_ms: Optional[int], now_ms: Optional[float] = None) -> float:
    """Smooth decay that is ~0.5 at one day old; 0.5 when there is no timestamp."""
    if not timestamp_ms:
        return 0.5
    if now_ms is None:
        now_ms = time.time() * 1000
    age_hours = max(0.0, (now_ms - timestamp_ms) / (1000 * 60 * 60))
    return 1.0 / (1.0 + (age_hours / RECENCY_HALF_LIFE_HOURS) ** 1.5)


def context_weights(count: int) -> List[float]:
    """Linearly decaying weights, newest first, summing to 1."""
    if count <= 0:
        return []
    total = count * (count + 1) / 2
    return [(count - i) / total for i in range(count)]


class Reranker:
    """Rescores retrieval candidates with semantic, lexical, recency, importance and context signals."""

    def __init__(self, embeddings, config: Optional[RerankerConfig] = None,
                 timeout: Optional[float] = RERANK_TIMEOUT_SEC, clock=time.time, logger=None):
        self.embeddings = embeddings
        self.config = config or RerankerConfig()
        self.timeout = timeout
        self.logger = logger or default_logger
        self._clock = clock
        self._sessions: Dict[str, Deque[str]] = {}
        self._sessions_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="ragguard-rerank")

    def recent_queries(self, session_id: Optional[str] = None) -> List[str]:
        """Remembered queries for a session, newest first."""
        with self._sessions_lock:
            return list(self._sessions.get(session_id or DEFAULT_SESSION, ()))

    def remember_query(self, query: str, session_id: Optional[str] = None):
        """Push a query onto the session window, skipping an immediate repeat."""
        key = session_id or DEFAULT_SESSION
        with self._sessions_lock:
            window = self._sessions.setdefault(key, deque(maxlen=MAX_RECENT_QUERIES))
            if not window or window[0] != query:
                window.appendleft(query)

    def forget_session(self, session_id: Optional[str] = None):
        with self._sessions_lock:
            self._sessions.pop(session_id or DEFAULT_SESSION, None)

    def rerank(self, query: str, candidates: List[RetrievalCandidate],
               context_history: Optional[List[str]] = None, session_id: Optional[str] = None,
               timeout: Optional[float] = None, config: Optional[RerankerConfig] = None,
               remember: bool = True) -> RerankOutcome:
        """
        Rerank candidates for a query.

        Args:
            query: User turn text
            candidates: Output of RetrievalOrchestrator.retrieve
            context_history: Earlier user turns, oldest first; when given they
                form the context window instead of the session's remembered queries
            session_id: Key of the remembered-query window
            timeout: Deadline for scoring; falls back to importance order when missed
            config: Weights for this call; the reranker's config if omitted
            remember: Record the query in the session window

        Returns:
            RerankOutcome; used_fallback is True when importance order was used
        """
        config = config or self.config
        if context_history:
            context_queries = [q for q in reversed(context_history) if q and q != query][:MAX_RECENT_QUERIES]
        else:
            context_queries = [q for q in self.recent_queries(session_id) if q != query][:MAX_RECENT_QUERIES]
        if remember:
            self.remember_query(query, session_id)

        if not candidates:
            return RerankOutcome(results=[])

        deadline = timeout if timeout is not None else self.timeout
        try:
            results = run_with_timeout(self._executor, self._score, deadline,
                                       query, list(candidates), context_queries, config, label="rerank")
        except DeadlineExceeded as e:
            self.logger.log_operation("rerank", "timeout", {"timeout": e.timeout, "candidates": len(candidates)})
            return RerankOutcome(results=self.importance_fallback(candidates, config.top_k),
                                 used_fallback=True, error=str(e))
        except Exception as e:
            self.logger.log_operation("rerank", "fallback", {"error": str(e), "candidates": len(candidates)})
            return RerankOutcome(results=self.importance_fallback(candidates, config.top_k),
                                 used_fallback=True, error=str(e))

        self.logger.log_operation("rerank", "success", {
            "candidates": len(candidates),
            "kept": len(results),
            "context_queries": len(context_queries),
        })
        return RerankOutcome(results=results)

    def two_stage_rerank(self, query: str, candidates: List[RetrievalCandidate],
                         context_queries: Optional[List[str]] = None, first_stage_limit: int = 20,
                         final_limit: int = 5, session_id: Optional[str] = None,
                         timeout: Optional[float] = None) -> RerankOutcome:
        """
        Coarse semantic+lexical pass without context, then a full pass with a
        stronger context boost over the survivors.
        """
        for q in context_queries or []:
            self.remember_query(q, session_id)

        first = self.rerank(query, candidates, session_id=session_id, timeout=timeout,
                            config=replace(FIRST_STAGE_CONFIG, top_k=first_stage_limit,
                                           score_threshold=self.config.score_threshold))
        if first.used_fallback:
            first.results = first.results[:final_limit]
            return first

        by_id = {(c.collection, c.record.id): c for c in candidates}
        survivors = []
        for position, result in enumerate(first.results):
            original = by_id.get((result.collection, result.record.id)) if result.record else None
            if original is not None:
                survivors.append(replace(original, order=position))

        return self.rerank(query, survivors, session_id=session_id, timeout=timeout, remember=False,
                           config=replace(SECOND_STAGE_CONFIG, top_k=final_limit,
                                          score_threshold=self.config.score_threshold))

    def importance_fallback(self, candidates: List[RetrievalCandidate], top_k: int) -> List[RankedResult]:
        """Original candidates ordered by importance, ties in input order."""
        indexed = sorted(enumerate(candidates), key=lambda item: (-item[1].importance, item[0]))
        results = []
        for new_rank, (original_rank, candidate) in enumerate(indexed[:top_k]):
            results.append(RankedResult(
                content=candidate.record.text,
                final_score=candidate.importance,
                feature_scores=FeatureScores(
                    semantic=max(0.0, candidate.semantic_score),
                    lexical=candidate.lexical_score,
                    importance=candidate.importance,
                ),
                record=candidate.record,
                collection=candidate.collection,
                original_rank=original_rank,
                new_rank=new_rank,
            ))
        return results

    def get_stats(self) -> Dict[str, object]:
        with self._sessions_lock:
            return {
                "sessions": len(self._sessions),
                "recent_queries": {k: len(v) for k, v in self._sessions.items()},
                "weights": {
                    "semantic": self.config.semantic_weight,
                    "lexical": self.config.lexical_weight,
                    "recency": self.config.recency_weight,
                    "importance": self.config.importance_weight,
                },
            }

    def health_check(self) -> bool:
        try:
            return 0.0 <= lexical_score("health check", "health") <= 1.0
        except Exception as e:
            self.logger.log_operation("rerank.health_check", "failed", {"error": str(e)})
            return False

    def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _score(self, query: str, candidates: List[RetrievalCandidate], context_queries: List[str],
               config: RerankerConfig) -> List[RankedResult]:
        try:
            query_vector = self.embeddings.embed(query)
            context_vectors = []
            if config.use_context and context_queries:
                context_vectors = [self.embeddings.embed(q) for q in context_queries]
        except Exception as e:
            raise RerankFailure(f"Query embedding failed: {e}") from e
        weights = context_weights(len(context_vectors))
        now = self._clock() * 1000

        scored = []
        for original_rank, candidate in enumerate(candidates):
            record = candidate.record
            vector = record.vector
            if vector.shape[0] != len(query_vector):
                vector = self.embeddings.embed(record.text)

            features = FeatureScores(
                semantic=max(0.0, cosine_similarity(query_vector, vector)),
                lexical=lexical_score(query, record.text),
                recency=recency_score(record.timestamp, now),
                importance=candidate.importance,
            )
            if context_vectors:
                features.contextual = max(0.0, sum(
                    w * cosine_similarity(cv, vector) for w, cv in zip(weights, context_vectors)
                ))

            base = (config.semantic_weight * features.semantic
                    + config.lexical_weight * features.lexical
                    + config.recency_weight * features.recency
                    + config.importance_weight * features.importance)
            boost = config.context_boost if config.use_context and features.contextual > CONTEXT_BOOST_THRESHOLD else 1.0

            scored.append(RankedResult(
                content=record.text,
                final_score=base * boost,
                feature_scores=features,
                record=record,
                collection=candidate.collection,
                original_rank=original_rank,
            ))

        kept = [r for r in scored if r.final_score >= config.score_threshold]
        kept.sort(key=lambda r: (-r.final_score, r.original_rank))
        kept = kept[: config.top_k]
        for new_rank, result in enumerate(kept):
            result.new_rank = new_rank
        return kept
