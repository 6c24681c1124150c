"""
Hybrid retrieval: expand the query, run semantic and keyword search over the
configured collections, merge hits by record and apply the relevance floor.

Retrieval fails soft. Any exception inside retrieve() produces an empty
RetrievalResult with was_applied=False and the error message attached.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..core.config import (
    DEFAULT_COLLECTION,
    KEYWORD_WEIGHT,
    KNOWLEDGE_COLLECTION,
    MAX_RESULTS,
    RELEVANCE_FLOOR,
    SEARCH_TIMEOUT_SEC,
    SEMANTIC_WEIGHT,
)
from ..util.logging import logger as default_logger
from ..vector.types import RetrievalCandidate, SearchMode
from .query_expansion import QueryExpander, QueryExpansion

CANDIDATE_THRESHOLD = 0.3


@dataclass
class RetrievalOptions:
    """Per-call retrieval settings."""

    collections: List[str] = field(default_factory=lambda: [DEFAULT_COLLECTION, KNOWLEDGE_COLLECTION])
    mode: SearchMode = SearchMode.HYBRID
    relevance_floor: float = RELEVANCE_FLOOR
    max_results: int = MAX_RESULTS
    semantic_weight: float = SEMANTIC_WEIGHT
    keyword_weight: float = KEYWORD_WEIGHT
    search_limit: int = 20
    candidate_threshold: float = CANDIDATE_THRESHOLD
    include_history: bool = True
    timeout: Optional[float] = SEARCH_TIMEOUT_SEC
    embed_timeout: Optional[float] = None


@dataclass
class RetrievalResult:
    """Output of one retrieve() call."""

    candidates: List[RetrievalCandidate] = field(default_factory=list)
    expansion: Optional[QueryExpansion] = None
    was_applied: bool = False
    retrieval_method: str = "none"
    relevance_scores: Dict[str, float] = field(default_factory=dict)
    error: Optional[str] = None
    processing_time_ms: float = 0.0

    @property
    def mean_score(self) -> float:
        if not self.candidates:
            return 0.0
        return sum(c.combined_score for c in self.candidates) / len(self.candidates)


def merge_hits(semantic_hits, keyword_hits, semantic_weight: float,
               keyword_weight: float) -> List[RetrievalCandidate]:
    """
    Merge semantic and keyword hits by (collection, record id).

    A record found by both searches scores
    semantic_weight * semantic + keyword_weight * keyword; a record found by
    only one keeps that search's score. Output is best-first, ties in
    first-seen order.
    """
    merged: Dict[Tuple[Optional[str], str], RetrievalCandidate] = {}

    for hit in semantic_hits:
        key = (hit.collection, hit.record.id)
        if key in merged:
            continue
        merged[key] = RetrievalCandidate(
            record=hit.record,
            semantic_score=hit.score,
            collection=hit.collection,
            combined_score=hit.score,
            order=len(merged),
        )

    for hit in keyword_hits:
        key = (hit.collection, hit.record.id)
        existing = merged.get(key)
        if existing is None:
            merged[key] = RetrievalCandidate(
                record=hit.record,
                lexical_score=hit.score,
                collection=hit.collection,
                combined_score=hit.score,
                order=len(merged),
            )
        elif existing.lexical_score == 0.0:
            existing.lexical_score = hit.score
            existing.combined_score = (semantic_weight * existing.semantic_score
                                       + keyword_weight * hit.score)

    ranked = sorted(merged.values(), key=lambda c: (-c.combined_score, c.order))
    for position, candidate in enumerate(ranked):
        candidate.order = position
    return ranked


class RetrievalOrchestrator:
    """Runs query expansion and hybrid search against a VectorStore."""

    def __init__(self, store, embeddings, expander: Optional[QueryExpander] = None,
                 default_options: Optional[RetrievalOptions] = None, logger=None):
        self.store = store
        self.embeddings = embeddings
        self.expander = expander or QueryExpander()
        self.default_options = default_options or RetrievalOptions()
        self.logger = logger or default_logger

    def expand_query(self, query: str, history: Optional[List[str]] = None,
                     options: Optional[RetrievalOptions] = None) -> QueryExpansion:
        options = options or self.default_options
        return self.expander.expand(query, history, include_history=options.include_history)

    def retrieve(self, query: str, history: Optional[List[str]] = None,
                 options: Optional[RetrievalOptions] = None) -> RetrievalResult:
        """
        Retrieve candidates for a query.

        Args:
            query: User turn text
            history: Prior turn texts, oldest first
            options: RetrievalOptions; the orchestrator defaults if omitted

        Returns:
            RetrievalResult with at most max_results candidates scoring at or
            above the relevance floor.
        """
        options = options or self.default_options
        start = time.time()
        try:
            expansion = self.expand_query(query, history, options)

            semantic_hits = []
            if options.mode in (SearchMode.SEMANTIC, SearchMode.HYBRID):
                vector = self.embeddings.embed(query, timeout=options.embed_timeout)
                for name in options.collections:
                    semantic_hits.extend(self.store.search(
                        name, vector,
                        limit=options.search_limit,
                        score_threshold=options.candidate_threshold,
                        timeout=options.timeout,
                    ))

            keyword_hits = []
            if options.mode in (SearchMode.KEYWORD, SearchMode.HYBRID):
                terms = expansion.expanded_terms or expansion.terms
                if terms:
                    for name in options.collections:
                        keyword_hits.extend(self.store.keyword_search(name, terms, limit=options.search_limit))

            merged = merge_hits(semantic_hits, keyword_hits, options.semantic_weight, options.keyword_weight)
            candidates = [c for c in merged if c.combined_score >= options.relevance_floor]
            candidates = candidates[: options.max_results]

            result = RetrievalResult(
                candidates=candidates,
                expansion=expansion,
                was_applied=bool(candidates),
                retrieval_method=options.mode.value,
                relevance_scores={f"{c.collection}:{c.record.id}": c.combined_score for c in candidates},
                processing_time_ms=round((time.time() - start) * 1000, 2),
            )
            self.logger.log_operation("retrieval.retrieve", "success", {
                "method": result.retrieval_method,
                "semantic_hits": len(semantic_hits),
                "keyword_hits": len(keyword_hits),
                "candidates": len(candidates),
                "duration_ms": result.processing_time_ms,
            })
            return result

        except Exception as e:
            self.logger.log_operation("retrieval.retrieve", "error", {"error": str(e)})
            return RetrievalResult(
                was_applied=False,
                retrieval_method="none",
                error=str(e),
                processing_time_ms=round((time.time() - start) * 1000, 2),
            )

    def health_check(self) -> bool:
        """True when expansion works and the store answers its own health check."""
        try:
            self.expander.expand("health check")
            return bool(self.store.health_check())
        except Exception as e:
            self.logger.log_operation("retrieval.health_check", "failed", {"error": str(e)})
            return False
