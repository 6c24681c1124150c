"""
Tests for the multi-signal reranker and its importance fallback.
"""

import threading
from unittest.mock import MagicMock

import numpy as np
import pytest

from ragguard.retrieval.reranker import (
    MAX_RECENT_QUERIES,
    Reranker,
    RerankerConfig,
    context_weights,
    lexical_score,
    recency_score,
)
from ragguard.vector.types import Record, RetrievalCandidate

SEMANTIC_ONLY = RerankerConfig(top_k=5, semantic_weight=1.0, lexical_weight=0.0, recency_weight=0.0,
                               importance_weight=0.0, score_threshold=0.0, use_context=False)


def candidate(record_id, vector, importance, text="content", order=0):
    record = Record(id=record_id, vector=vector, text=text, metadata={"importance": importance})
    return RetrievalCandidate(record=record, semantic_score=0.5, collection="docs", combined_score=0.5, order=order)


@pytest.fixture
def embeddings():
    fake = MagicMock()
    fake.embed.return_value = np.array([1.0, 0.0, 0.0], dtype=np.float32)
    return fake


@pytest.fixture
def candidates():
    return [
        candidate("low-importance", [1.0, 0.0, 0.0], 0.2, order=0),
        candidate("high-importance", [0.5, 0.8660254, 0.0], 0.9, order=1),
    ]


@pytest.fixture
def reranker(embeddings):
    r = Reranker(embeddings, config=SEMANTIC_ONLY, timeout=None)
    yield r
    r.close()


def test_output_sorted_by_final_score(reranker, candidates):
    outcome = reranker.rerank("query", list(reversed(candidates)))

    assert outcome.used_fallback is False
    assert [r.record.id for r in outcome.results] == ["low-importance", "high-importance"]
    assert outcome.results[0].final_score == pytest.approx(1.0)
    assert outcome.results[1].final_score == pytest.approx(0.5, abs=1e-6)
    assert [r.new_rank for r in outcome.results] == [0, 1]
    assert [r.original_rank for r in outcome.results] == [1, 0]


def test_below_threshold_never_returned(embeddings, candidates):
    config = RerankerConfig(top_k=5, semantic_weight=1.0, lexical_weight=0.0, recency_weight=0.0,
                            importance_weight=0.0, score_threshold=0.7, use_context=False)
    reranker = Reranker(embeddings, config=config, timeout=None)

    outcome = reranker.rerank("query", candidates)

    assert [r.record.id for r in outcome.results] == ["low-importance"]
    assert all(r.final_score >= 0.7 for r in outcome.results)
    reranker.close()


def test_ordering_holds_for_random_candidates(embeddings):
    rng = np.random.default_rng(3)
    pool = [candidate(f"c{i}", rng.normal(size=3), float(rng.random()), order=i) for i in range(30)]
    config = RerankerConfig(top_k=30, score_threshold=0.2, use_context=False)
    reranker = Reranker(embeddings, config=config, timeout=None)

    results = reranker.rerank("query", pool).results

    scores = [r.final_score for r in results]
    assert scores == sorted(scores, reverse=True)
    assert all(s >= 0.2 for s in scores)
    reranker.close()


def test_scoring_error_falls_back_to_importance(reranker, embeddings, candidates):
    embeddings.embed.side_effect = RuntimeError("embedding down")

    outcome = reranker.rerank("query", candidates)

    assert outcome.used_fallback is True
    assert "embedding down" in outcome.error
    assert [r.record.id for r in outcome.results] == ["high-importance", "low-importance"]
    assert outcome.results[0].final_score == pytest.approx(0.9)


def test_timeout_falls_back_to_importance(embeddings, candidates):
    release = threading.Event()

    def slow_embed(text, *args, **kwargs):
        release.wait(5)
        return np.array([1.0, 0.0, 0.0], dtype=np.float32)

    embeddings.embed.side_effect = slow_embed
    reranker = Reranker(embeddings, config=SEMANTIC_ONLY, timeout=0.05)

    outcome = reranker.rerank("query", candidates)
    release.set()

    assert outcome.used_fallback is True
    assert outcome.results[0].record.id == "high-importance"
    reranker.close()


def test_context_boost_applies_above_threshold(embeddings, candidates):
    config = RerankerConfig(top_k=5, semantic_weight=1.0, lexical_weight=0.0, recency_weight=0.0,
                            importance_weight=0.0, score_threshold=0.0, context_boost=1.5, use_context=True)
    reranker = Reranker(embeddings, config=config, timeout=None)

    outcome = reranker.rerank("query", candidates, context_history=["earlier question"])

    top = outcome.results[0]
    assert top.record.id == "low-importance"
    assert top.feature_scores.contextual == pytest.approx(1.0)
    assert top.final_score == pytest.approx(1.5)
    # Context similarity 0.5 is below the boost threshold.
    assert outcome.results[1].final_score == pytest.approx(0.5, abs=1e-6)
    reranker.close()


def test_empty_candidates(reranker):
    outcome = reranker.rerank("query", [])
    assert outcome.results == []
    assert outcome.used_fallback is False


def test_session_window(reranker):
    for i in range(MAX_RECENT_QUERIES + 2):
        reranker.remember_query(f"q{i}", session_id="s1")
    reranker.remember_query("q6", session_id="s1")

    recent = reranker.recent_queries("s1")
    assert recent == ["q6", "q5", "q4", "q3", "q2"]
    assert reranker.recent_queries("other") == []

    reranker.forget_session("s1")
    assert reranker.recent_queries("s1") == []


def test_two_stage_rerank(reranker, candidates):
    outcome = reranker.two_stage_rerank("query", candidates, final_limit=1)

    assert len(outcome.results) == 1
    assert outcome.results[0].record.id == "low-importance"


def test_lexical_score():
    assert lexical_score("anxiety help", "help with anxiety") == pytest.approx(1.0)
    assert lexical_score("anxiety help", "nothing related") == 0.0
    assert lexical_score("", "anything") == 0.0
    assert 0.0 < lexical_score("anxiety help", "help") < 1.0


def test_recency_score():
    now = 1_000_000_000_000
    day_ms = 24 * 60 * 60 * 1000
    assert recency_score(None) == 0.5
    assert recency_score(now, now) == pytest.approx(1.0)
    assert recency_score(now - day_ms, now) == pytest.approx(0.5)


def test_context_weights():
    assert context_weights(0) == []
    assert context_weights(3) == pytest.approx([0.5, 1 / 3, 1 / 6])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
