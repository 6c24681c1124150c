"""
Tests for the pipeline state machine: short-circuit, stage fallbacks,
verification, cancellation and confidence aggregation.
"""

from unittest.mock import MagicMock

import pytest

from ragguard.agents.hallucination import HallucinationFlag, HallucinationGuard
from ragguard.agents.orchestrator import (
    PipelineOrchestrator,
    PipelineState,
    aggregate_confidence,
    verify_confidence,
)
from ragguard.agents.responder import SAFE_DEFAULT_RESPONSE, TemplateResponder, fallback_response
from ragguard.agents.safety import CrisisDetector
from ragguard.core.timeouts import CancellationToken
from ragguard.retrieval.orchestrator import RetrievalOptions, RetrievalOrchestrator, RetrievalResult
from ragguard.retrieval.reranker import Reranker, RerankOutcome
from ragguard.util.logging import MemoryAuditSink
from ragguard.vector.embeddings import DeterministicHashEmbedding, EmbeddingService
from ragguard.vector.index import VectorStore
from ragguard.vector.types import FeatureScores, RankedResult, Record, RetrievalCandidate

SNIPPET = "Slow breathing can calm the body."
CALM_INPUT = "I've been feeling anxious lately about work"


@pytest.fixture
def retriever():
    record = Record(id="r1", vector=[1.0, 0.0, 0.0], text=SNIPPET)
    candidate = RetrievalCandidate(record=record, semantic_score=0.9, collection="docs", combined_score=0.9)
    fake = MagicMock()
    fake.retrieve.return_value = RetrievalResult(candidates=[candidate], was_applied=True,
                                                 retrieval_method="hybrid")
    return fake


@pytest.fixture
def reranker():
    fake = MagicMock()
    fake.rerank.return_value = RerankOutcome(results=[
        RankedResult(content=SNIPPET, final_score=0.8, feature_scores=FeatureScores()),
    ])
    fake.importance_fallback.return_value = []
    return fake


@pytest.fixture
def pipeline(retriever, reranker):
    return PipelineOrchestrator(retriever, reranker, HallucinationGuard(),
                                assembler=TemplateResponder(seed=1))


def test_crisis_input_short_circuits(pipeline, retriever, reranker):
    """A crisis turn returns the fixed safety reply and skips retrieval and reranking."""
    result = pipeline.process_turn("I want to kill myself", [], "s1")

    assert result.audit == ["safety_check", "short_circuit"]
    assert "retrieve" not in result.audit and "rerank" not in result.audit
    assert result.text == CrisisDetector.SAFETY_RESPONSES["critical"]
    assert result.crisis_detected is True
    assert result.confidence == pytest.approx(0.95 ** 0.5)
    assert PipelineState.SHORT_CIRCUIT in result.state_history
    retriever.retrieve.assert_not_called()
    reranker.rerank.assert_not_called()


def test_normal_turn_runs_every_stage(pipeline):
    result = pipeline.process_turn(CALM_INPUT, [], "s1")

    assert result.audit == ["safety_check", "retrieve", "rerank", "assemble", "verify"]
    assert result.state_history == [
        PipelineState.START, PipelineState.SAFETY_CHECK, PipelineState.RETRIEVE, PipelineState.RERANK,
        PipelineState.ASSEMBLE, PipelineState.VERIFY, PipelineState.DONE,
    ]
    assert SNIPPET in result.text
    assert result.flags == []
    assert result.was_enhanced is True
    assert result.confidence == pytest.approx(0.9 ** (1 / 6))


def test_retrieval_exception_is_recovered(pipeline, retriever):
    retriever.retrieve.side_effect = RuntimeError("store offline")

    result = pipeline.process_turn(CALM_INPUT, [], "s1")

    assert "retrieve-error-fallback" in result.audit
    assert result.confidence < 1.0
    assert result.text


def test_retrieval_error_result_is_recovered(pipeline, retriever):
    retriever.retrieve.return_value = RetrievalResult(error="embedding failed")

    result = pipeline.process_turn(CALM_INPUT, [], "s1")

    assert "retrieve-error-fallback" in result.audit
    assert "retrieve" not in result.audit


def test_empty_retrieval_uses_fallback_reply(pipeline, retriever, reranker):
    retriever.retrieve.return_value = RetrievalResult()
    reranker.rerank.return_value = RerankOutcome(results=[])

    result = pipeline.process_turn(CALM_INPUT, [], "s1")

    assert result.text == fallback_response(CALM_INPUT)
    assert result.was_enhanced is False
    assert "retrieve" in result.audit


def test_rerank_fallback_is_audited(pipeline, reranker):
    reranker.rerank.return_value = RerankOutcome(
        results=[RankedResult(content=SNIPPET, final_score=0.5, feature_scores=FeatureScores())],
        used_fallback=True, error="timeout",
    )

    result = pipeline.process_turn(CALM_INPUT, [], "s1")

    assert "rerank-error-fallback" in result.audit
    assert SNIPPET in result.text


def test_rerank_exception_is_recovered(pipeline, reranker):
    reranker.rerank.side_effect = RuntimeError("rerank crashed")

    result = pipeline.process_turn(CALM_INPUT, [], "s1")

    assert "rerank-error-fallback" in result.audit
    reranker.importance_fallback.assert_called_once()


def test_assembler_failure_zeroes_confidence(retriever, reranker):
    assembler = MagicMock()
    assembler.assemble.side_effect = RuntimeError("template missing")
    pipeline = PipelineOrchestrator(retriever, reranker, HallucinationGuard(), assembler=assembler)

    result = pipeline.process_turn(CALM_INPUT, [], "s1")

    assert "assemble-error-fallback" in result.audit
    assert result.text == fallback_response(CALM_INPUT)
    assert result.confidence == 0.0


def test_critical_flag_substitutes_crisis_text(retriever, reranker):
    guard = MagicMock()
    guard.scan.return_value = [HallucinationFlag("crisis-mismatch", "critical", 0.9, "missing resources")]
    pipeline = PipelineOrchestrator(retriever, reranker, guard, assembler=TemplateResponder(seed=1))

    result = pipeline.process_turn(CALM_INPUT, [], "s1")

    assert result.text == CrisisDetector.SAFETY_RESPONSES["medium"]
    assert "verify-critical-substituted" in result.audit
    assert result.confidence < 0.9


def test_other_critical_flag_substitutes_safe_default(retriever, reranker):
    guard = MagicMock()
    guard.scan.return_value = [HallucinationFlag("fabrication", "critical", 0.9, "made up")]
    pipeline = PipelineOrchestrator(retriever, reranker, guard, assembler=TemplateResponder(seed=1))

    result = pipeline.process_turn(CALM_INPUT, [], "s1")

    assert result.text == SAFE_DEFAULT_RESPONSE


def test_advisory_flags_keep_response(retriever, reranker):
    guard = MagicMock()
    guard.scan.return_value = [HallucinationFlag("capability-claim", "medium", 0.8, "claims to diagnose")]
    pipeline = PipelineOrchestrator(retriever, reranker, guard, assembler=TemplateResponder(seed=1))

    result = pipeline.process_turn(CALM_INPUT, [], "s1")

    assert SNIPPET in result.text
    assert [f.type for f in result.flags] == ["capability-claim"]
    assert result.context.stage_confidences["verify"] == pytest.approx(0.85)


def test_guard_failure_is_recovered(retriever, reranker):
    guard = MagicMock()
    guard.scan.side_effect = RuntimeError("guard down")
    pipeline = PipelineOrchestrator(retriever, reranker, guard, assembler=TemplateResponder(seed=1))

    result = pipeline.process_turn(CALM_INPUT, [], "s1")

    assert "verify-error-fallback" in result.audit
    assert SNIPPET in result.text


def test_safety_detector_failure_uses_coarse_check(retriever, reranker):
    detector = MagicMock()
    detector.analyze.side_effect = RuntimeError("detector down")
    detector.safe_response.return_value = "Please call 988."
    pipeline = PipelineOrchestrator(retriever, reranker, HallucinationGuard(), crisis_detector=detector)

    result = pipeline.process_turn("I just want to die", [], "s1")

    assert result.audit == ["safety_check-error-fallback", "short_circuit"]
    assert result.text == "Please call 988."
    retriever.retrieve.assert_not_called()


def test_cancellation_between_stages(pipeline, retriever):
    token = CancellationToken()
    token.cancel("client disconnected")

    result = pipeline.process_turn(CALM_INPUT, [], "s1", cancel_token=token)

    assert result.audit[-1] == "cancelled"
    assert result.text == SAFE_DEFAULT_RESPONSE
    assert result.confidence == 0.0
    retriever.retrieve.assert_not_called()


def test_history_is_bounded(retriever, reranker):
    pipeline = PipelineOrchestrator(retriever, reranker, HallucinationGuard(), history_window=10)
    history = [f"message {i}" for i in range(15)]

    result = pipeline.process_turn(CALM_INPUT, history, "s1")

    assert len(result.context.history) == 10
    assert result.context.history[0].text == "message 5"


def test_audit_sink_receives_turn(retriever, reranker):
    sink = MemoryAuditSink()
    pipeline = PipelineOrchestrator(retriever, reranker, HallucinationGuard(), audit_sink=sink)

    pipeline.process_turn(CALM_INPUT, [], "s1")

    records = sink.records()
    assert len(records) == 1
    assert records[0]["session_id"] == "s1"
    assert records[0]["audit"][0] == "safety_check"


def test_failing_audit_sink_does_not_break_turn(retriever, reranker):
    sink = MagicMock()
    sink.record.side_effect = RuntimeError("sink full")
    pipeline = PipelineOrchestrator(retriever, reranker, HallucinationGuard(), audit_sink=sink)

    result = pipeline.process_turn(CALM_INPUT, [], "s1")

    assert result.audit[-1] == "verify"


def test_end_to_end_with_real_components():
    """Real store, embeddings, retrieval and reranker on the deterministic provider."""
    embeddings = EmbeddingService(provider=DeterministicHashEmbedding(64), dimension=64, default_timeout=None)
    store = VectorStore(default_dimension=64, ann_enabled=False)
    text = "Grounding exercises like slow breathing can ease anxiety at work."
    store.insert("docs", Record(id="g1", vector=embeddings.embed(text), text=text, metadata={"importance": 0.8}))

    options = RetrievalOptions(collections=["docs"], timeout=None)
    pipeline = PipelineOrchestrator(
        RetrievalOrchestrator(store, embeddings, default_options=options),
        Reranker(embeddings, timeout=None),
        HallucinationGuard(),
        retrieval_options=options,
    )

    result = pipeline.process_turn(text, ["I had a rough week"], "s1")

    assert result.audit[0] == "safety_check"
    assert "retrieve" in result.audit
    assert 0.0 < result.confidence <= 1.0
    embeddings.close()
    store.close()


class TestConfidence:
    """Aggregation helpers."""

    def test_empty_is_zero(self):
        assert aggregate_confidence({}) == 0.0

    def test_weighted_geometric_mean(self):
        value = aggregate_confidence({"retrieve": 0.5, "verify": 1.0})
        assert value == pytest.approx(0.5 ** (1 / 3))

    def test_suffixed_stage_uses_base_weight(self):
        value = aggregate_confidence({"retrieve": 1.0, "verify-critical-substituted": 0.2})
        assert value == pytest.approx(0.2 ** (2 / 3))

    def test_any_zero_stage_zeroes_result(self):
        assert aggregate_confidence({"retrieve": 1.0, "assemble-error-fallback": 0.0}) == 0.0

    def test_verify_penalties(self):
        high = HallucinationFlag("repetition", "high", 0.9, "x")
        medium = HallucinationFlag("capability-claim", "medium", 0.8, "x")
        assert verify_confidence([]) == 1.0
        assert verify_confidence([high, medium]) == pytest.approx(0.55)
        assert verify_confidence([high] * 10) == pytest.approx(0.1)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
