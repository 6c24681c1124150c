"""
Pipeline orchestrator: the staged state machine behind retrieve_and_verify.

START -> SAFETY_CHECK -> (SHORT_CIRCUIT | RETRIEVE -> RERANK -> ASSEMBLE -> VERIFY) -> DONE

Safety runs first and unconditionally; a crisis signal short-circuits to the
fixed safety reply and nothing else runs. Every other stage boundary is a
recovery point: an exception is recorded as "<stage>-error-fallback" in the
audit trail and the stage's neutral output is used instead. No exception
leaves process_turn().

Aggregate confidence is the weighted geometric mean of the stage
confidences, prod(c_i ** (w_i / sum(w))), capped at 1.0. A zero stage
confidence therefore zeroes the turn.
"""

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.config import HISTORY_WINDOW
from ..core.context import PipelineContext
from ..core.errors import RetrievalFailure
from ..core.timeouts import CancellationToken
from ..retrieval.orchestrator import RetrievalOptions, RetrievalResult
from ..util.logging import AuditSink, logger as default_logger
from .hallucination import HallucinationFlag, has_critical
from .responder import SAFE_DEFAULT_RESPONSE, ResponseAssembler, TemplateResponder, fallback_response
from .safety import CrisisAnalysis, CrisisDetector, coarse_crisis_check

ERROR_SUFFIX = "-error-fallback"

STAGE_WEIGHTS = {
    "safety_check": 1.0,
    "short_circuit": 1.0,
    "retrieve": 1.0,
    "rerank": 1.0,
    "assemble": 1.0,
    "verify": 2.0,
}

SHORT_CIRCUIT_CONFIDENCE = 0.95
RETRIEVE_EMPTY_CONFIDENCE = 0.8
RETRIEVE_MIN_CONFIDENCE = 0.6
RERANK_FALLBACK_CONFIDENCE = 0.7
STAGE_ERROR_CONFIDENCE = 0.5
CRITICAL_SUBSTITUTION_CONFIDENCE = 0.2
VERIFY_FLOOR = 0.1
SEVERITY_PENALTIES = {"low": 0.05, "medium": 0.15, "high": 0.3}


class PipelineState(Enum):
    START = "start"
    SAFETY_CHECK = "safety_check"
    SHORT_CIRCUIT = "short_circuit"
    RETRIEVE = "retrieve"
    RERANK = "rerank"
    ASSEMBLE = "assemble"
    VERIFY = "verify"
    DONE = "done"


@dataclass
class PipelineResult:
    """Outcome of one user turn."""

    text: str
    confidence: float
    flags: List[HallucinationFlag] = field(default_factory=list)
    audit: List[str] = field(default_factory=list)
    state_history: List[PipelineState] = field(default_factory=list)
    crisis_detected: bool = False
    was_enhanced: bool = False
    context: Optional[PipelineContext] = None
    processing_time_ms: float = 0.0


def aggregate_confidence(stage_confidences: Dict[str, float],
                         weights: Optional[Dict[str, float]] = None) -> float:
    """Weighted geometric mean of stage confidences, capped at 1.0."""
    weights = weights or STAGE_WEIGHTS
    if not stage_confidences:
        return 0.0

    total_weight = 0.0
    weighted = []
    for name, confidence in stage_confidences.items():
        base = name.split("-", 1)[0]
        weight = weights.get(base, 1.0)
        total_weight += weight
        weighted.append((max(0.0, min(1.0, confidence)), weight))

    if total_weight <= 0:
        return 0.0
    if any(c == 0.0 for c, _ in weighted):
        return 0.0

    log_sum = sum(w * math.log(c) for c, w in weighted)
    return min(1.0, math.exp(log_sum / total_weight))


def verify_confidence(flags: List[HallucinationFlag]) -> float:
    """1.0 minus per-severity penalties, floored at VERIFY_FLOOR."""
    penalty = sum(SEVERITY_PENALTIES.get(f.severity, 0.0) for f in flags)
    return max(VERIFY_FLOOR, 1.0 - penalty)


class PipelineOrchestrator:
    """
    Sequences safety, retrieval, reranking, assembly and verification for
    one user turn and aggregates a confidence score and audit trail.
    """

    def __init__(self, retriever, reranker, guard, crisis_detector: Optional[CrisisDetector] = None,
                 assembler: Optional[ResponseAssembler] = None, audit_sink: Optional[AuditSink] = None,
                 retrieval_options: Optional[RetrievalOptions] = None,
                 history_window: int = HISTORY_WINDOW, logger=None):
        """
        Initialize the orchestrator.

        Args:
            retriever: RetrievalOrchestrator
            reranker: Reranker
            guard: HallucinationGuard
            crisis_detector: CrisisDetector; a fresh one if omitted
            assembler: ResponseAssembler; TemplateResponder if omitted
            audit_sink: Receives one record per completed turn
            retrieval_options: Options passed to every retrieve() call
            history_window: Turns of history kept in the context
            logger: StructuredLogger to report through
        """
        self.retriever = retriever
        self.reranker = reranker
        self.guard = guard
        self.crisis_detector = crisis_detector or CrisisDetector()
        self.assembler = assembler or TemplateResponder()
        self.audit_sink = audit_sink
        self.retrieval_options = retrieval_options
        self.history_window = history_window
        self.logger = logger or default_logger

        self.turns_processed = 0
        self.short_circuits = 0
        self.stage_failures: Dict[str, int] = {}

    def process_turn(self, user_input: str, history=None, session_id: Optional[str] = None,
                     cancel_token: Optional[CancellationToken] = None) -> PipelineResult:
        """
        Run one user turn through the pipeline.

        Args:
            user_input: Current user message
            history: Prior turns, oldest first (strings, dicts or HistoryTurn)
            session_id: Conversation key for reranker context and audit
            cancel_token: Checked between stages

        Returns:
            PipelineResult; never raises
        """
        start = time.time()
        states = [PipelineState.START]
        context = None
        try:
            context = PipelineContext.for_turn(user_input, history, session_id, self.history_window)
            result = self._run(context, states, cancel_token)
        except Exception as e:
            # Total failure outside any stage boundary.
            self.logger.log_operation("pipeline.turn", "error", {"error": str(e)})
            audit = list(context.audit) if context is not None else []
            audit.append("pipeline" + ERROR_SUFFIX)
            states.append(PipelineState.DONE)
            result = PipelineResult(text=SAFE_DEFAULT_RESPONSE, confidence=0.0, audit=audit,
                                    state_history=states, context=context)

        result.processing_time_ms = round((time.time() - start) * 1000, 2)
        self.turns_processed += 1
        self._emit_audit(result, session_id)
        return result

    def _run(self, context: PipelineContext, states: List[PipelineState],
             cancel_token: Optional[CancellationToken]) -> PipelineResult:
        history_texts = context.history_texts()

        # SAFETY_CHECK
        states.append(PipelineState.SAFETY_CHECK)
        analysis = self._safety_check(context)

        if analysis.is_crisis:
            states.append(PipelineState.SHORT_CIRCUIT)
            self.short_circuits += 1
            context.record_stage("short_circuit", SHORT_CIRCUIT_CONFIDENCE)
            self.logger.log_operation("pipeline.short_circuit", "success", {
                "level": analysis.level, "crisis_types": analysis.crisis_types,
            })
            states.append(PipelineState.DONE)
            return self._result(context, states, self.crisis_detector.safe_response(analysis),
                                flags=[], crisis_detected=True)

        if self._is_cancelled(cancel_token):
            return self._cancelled(context, states, cancel_token)

        # RETRIEVE
        states.append(PipelineState.RETRIEVE)
        retrieval = self._retrieve(context, history_texts)

        if self._is_cancelled(cancel_token):
            return self._cancelled(context, states, cancel_token)

        # RERANK
        states.append(PipelineState.RERANK)
        ranked = self._rerank(context, retrieval)

        if self._is_cancelled(cancel_token):
            return self._cancelled(context, states, cancel_token)

        # ASSEMBLE
        states.append(PipelineState.ASSEMBLE)
        text, used_context = self._assemble(context, ranked, analysis)

        if self._is_cancelled(cancel_token):
            return self._cancelled(context, states, cancel_token)

        # VERIFY
        states.append(PipelineState.VERIFY)
        text, flags = self._verify(context, text, history_texts)

        states.append(PipelineState.DONE)
        return self._result(context, states, text, flags=flags,
                            crisis_detected=analysis.level != "none",
                            was_enhanced=used_context and retrieval.was_applied)

    def _safety_check(self, context: PipelineContext) -> CrisisAnalysis:
        started = time.time()
        try:
            analysis = self.crisis_detector.analyze(context.user_input)
            context.record_stage("safety_check", 1.0)
            self.logger.log_stage("safety_check", "success", started, time.time(), {"level": analysis.level})
        except Exception as e:
            flagged = coarse_crisis_check(context.user_input)
            analysis = CrisisAnalysis(
                level="critical" if flagged else "none",
                requires_immediate=flagged,
                risk_factors=["coarse-pattern"] if flagged else [],
                intervention_type="emergency_intervention" if flagged else "monitoring",
                confidence=0.5,
            )
            self._stage_failed(context, "safety_check", e, started)
        context.set("crisis", analysis)
        return analysis

    def _retrieve(self, context: PipelineContext, history_texts: List[str]) -> RetrievalResult:
        started = time.time()
        try:
            result = self.retriever.retrieve(context.user_input, history_texts, self.retrieval_options)
            if result.error is not None:
                raise RetrievalFailure(result.error)
        except Exception as e:
            self._stage_failed(context, "retrieve", e, started)
            return RetrievalResult(was_applied=False, error=str(e))

        if result.candidates:
            confidence = max(RETRIEVE_MIN_CONFIDENCE, min(1.0, result.mean_score))
        else:
            confidence = RETRIEVE_EMPTY_CONFIDENCE
        context.record_stage("retrieve", confidence)
        context.set("retrieval", result)
        self.logger.log_stage("retrieve", "success", started, time.time(),
                              {"candidates": len(result.candidates)})
        return result

    def _rerank(self, context: PipelineContext, retrieval: RetrievalResult):
        started = time.time()
        candidates = retrieval.candidates
        try:
            outcome = self.reranker.rerank(context.user_input, candidates,
                                           context_history=context.user_history_texts(),
                                           session_id=context.session_id)
        except Exception as e:
            self._stage_failed(context, "rerank", e, started)
            return self._importance_order(candidates)

        if outcome.used_fallback:
            self.stage_failures["rerank"] = self.stage_failures.get("rerank", 0) + 1
            context.record_stage("rerank" + ERROR_SUFFIX, RERANK_FALLBACK_CONFIDENCE)
            self.logger.log_stage("rerank", "fallback", started, time.time(), {"error": outcome.error})
        else:
            context.record_stage("rerank", 1.0)
            self.logger.log_stage("rerank", "success", started, time.time(), {"kept": len(outcome.results)})
        return outcome.results

    def _importance_order(self, candidates):
        fallback = getattr(self.reranker, "importance_fallback", None)
        if callable(fallback):
            try:
                return fallback(candidates, len(candidates))
            except Exception as e:
                self.logger.log_operation("pipeline.rerank_fallback", "error", {"error": str(e)})
        return []

    def _assemble(self, context: PipelineContext, ranked, analysis: CrisisAnalysis):
        started = time.time()
        try:
            assembled = self.assembler.assemble(context, ranked, analysis)
        except Exception as e:
            self._stage_failed(context, "assemble", e, started, confidence=0.0)
            return fallback_response(context.user_input), False

        context.record_stage("assemble", assembled.confidence)
        self.logger.log_stage("assemble", "success", started, time.time(),
                              {"used_context": assembled.used_context})
        return assembled.text, assembled.used_context

    def _verify(self, context: PipelineContext, text: str, history_texts: List[str]):
        started = time.time()
        try:
            flags = self.guard.scan(text, context.user_input, history_texts)
        except Exception as e:
            self._stage_failed(context, "verify", e, started)
            return text, []

        if has_critical(flags):
            context.record_stage("verify-critical-substituted", CRITICAL_SUBSTITUTION_CONFIDENCE)
            self.logger.log_stage("verify", "rejected", started, time.time(),
                                  {"flags": [f.type for f in flags]})
            return self._substitute(context, flags), flags

        context.record_stage("verify", verify_confidence(flags))
        self.logger.log_stage("verify", "success", started, time.time(), {"flags": len(flags)})
        return text, flags

    def _substitute(self, context: PipelineContext, flags: List[HallucinationFlag]) -> str:
        """Safe default for a rejected response; crisis mismatches get crisis resources."""
        if any(f.type == "crisis-mismatch" for f in flags):
            analysis = context.get("crisis")
            if analysis is not None and analysis.level in CrisisDetector.SAFETY_RESPONSES:
                return self.crisis_detector.safe_response(analysis)
            return CrisisDetector.SAFETY_RESPONSES["medium"]
        return SAFE_DEFAULT_RESPONSE

    def _stage_failed(self, context: PipelineContext, stage: str, error: Exception, started: float,
                      confidence: float = STAGE_ERROR_CONFIDENCE):
        self.stage_failures[stage] = self.stage_failures.get(stage, 0) + 1
        context.record_stage(stage + ERROR_SUFFIX, confidence)
        self.logger.log_stage(stage, "error", started, time.time(), {"error": str(error)})

    @staticmethod
    def _is_cancelled(token: Optional[CancellationToken]) -> bool:
        return token is not None and token.cancelled

    def _cancelled(self, context: PipelineContext, states: List[PipelineState],
                   token: CancellationToken) -> PipelineResult:
        context.audit.append("cancelled")
        states.append(PipelineState.DONE)
        self.logger.log_operation("pipeline.turn", "cancelled", {"reason": token.reason})
        return PipelineResult(text=SAFE_DEFAULT_RESPONSE, confidence=0.0, audit=list(context.audit),
                              state_history=list(states), context=context)

    def _result(self, context: PipelineContext, states: List[PipelineState], text: str,
                flags: List[HallucinationFlag], crisis_detected: bool,
                was_enhanced: bool = False) -> PipelineResult:
        return PipelineResult(
            text=text,
            confidence=aggregate_confidence(context.stage_confidences),
            flags=flags,
            audit=list(context.audit),
            state_history=list(states),
            crisis_detected=crisis_detected,
            was_enhanced=was_enhanced,
            context=context,
        )

    def _emit_audit(self, result: PipelineResult, session_id: Optional[str]):
        if self.audit_sink is None:
            return
        record: Dict[str, Any] = {
            "session_id": session_id,
            "audit": list(result.audit),
            "confidence": result.confidence,
            "flags": [f.type for f in result.flags],
            "crisis_detected": result.crisis_detected,
            "state_history": [s.value for s in result.state_history],
            "processing_time_ms": result.processing_time_ms,
        }
        try:
            self.audit_sink.record(record)
        except Exception as e:
            self.logger.log_operation("pipeline.audit_sink", "error", {"error": str(e)})

    def get_stats(self) -> Dict[str, Any]:
        return {
            "turns_processed": self.turns_processed,
            "short_circuits": self.short_circuits,
            "stage_failures": dict(self.stage_failures),
        }
