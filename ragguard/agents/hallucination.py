"""
Hallucination guard: pattern-based detectors run over a candidate response.

Each detector is independent and can be disabled by name. A flag of
severity "critical" means the response must be discarded and replaced with
a safe default; every other flag is advisory.
"""

import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ..core.config import KNOWLEDGE_COLLECTION, UNVERIFIED_CLAIM_THRESHOLD
from ..core.errors import CriticalHallucinationFlag
from ..util.logging import logger as default_logger
from .safety import CrisisDetector, has_safety_resources

SEVERITIES = ("low", "medium", "high", "critical")
EARLY_CONVERSATION_TURNS = 2


@dataclass
class HallucinationFlag:
    """A structured marker that a response likely contains fabricated content."""
    type: str
    severity: str
    confidence: float
    description: str
    affected_span: Optional[Tuple[int, int]] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "type": self.type,
            "severity": self.severity,
            "confidence": self.confidence,
            "description": self.description,
            "affected_span": list(self.affected_span) if self.affected_span else None,
        }


def has_critical(flags: List[HallucinationFlag]) -> bool:
    return any(f.severity == "critical" for f in flags)


FALSE_MEMORY_PATTERNS = [re.compile(p, re.I) for p in [
    r"\byou (mentioned|said|told me) (before|earlier|previously)\b",
    r"\bas (you|we) (mentioned|said|discussed|told me) (before|earlier|previously)\b",
    r"\byou('ve| have) (told|said to) me (before|earlier|previously)\b",
    r"\bwhen we (talked|spoke|discussed) (about|earlier|before|previously)\b",
    r"\bas we (discussed|talked about|covered) (before|earlier|previously)\b",
    r"\b(from|in) our (previous|earlier|last) (conversation|discussion|session)\b",
    r"\bwhen you (told|shared with) me (before|earlier|previously)\b",
    r"\byou told me before\b",
    r"\bwhen we last spoke\b",
]]

FALSE_CONTINUITY_PATTERNS = [re.compile(p, re.I) for p in [
    r"\bwe've been (discussing|talking about)\b",
    r"\bcontinuing our (conversation|discussion)\b",
    r"\bas we were saying\b",
    r"\bas I mentioned earlier\b",
]]

REPETITION_PATTERNS = [re.compile(p, re.I | re.S) for p in [
    r"(I hear (you'?re|you are) dealing with).*(I hear (you'?re|you are) dealing with)",
    r"(I remember (you|your|we)).*(I remember (you|your|we))",
    r"(you (mentioned|said|told me)).*(you (mentioned|said|told me))",
    r"((I hear|It sounds like) you('re| are) (dealing with|feeling)).*((I hear|It sounds like) you('re| are))",
    r"(I understand (you'?re|you are|your)).*(I understand (you'?re|you are|your))",
    r"(It seems (you'?re|you are|your)).*(It seems (you'?re|you are|your))",
]]

TOKEN_CORRUPTION_PATTERNS = [
    re.compile(r"\b\w+(\.{3}|…)\s+[A-Z]"),
    re.compile(r"^\s*(\.{3}|…)"),
]

CAPABILITY_PATTERNS = [re.compile(p, re.I) for p in [
    r"\bI (can|could|will) (diagnose|prescribe|treat|cure|heal)\b",
    r"\bI('ll| will) (send|email|call|text|contact) (you|someone|them|your)\b",
    r"\bI('ve| have) (contacted|called|notified|emailed)\b",
    r"\bI (am|'m) (a|your) (licensed|certified|registered) (therapist|doctor|psychiatrist|counselor)\b",
]]

CLAIM_VERB_PATTERN = re.compile(r"\b(is|are|was|were|has|have|had|can|could|will|would|should)\b", re.I)
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


def _normalize_sentence(sentence: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[^\w\s']", "", sentence.lower())).strip()


def _sentences_with_spans(text: str) -> List[Tuple[str, int, int]]:
    out = []
    pos = 0
    for part in _SENTENCE_SPLIT.split(text or ""):
        start = text.find(part, pos)
        if start == -1:
            start = pos
        end = start + len(part)
        pos = end
        if part.strip():
            out.append((part, start, end))
    return out


def _first_match(patterns, text: str):
    for pattern in patterns:
        match = pattern.search(text or "")
        if match:
            return match
    return None


def detect_false_memory(response_text: str, user_input: str, history: List[str]) -> List[HallucinationFlag]:
    """Claims of prior-conversation knowledge in a conversation with at most two turns."""
    if len(history) > EARLY_CONVERSATION_TURNS:
        return []
    match = _first_match(FALSE_MEMORY_PATTERNS, response_text)
    if not match:
        return []
    return [HallucinationFlag(
        type="false-memory",
        severity="high",
        confidence=0.95,
        description="False reference to previous conversation",
        affected_span=match.span(),
    )]


def detect_false_continuity(response_text: str, user_input: str, history: List[str]) -> List[HallucinationFlag]:
    """Implied ongoing discussion in a conversation that has just started."""
    if len(history) > EARLY_CONVERSATION_TURNS:
        return []
    match = _first_match(FALSE_CONTINUITY_PATTERNS, response_text)
    if not match:
        return []
    return [HallucinationFlag(
        type="false-continuity",
        severity="high" if not history else "medium",
        confidence=0.9,
        description="False reference to ongoing discussion in a new conversation",
        affected_span=match.span(),
    )]


def detect_repetition(response_text: str, user_input: str, history: List[str]) -> List[HallucinationFlag]:
    """Identical sentences after normalization, or a known repetition template."""
    seen: Dict[str, Tuple[int, int]] = {}
    for sentence, start, end in _sentences_with_spans(response_text):
        key = _normalize_sentence(sentence)
        if len(key) < 5:
            continue
        if key in seen:
            return [HallucinationFlag(
                type="repetition",
                severity="high",
                confidence=0.9,
                description="Exact sentence repetition detected",
                affected_span=(start, end),
            )]
        seen[key] = (start, end)

    match = _first_match(REPETITION_PATTERNS, response_text)
    if match:
        return [HallucinationFlag(
            type="repetition",
            severity="high",
            confidence=0.85,
            description="Common repetition pattern detected",
            affected_span=match.span(),
        )]
    return []


def detect_token_corruption(response_text: str, user_input: str, history: List[str]) -> List[HallucinationFlag]:
    """Truncated-looking fragments: an ellipsis mid-sentence followed by a capital letter."""
    match = _first_match(TOKEN_CORRUPTION_PATTERNS, response_text)
    if not match:
        return []
    return [HallucinationFlag(
        type="token-corruption",
        severity="low",
        confidence=0.7,
        description="Cutoff thought indicating token-level corruption",
        affected_span=match.span(),
    )]


def detect_capability_claim(response_text: str, user_input: str, history: List[str]) -> List[HallucinationFlag]:
    """Claims to diagnose, prescribe or contact people on the user's behalf."""
    match = _first_match(CAPABILITY_PATTERNS, response_text)
    if not match:
        return []
    return [HallucinationFlag(
        type="capability-claim",
        severity="medium",
        confidence=0.8,
        description="Response claims a capability the assistant does not have",
        affected_span=match.span(),
    )]


class HallucinationGuard:
    """
    Runs the enabled detectors over a response.

    The unverified-claim detector is registered only when a store and an
    embedding service are supplied.
    """

    def __init__(self, store=None, embeddings=None, crisis_detector: Optional[CrisisDetector] = None,
                 knowledge_collection: str = KNOWLEDGE_COLLECTION,
                 claim_threshold: float = UNVERIFIED_CLAIM_THRESHOLD, logger=None):
        self.store = store
        self.embeddings = embeddings
        self.crisis_detector = crisis_detector or CrisisDetector()
        self.knowledge_collection = knowledge_collection
        self.claim_threshold = claim_threshold
        self.logger = logger or default_logger

        self._detectors: "OrderedDict[str, Callable]" = OrderedDict([
            ("false-memory", detect_false_memory),
            ("false-continuity", detect_false_continuity),
            ("repetition", detect_repetition),
            ("token-corruption", detect_token_corruption),
            ("capability-claim", detect_capability_claim),
            ("crisis-mismatch", self.detect_crisis_mismatch),
        ])
        if store is not None and embeddings is not None:
            self._detectors["unverified-claim"] = self.detect_unverified_claims
        self._disabled = set()

    @property
    def detector_names(self) -> List[str]:
        return list(self._detectors.keys())

    def enabled_detectors(self) -> List[str]:
        return [name for name in self._detectors if name not in self._disabled]

    def enable(self, name: str):
        if name not in self._detectors:
            raise KeyError(f"Unknown detector: {name}")
        self._disabled.discard(name)

    def disable(self, name: str):
        if name not in self._detectors:
            raise KeyError(f"Unknown detector: {name}")
        self._disabled.add(name)

    def scan(self, response_text: str, user_input: str = "", history: Optional[List[str]] = None) -> List[HallucinationFlag]:
        """
        Scan a response and return all flags raised by enabled detectors.

        Args:
            response_text: Candidate response
            user_input: Current user turn
            history: Prior turn texts, oldest first
        """
        history = list(history or [])
        flags: List[HallucinationFlag] = []
        for name in self.enabled_detectors():
            detector = self._detectors[name]
            try:
                found = detector(response_text or "", user_input or "", history)
            except Exception as e:
                self.logger.log_operation("verify.detector", "error", {"detector": name, "error": str(e)})
                continue
            for flag in found:
                self.logger.log_flag(flag.type, flag.severity, {"confidence": flag.confidence})
            flags.extend(found)
        return flags

    def has_critical(self, flags: List[HallucinationFlag]) -> bool:
        return has_critical(flags)

    def check(self, response_text: str, user_input: str = "", history: Optional[List[str]] = None) -> List[HallucinationFlag]:
        """
        Like scan(), but a critical flag is raised instead of returned.

        Raises:
            CriticalHallucinationFlag: carrying the critical flags
        """
        flags = self.scan(response_text, user_input, history)
        critical = [f for f in flags if f.severity == "critical"]
        if critical:
            raise CriticalHallucinationFlag(critical)
        return flags

    def detect_crisis_mismatch(self, response_text: str, user_input: str, history: List[str]) -> List[HallucinationFlag]:
        """The user turn carries a crisis signal but the response gives no safety resources."""
        analysis = self.crisis_detector.analyze(user_input)
        if not analysis.needs_resources or has_safety_resources(response_text):
            return []
        return [HallucinationFlag(
            type="crisis-mismatch",
            severity="critical",
            confidence=max(analysis.confidence, 0.8),
            description=f"Response omits safety resources for a {analysis.level}-level crisis signal",
        )]

    def detect_unverified_claims(self, response_text: str, user_input: str, history: List[str]) -> List[HallucinationFlag]:
        """Sentence-level claims whose nearest knowledge record scores below the threshold."""
        if not self.store.has_collection(self.knowledge_collection):
            return []
        if len(self.store.get_collection(self.knowledge_collection)) == 0:
            return []

        flags = []
        for sentence, start, end in _sentences_with_spans(response_text):
            claim = sentence.strip()
            if len(claim) <= 10 or not CLAIM_VERB_PATTERN.search(claim):
                continue
            vector = self.embeddings.embed(claim)
            hits = self.store.search(self.knowledge_collection, vector, limit=1, score_threshold=-1.0)
            if not hits or hits[0].score < self.claim_threshold:
                flags.append(HallucinationFlag(
                    type="unverified-claim",
                    severity="medium",
                    confidence=0.75,
                    description="Claim not verified by knowledge base",
                    affected_span=(start, end),
                ))
        return flags

    def health_check(self) -> bool:
        """Known-bad text must raise a false-memory flag."""
        try:
            flags = detect_false_memory("As you mentioned before, things are hard.", "", [])
            return len(flags) == 1
        except Exception:
            return False
