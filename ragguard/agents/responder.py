"""
Response assembly seam.

The pipeline does not generate language. A ResponseAssembler turns the
reranked context into reply text; the default TemplateResponder only fills
static templates, picking among variants with a PRNG seeded per session so
a session's replies are reproducible.
"""

import hashlib
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from ..core.context import PipelineContext
from ..vector.types import RankedResult
from .safety import CrisisAnalysis, CrisisDetector

SAFE_DEFAULT_RESPONSE = (
    "I'm listening and want to understand what you're going through. "
    "Sometimes it helps to talk about what's most important to you right now."
)
SHORT_INPUT_RESPONSE = "I hear you. Could you tell me a bit more about what's on your mind?"
SHORT_INPUT_LENGTH = 20
MAX_CONTEXT_CHARS = 300


def fallback_response(user_input: str) -> str:
    """Static reply used when assembly is unavailable."""
    if len((user_input or "").strip()) < SHORT_INPUT_LENGTH:
        return SHORT_INPUT_RESPONSE
    return SAFE_DEFAULT_RESPONSE


@dataclass
class AssembledResponse:
    text: str
    confidence: float = 1.0
    used_context: bool = False


class ResponseAssembler(ABC):
    """Builds reply text from the turn context and reranked results."""

    @abstractmethod
    def assemble(self, context: PipelineContext, results: List[RankedResult],
                 crisis: Optional[CrisisAnalysis] = None) -> AssembledResponse:
        pass


class TemplateResponder(ResponseAssembler):
    """Fills static reply templates with the best reranked snippet."""

    OPENINGS = [
        "Thank you for sharing that with me.",
        "That sounds like a lot to carry.",
        "I appreciate you telling me about this.",
    ]
    CONTEXT_LEADS = [
        "Something that may be helpful to consider: {snippet}",
        "One thing that some people find useful: {snippet}",
    ]
    CLOSINGS = [
        "What feels most important to talk about right now?",
        "How does that sit with you?",
    ]

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed

    def _rng(self, context: PipelineContext) -> random.Random:
        if self.seed is not None:
            return random.Random(self.seed)
        key = (context.session_id or "") + "|" + str(len(context.history))
        return random.Random(int(hashlib.sha256(key.encode("utf-8")).hexdigest()[:16], 16))

    def assemble(self, context: PipelineContext, results: List[RankedResult],
                 crisis: Optional[CrisisAnalysis] = None) -> AssembledResponse:
        if not results:
            text = fallback_response(context.user_input)
            used_context = False
        else:
            rng = self._rng(context)
            snippet = results[0].content.strip()
            if len(snippet) > MAX_CONTEXT_CHARS:
                snippet = snippet[:MAX_CONTEXT_CHARS].rsplit(" ", 1)[0].rstrip(",;:") + "."
            text = " ".join([
                rng.choice(self.OPENINGS),
                rng.choice(self.CONTEXT_LEADS).format(snippet=snippet),
                rng.choice(self.CLOSINGS),
            ])
            used_context = True

        if crisis is not None and crisis.needs_resources:
            text = text + " " + CrisisDetector.SAFETY_RESPONSES["medium"]

        return AssembledResponse(text=text, confidence=1.0, used_context=used_context)
