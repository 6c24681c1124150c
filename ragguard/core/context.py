"""
Per-turn pipeline context.

A PipelineContext is created for one user turn, carries the bounded
conversation history, the stage confidences and the audit trail through the
pipeline, and is discarded once the turn completes. It is never persisted.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import HISTORY_WINDOW


@dataclass
class HistoryTurn:
    """One conversation turn as seen by the pipeline."""

    role: str
    """Speaker, either "user" or "assistant" """

    text: str
    """Raw turn text"""


def normalize_history(history, window: int = HISTORY_WINDOW) -> List[HistoryTurn]:
    """
    Coerce caller-supplied history into HistoryTurn objects and keep the last `window` turns.

    Accepts HistoryTurn instances, plain strings (treated as user turns) and
    dicts with "role"/"text" (or "content") keys.
    """
    turns = []
    for item in history or []:
        if isinstance(item, HistoryTurn):
            turns.append(item)
        elif isinstance(item, str):
            turns.append(HistoryTurn(role="user", text=item))
        elif isinstance(item, dict):
            text = item.get("text", item.get("content", ""))
            turns.append(HistoryTurn(role=item.get("role", "user"), text=str(text)))
        else:
            turns.append(HistoryTurn(role="user", text=str(item)))

    if window is not None and window >= 0:
        turns = turns[-window:] if window else []
    return turns


@dataclass
class PipelineContext:
    """Aggregate state for a single user turn."""

    user_input: str
    history: List[HistoryTurn] = field(default_factory=list)
    session_id: Optional[str] = None
    stage_confidences: Dict[str, float] = field(default_factory=dict)
    audit: List[str] = field(default_factory=list)
    scratch: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def for_turn(cls, user_input: str, history=None, session_id: Optional[str] = None,
                 window: int = HISTORY_WINDOW) -> "PipelineContext":
        return cls(
            user_input=user_input or "",
            history=normalize_history(history, window),
            session_id=session_id,
        )

    def record_stage(self, name: str, confidence: Optional[float] = None):
        """Append a stage name to the audit trail and optionally its confidence."""
        self.audit.append(name)
        if confidence is not None:
            self.stage_confidences[name] = max(0.0, min(1.0, float(confidence)))

    def history_texts(self) -> List[str]:
        return [turn.text for turn in self.history]

    def user_history_texts(self) -> List[str]:
        return [turn.text for turn in self.history if turn.role == "user"]

    def set(self, key: str, value: Any):
        self.scratch[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        return self.scratch.get(key, default)

    def debug_info(self) -> Dict[str, Any]:
        """Summary of the context for logging; carries no user text."""
        return {
            "session_id": self.session_id,
            "history_turns": len(self.history),
            "audit": list(self.audit),
            "stage_confidences": dict(self.stage_confidences),
            "scratch_keys": list(self.scratch.keys()),
            "created_at": self.created_at.isoformat(),
        }
