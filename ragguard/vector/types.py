"""
Vector layer data types: stored records, search hits, retrieval candidates
and reranked results.
"""

import copy
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class Record:
    """A stored piece of content with its embedding."""

    id: str
    """Unique identifier within a collection"""

    vector: np.ndarray
    """Embedding of the text, float32, length equal to the collection dimension"""

    text: str
    """Content the vector was computed from"""

    metadata: Dict[str, Any] = field(default_factory=dict)
    """Caller-supplied metadata (importance, source, tags...)"""

    timestamp: int = field(default_factory=now_ms)
    """Insert or last explicit update time in epoch milliseconds"""

    def __post_init__(self):
        self.vector = np.asarray(self.vector, dtype=np.float32).reshape(-1)
        if self.metadata is None:
            self.metadata = {}

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])

    def copy(self) -> "Record":
        """Deep copy so callers never hold references into the store."""
        return Record(
            id=self.id,
            vector=self.vector.copy(),
            text=self.text,
            metadata=copy.deepcopy(self.metadata),
            timestamp=self.timestamp,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vector": self.vector.tolist(),
            "text": self.text,
            "metadata": copy.deepcopy(self.metadata),
            "timestamp": self.timestamp,
        }


@dataclass
class SearchResult:
    """A single hit from VectorStore.search or keyword_search."""

    record: Record
    score: float
    collection: Optional[str] = None


class SearchMode(Enum):
    """Which searches the retrieval orchestrator runs."""

    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


@dataclass
class RetrievalCandidate:
    """A merged retrieval hit before reranking."""

    record: Record
    semantic_score: float = 0.0
    lexical_score: float = 0.0
    collection: Optional[str] = None
    combined_score: float = 0.0
    order: int = 0
    """Position in the retrieval output, used as the rerank tie-breaker"""

    @property
    def importance(self) -> float:
        value = self.record.metadata.get("importance", 0.5)
        try:
            return max(0.0, min(1.0, float(value)))
        except (TypeError, ValueError):
            return 0.5


@dataclass
class FeatureScores:
    """Per-signal scores computed by the reranker, each in [0, 1]."""

    semantic: float = 0.0
    lexical: float = 0.0
    recency: float = 0.5
    importance: float = 0.5
    contextual: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "semantic": self.semantic,
            "lexical": self.lexical,
            "recency": self.recency,
            "importance": self.importance,
            "contextual": self.contextual,
        }


@dataclass
class RankedResult:
    """Reranker output for one candidate."""

    content: str
    final_score: float
    feature_scores: FeatureScores
    record: Optional[Record] = None
    collection: Optional[str] = None
    original_rank: int = 0
    new_rank: int = 0
