"""
Approximate nearest-neighbour index over one collection snapshot.

Wraps a faiss HNSW graph (inner product over unit vectors, i.e. cosine).
The index only proposes candidates; the collection rescores them exactly.
"""

from typing import List, Sequence, Tuple

import numpy as np

from ..core.config import ANN_EF_SEARCH, ANN_MAX_CONNECTIONS

EF_CONSTRUCTION = 200


class HNSWIndex:
    """HNSW graph built once from a snapshot of record ids and vectors."""

    def __init__(self, dimension: int, max_connections: int = ANN_MAX_CONNECTIONS,
                 ef_search: int = ANN_EF_SEARCH, ef_construction: int = EF_CONSTRUCTION):
        """
        Initialize an empty HNSW index.

        Args:
            dimension: Dimension of the vectors
            max_connections: Graph neighbours per node (faiss M)
            ef_search: Candidate list size at query time
            ef_construction: Candidate list size while building
        """
        try:
            import faiss
        except ImportError:
            raise ImportError("FAISS not installed. Please install faiss-cpu package.")

        self.faiss = faiss
        self.dimension = dimension
        self.max_connections = max_connections
        self.ef_search = ef_search
        self.ef_construction = ef_construction
        self.index = None
        self.ids: List[str] = []

    @property
    def size(self) -> int:
        return len(self.ids)

    def build(self, ids: Sequence[str], matrix: np.ndarray) -> None:
        """Build the graph from parallel ids and an (n, dimension) matrix."""
        if matrix.ndim != 2 or matrix.shape[1] != self.dimension:
            raise ValueError(
                f"Index matrix shape {matrix.shape} does not match dimension {self.dimension}"
            )
        if len(ids) != matrix.shape[0]:
            raise ValueError("ids and matrix rows must have the same length")

        vectors = np.array(matrix, dtype=np.float32, copy=True)
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        np.divide(vectors, norms, out=vectors, where=norms > 0)

        index = self.faiss.IndexHNSWFlat(self.dimension, self.max_connections,
                                         self.faiss.METRIC_INNER_PRODUCT)
        index.hnsw.efConstruction = self.ef_construction
        if len(ids):
            index.add(vectors)
        index.hnsw.efSearch = self.ef_search

        self.index = index
        self.ids = list(ids)

    def search(self, query_vector, k: int) -> List[Tuple[str, float]]:
        """Return up to k (record_id, approximate score) pairs, best first."""
        if self.index is None or not self.ids or k <= 0:
            return []

        query = np.asarray(query_vector, dtype=np.float32).reshape(1, -1)
        if query.shape[1] != self.dimension:
            raise ValueError(
                f"Query dimension {query.shape[1]} does not match index dimension {self.dimension}"
            )
        norm = np.linalg.norm(query)
        if norm == 0:
            return []
        query = query / norm

        self.index.hnsw.efSearch = max(self.ef_search, k)
        scores, positions = self.index.search(query, min(k, len(self.ids)))

        hits = []
        for position, score in zip(positions[0], scores[0]):
            if position < 0:
                continue
            hits.append((self.ids[int(position)], float(score)))
        return hits
