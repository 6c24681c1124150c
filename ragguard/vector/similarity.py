"""
Vector similarity helpers.
"""

import numpy as np


def cosine_similarity(a, b) -> float:
    """
    Cosine similarity of two vectors, clamped to [-1, 1].

    A zero vector, an empty vector or a length mismatch yields 0.0.
    """
    a = np.asarray(a, dtype=np.float64).reshape(-1)
    b = np.asarray(b, dtype=np.float64).reshape(-1)

    if a.shape[0] == 0 or a.shape != b.shape:
        return 0.0

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0 or not np.isfinite(norm_a) or not np.isfinite(norm_b):
        return 0.0

    score = float(np.dot(a, b) / (norm_a * norm_b))
    return max(-1.0, min(1.0, score))


def normalize(vector) -> np.ndarray:
    """Unit-normalize a vector; a zero vector is returned unchanged."""
    v = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = np.linalg.norm(v)
    if norm == 0:
        return v.copy()
    return (v / norm).astype(np.float32)


def cosine_scores(matrix: np.ndarray, query) -> np.ndarray:
    """
    Cosine similarity of every row in `matrix` against `query`.

    Rows with zero norm score 0. Returns a float64 array of length len(matrix).
    """
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float64)

    q = np.asarray(query, dtype=np.float64).reshape(-1)
    q_norm = np.linalg.norm(q)
    if q_norm == 0 or q.shape[0] != matrix.shape[1]:
        return np.zeros(matrix.shape[0], dtype=np.float64)

    m = matrix.astype(np.float64, copy=False)
    row_norms = np.linalg.norm(m, axis=1)
    dots = m @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(row_norms > 0, dots / (row_norms * q_norm), 0.0)
    return np.clip(scores, -1.0, 1.0)
