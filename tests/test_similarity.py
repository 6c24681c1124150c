"""
Tests for cosine similarity helpers.
"""

import numpy as np
import pytest

from ragguard.vector.similarity import cosine_similarity, cosine_scores, normalize


def test_self_similarity_is_one():
    """A vector compared with itself scores 1.0."""
    v = np.array([0.3, -1.2, 4.0, 0.01])
    assert cosine_similarity(v, v) == pytest.approx(1.0, abs=1e-9)


def test_zero_vector_scores_zero():
    """Similarity with a zero vector is 0, not NaN."""
    assert cosine_similarity([0.0, 0.0, 0.0], [1.0, 2.0, 3.0]) == 0.0
    assert cosine_similarity([1.0, 2.0, 3.0], [0.0, 0.0, 0.0]) == 0.0


def test_bounds_hold_for_random_pairs():
    """Similarity always lies in [-1, 1]."""
    rng = np.random.default_rng(7)
    for _ in range(200):
        a = rng.normal(size=16)
        b = rng.normal(size=16)
        score = cosine_similarity(a, b)
        assert -1.0 <= score <= 1.0


def test_opposite_and_orthogonal_vectors():
    assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)


def test_length_mismatch_and_empty_score_zero():
    """Mismatched or empty inputs are treated as unrelated."""
    assert cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0]) == 0.0
    assert cosine_similarity([], []) == 0.0


def test_normalize_leaves_zero_vector_unchanged():
    zero = normalize([0.0, 0.0])
    assert zero.tolist() == [0.0, 0.0]

    unit = normalize([3.0, 4.0])
    assert np.linalg.norm(unit) == pytest.approx(1.0, abs=1e-6)


def test_cosine_scores_rows():
    """Matrix scoring matches pairwise scoring; zero rows score 0."""
    matrix = np.array([[1.0, 0.0], [0.0, 0.0], [1.0, 1.0]], dtype=np.float32)
    scores = cosine_scores(matrix, [1.0, 0.0])

    assert scores[0] == pytest.approx(1.0)
    assert scores[1] == 0.0
    assert scores[2] == pytest.approx(1 / np.sqrt(2), abs=1e-6)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
