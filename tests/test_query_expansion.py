"""
Tests for query expansion: terms, synonyms, concepts and history context.
"""

from unittest.mock import MagicMock

import numpy as np
import pytest

from ragguard.retrieval.query_expansion import (
    MENTAL_HEALTH_SYNONYMS,
    QueryExpander,
    context_terms_from_history,
    detect_concepts,
    extract_terms,
    find_synonyms,
)


def test_extract_terms_filters_stop_words_and_short_tokens():
    assert extract_terms("I am feeling very anxious about work") == ["feeling", "anxious", "work"]


def test_extract_terms_drops_numbers():
    assert extract_terms("called 1234 times yesterday") == ["called", "times", "yesterday"]


def test_find_synonyms_exact_and_prefix():
    assert find_synonyms("anxiety") == MENTAL_HEALTH_SYNONYMS["anxiety"]
    assert find_synonyms("sadness") == MENTAL_HEALTH_SYNONYMS["sad"]
    assert find_synonyms("breathing") == []


def test_detect_concepts():
    assert "anxiety" in detect_concepts("I had a panic attack at work")
    assert "grief" in detect_concepts("My dad passed away last month")
    assert detect_concepts("What time is it") == []


def test_context_terms_newest_first():
    history = ["I lost my job yesterday", "My partner left me"]
    assert context_terms_from_history(history) == ["partner", "left", "lost", "yesterday"]


def test_expand_combines_sources():
    expansion = QueryExpander().expand("anxiety breathing", history=["My partner left me"])

    assert expansion.terms == ["anxiety", "breathing"]
    assert expansion.synonym_mappings["anxiety"] == MENTAL_HEALTH_SYNONYMS["anxiety"]
    assert expansion.concepts == ["anxiety"]
    assert expansion.context_terms == ["partner", "left"]
    assert expansion.expanded_terms == ["anxiety", "breathing", "worry", "nervousness", "partner", "left"]
    assert expansion.expanded_query == "anxiety breathing worry nervousness partner left"


def test_expand_without_history():
    expansion = QueryExpander().expand("anxiety", history=["My partner left me"], include_history=False)
    assert expansion.context_terms == []
    assert "partner" not in expansion.expanded_terms


def test_empty_query_expands_to_nothing():
    expansion = QueryExpander().expand("")
    assert expansion.terms == []
    assert expansion.concepts == []
    assert expansion.expanded_query == ""


def test_embedder_limits_extra_terms():
    """With an embedder only the most similar extra terms are kept."""
    embedder = MagicMock()
    embedder.embed.return_value = np.array([1.0, 0.0])
    embedder.embed_batch.side_effect = lambda texts: [
        np.array([1.0, 0.0]) if t == "worry" else np.array([0.0, 1.0]) for t in texts
    ]

    expansion = QueryExpander(embedder=embedder, max_expanded_terms=1).expand("anxiety")

    assert expansion.expanded_terms == ["anxiety", "worry"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
