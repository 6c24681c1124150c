"""
Tests for environment-driven configuration.
"""

import pytest

from ragguard.core import config
from ragguard.vector.embeddings import DeterministicHashEmbedding, EmbeddingService


def test_hash_provider_from_environment(monkeypatch):
    monkeypatch.setenv("EMBED_PROVIDER", "hash")

    provider = config.get_embedding_provider(32)

    assert isinstance(provider, DeterministicHashEmbedding)
    assert provider.dimension == 32


def test_defaults_validate_cleanly():
    assert config.validate_config() == []


def test_invalid_provider_is_reported(monkeypatch):
    monkeypatch.setattr(config, "EMBED_PROVIDER", "carrier-pigeon")

    issues = config.validate_embedding_config()

    assert any("EMBED_PROVIDER" in issue for issue in issues)


def test_weight_sum_is_checked(monkeypatch):
    monkeypatch.setattr(config, "SEMANTIC_WEIGHT", 0.9)

    assert "SEMANTIC_WEIGHT + KEYWORD_WEIGHT must equal 1.0" in config.validate_retrieval_config()


def test_overlap_must_be_smaller_than_chunk(monkeypatch):
    monkeypatch.setattr(config, "CHUNK_OVERLAP", config.CHUNK_SIZE)

    assert "CHUNK_OVERLAP must be smaller than CHUNK_SIZE" in config.validate_retrieval_config()


def test_debug_flag(monkeypatch):
    monkeypatch.setenv("DEBUG", "true")
    assert config.debug_enabled() is True

    monkeypatch.setenv("DEBUG", "false")
    assert config.debug_enabled() is False


def test_ann_flag(monkeypatch):
    monkeypatch.setenv("ANN_ENABLED", "false")
    assert config.is_ann_enabled() is False


def test_reranker_weights_default():
    assert config.get_reranker_weights() == {
        "semantic": 0.6, "lexical": 0.2, "recency": 0.1, "importance": 0.1,
    }


def test_cache_bounds_from_environment(monkeypatch):
    monkeypatch.setenv("EMBED_CACHE_MAX_SIZE", "7")
    monkeypatch.setenv("EMBED_CACHE_TTL_SEC", "60")

    assert config.get_cache_settings() == {"max_size": 7, "ttl_seconds": 60.0}

    service = EmbeddingService(provider=DeterministicHashEmbedding(16), dimension=16, default_timeout=None)
    assert service.cache.max_size == 7
    assert service.cache.ttl_seconds == 60.0
    service.close()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
