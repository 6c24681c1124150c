"""
Vector layer: records, collections, similarity search and embeddings.
In-process only; nothing here is persisted across restarts.
"""

# Package initialization for vector module
from .index import IVectorStore, Collection, VectorStore
from .types import Record, SearchResult, SearchMode, RetrievalCandidate, RankedResult, FeatureScores
from .embeddings import (IEmbeddingProvider, DeterministicHashEmbedding, SentenceTransformerEmbedding,
                         EmbeddingService, EmbeddingMode)
from .cache import EmbeddingCache, EmbeddingCacheEntry
from .chunking import chunk_text

__all__ = [
    'IVectorStore',
    'Collection',
    'VectorStore',
    'Record',
    'SearchResult',
    'SearchMode',
    'RetrievalCandidate',
    'RankedResult',
    'FeatureScores',
    'IEmbeddingProvider',
    'DeterministicHashEmbedding',
    'SentenceTransformerEmbedding',
    'EmbeddingService',
    'EmbeddingMode',
    'EmbeddingCache',
    'EmbeddingCacheEntry',
    'chunk_text',
]
