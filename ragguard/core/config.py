"""
Runtime configuration for the retrieval and verification core.
All values are read from the environment once at import time; the getter
functions re-read where a value must stay dynamic (tests flip them).
"""

import os

# Embedding configuration
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "sentence")  # sentence|hash
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "all-MiniLM-L6-v2")
EMBED_BACKUP_MODELS = [
    m.strip() for m in os.getenv(
        "EMBED_BACKUP_MODELS", "paraphrase-MiniLM-L6-v2,all-MiniLM-L12-v2"
    ).split(",") if m.strip()
]
EMBED_DIM = int(os.getenv("EMBED_DIM", "384"))
EMBED_MAX_RETRIES = int(os.getenv("EMBED_MAX_RETRIES", "3"))
EMBED_BACKOFF_BASE_SEC = float(os.getenv("EMBED_BACKOFF_BASE_SEC", "1.0"))
EMBED_TIMEOUT_SEC = float(os.getenv("EMBED_TIMEOUT_SEC", "10.0"))
EMBED_BATCH_SIZE = int(os.getenv("EMBED_BATCH_SIZE", "5"))
EMBED_CACHE_MAX_SIZE = int(os.getenv("EMBED_CACHE_MAX_SIZE", "1000"))
EMBED_CACHE_TTL_SEC = float(os.getenv("EMBED_CACHE_TTL_SEC", str(7 * 24 * 60 * 60)))  # 7 days

# Vector store configuration
ANN_ENABLED = os.getenv("ANN_ENABLED", "true").lower() == "true"
ANN_MIN_RECORDS = int(os.getenv("ANN_MIN_RECORDS", "100"))
ANN_REBUILD_THRESHOLD = int(os.getenv("ANN_REBUILD_THRESHOLD", "25"))
ANN_MAX_CONNECTIONS = int(os.getenv("ANN_MAX_CONNECTIONS", "16"))
ANN_EF_SEARCH = int(os.getenv("ANN_EF_SEARCH", "64"))
DEFAULT_COLLECTION = os.getenv("DEFAULT_COLLECTION", "roger_knowledge")
KNOWLEDGE_COLLECTION = os.getenv("KNOWLEDGE_COLLECTION", "facts")
SEARCH_TIMEOUT_SEC = float(os.getenv("SEARCH_TIMEOUT_SEC", "2.0"))

# Ingest chunking
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "512"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "64"))

# Retrieval configuration
RELEVANCE_FLOOR = float(os.getenv("RELEVANCE_FLOOR", "0.5"))
MAX_RESULTS = int(os.getenv("MAX_RESULTS", "5"))
SEMANTIC_WEIGHT = float(os.getenv("SEMANTIC_WEIGHT", "0.7"))
KEYWORD_WEIGHT = float(os.getenv("KEYWORD_WEIGHT", "0.3"))

# Reranker configuration
RERANK_SEMANTIC_WEIGHT = float(os.getenv("RERANK_SEMANTIC_WEIGHT", "0.6"))
RERANK_LEXICAL_WEIGHT = float(os.getenv("RERANK_LEXICAL_WEIGHT", "0.2"))
RERANK_RECENCY_WEIGHT = float(os.getenv("RERANK_RECENCY_WEIGHT", "0.1"))
RERANK_IMPORTANCE_WEIGHT = float(os.getenv("RERANK_IMPORTANCE_WEIGHT", "0.1"))
RERANK_CONTEXT_BOOST = float(os.getenv("RERANK_CONTEXT_BOOST", "1.2"))
RERANK_SCORE_THRESHOLD = float(os.getenv("RERANK_SCORE_THRESHOLD", "0.3"))
RERANK_TOP_K = int(os.getenv("RERANK_TOP_K", "5"))
RERANK_TIMEOUT_SEC = float(os.getenv("RERANK_TIMEOUT_SEC", "5.0"))

# Pipeline configuration
HISTORY_WINDOW = int(os.getenv("HISTORY_WINDOW", "10"))
UNVERIFIED_CLAIM_THRESHOLD = float(os.getenv("UNVERIFIED_CLAIM_THRESHOLD", "0.7"))

# Version string
VERSION = "1.0.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def is_ann_enabled():
    """Check if the approximate index may be used for large collections."""
    return os.getenv("ANN_ENABLED", "true").lower() == "true"


def get_embedding_provider(dimension: int = None):
    """Get the configured primary embedding provider."""
    provider = os.getenv("EMBED_PROVIDER", EMBED_PROVIDER)

    if provider == "hash":
        from ragguard.vector.embeddings import DeterministicHashEmbedding
        return DeterministicHashEmbedding(dimension or EMBED_DIM)

    from ragguard.vector.embeddings import SentenceTransformerEmbedding
    return SentenceTransformerEmbedding(EMBED_MODEL_NAME, backup_models=EMBED_BACKUP_MODELS)


def get_cache_settings():
    """Embedding cache bounds, re-read from the environment."""
    return {
        "max_size": int(os.getenv("EMBED_CACHE_MAX_SIZE", str(EMBED_CACHE_MAX_SIZE))),
        "ttl_seconds": float(os.getenv("EMBED_CACHE_TTL_SEC", str(EMBED_CACHE_TTL_SEC))),
    }


def get_reranker_weights():
    """Get the reranker feature weights as a dict."""
    return {
        "semantic": RERANK_SEMANTIC_WEIGHT,
        "lexical": RERANK_LEXICAL_WEIGHT,
        "recency": RERANK_RECENCY_WEIGHT,
        "importance": RERANK_IMPORTANCE_WEIGHT,
    }


def validate_embedding_config():
    """Validate embedding configuration and return any issues."""
    issues = []

    if EMBED_PROVIDER not in ["sentence", "hash"]:
        issues.append(f"Invalid EMBED_PROVIDER: {EMBED_PROVIDER}")

    if EMBED_DIM < 1:
        issues.append("EMBED_DIM must be >= 1")

    if EMBED_MAX_RETRIES < 1:
        issues.append("EMBED_MAX_RETRIES must be >= 1")

    if EMBED_BACKOFF_BASE_SEC < 0:
        issues.append("EMBED_BACKOFF_BASE_SEC must be >= 0")

    if EMBED_BATCH_SIZE < 1:
        issues.append("EMBED_BATCH_SIZE must be >= 1")

    if EMBED_CACHE_MAX_SIZE < 1:
        issues.append("EMBED_CACHE_MAX_SIZE must be >= 1")

    return issues


def validate_retrieval_config():
    """Validate retrieval and reranking configuration and return any issues."""
    issues = []

    if not 0.0 <= RELEVANCE_FLOOR <= 1.0:
        issues.append(f"RELEVANCE_FLOOR out of range: {RELEVANCE_FLOOR}")

    if MAX_RESULTS < 1:
        issues.append("MAX_RESULTS must be >= 1")

    if abs(SEMANTIC_WEIGHT + KEYWORD_WEIGHT - 1.0) > 1e-6:
        issues.append("SEMANTIC_WEIGHT + KEYWORD_WEIGHT must equal 1.0")

    weights = get_reranker_weights()
    if any(w < 0 for w in weights.values()):
        issues.append("Reranker weights must be non-negative")

    if RERANK_CONTEXT_BOOST < 1.0:
        issues.append("RERANK_CONTEXT_BOOST must be >= 1.0")

    if CHUNK_OVERLAP >= CHUNK_SIZE:
        issues.append("CHUNK_OVERLAP must be smaller than CHUNK_SIZE")

    return issues


def validate_config():
    """Validate the full configuration."""
    return validate_embedding_config() + validate_retrieval_config()
