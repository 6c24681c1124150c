"""Exception hierarchy for the retrieval and verification core."""


class RagGuardError(Exception):
    """Base exception for all ragguard errors."""

    pass


class ConfigurationError(RagGuardError):
    """Exception raised due to configuration issues."""

    pass


class DimensionMismatch(RagGuardError):
    """Raised when a vector does not match its collection's dimensionality."""

    def __init__(self, collection: str, expected: int, actual: int):
        self.collection = collection
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Vector dimension {actual} does not match collection '{collection}' dimension {expected}"
        )


class CollectionNotFound(RagGuardError):
    """Raised when a read-only operation targets a collection that was never created."""

    pass


class RecordNotFound(RagGuardError):
    """Raised when an update targets a record id that is not in the collection."""

    pass


class DuplicateRecordId(RagGuardError):
    """Raised when an insert reuses an id already present in the collection."""

    pass


class EmbeddingModelUnavailable(RagGuardError):
    """Raised when the embedding model cannot be loaded or keeps failing."""

    pass


class RetrievalFailure(RagGuardError):
    """Exception raised during query expansion or search."""

    pass


class RerankFailure(RagGuardError):
    """Exception raised while scoring candidates; the reranker falls back to importance order."""

    pass


class CriticalHallucinationFlag(RagGuardError):
    """Raised by HallucinationGuard.check() when a response carries a critical flag."""

    def __init__(self, flags):
        self.flags = flags
        descriptions = ", ".join(f.description for f in flags)
        super().__init__(f"Response rejected by critical flags: {descriptions}")
