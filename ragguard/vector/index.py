"""
In-memory vector store: named collections of records with exact cosine
search, keyword search and an optional HNSW index for large collections.

Every collection guards its records with its own re-entrant lock, so a
reader never observes a half-inserted record. Callers only ever receive
copies of stored records.
"""

import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

import numpy as np

from ..core.config import (
    ANN_MIN_RECORDS,
    ANN_REBUILD_THRESHOLD,
    EMBED_DIM,
    SEARCH_TIMEOUT_SEC,
    is_ann_enabled,
)
from ..core.errors import CollectionNotFound, DimensionMismatch, DuplicateRecordId, RecordNotFound
from ..core.timeouts import DeadlineExceeded, run_with_timeout
from ..util.logging import logger as default_logger
from .ann_index import HNSWIndex
from .similarity import cosine_scores
from .types import Record, SearchResult, now_ms


class IVectorStore(ABC):
    """Abstract interface for vector storage operations."""

    @abstractmethod
    def insert(self, collection: str, record: Record) -> None:
        """Add a single record to a collection."""
        pass

    @abstractmethod
    def search(self, collection: str, query_vector: np.ndarray, limit: int = 10,
               score_threshold: float = 0.0, **kwargs) -> List[SearchResult]:
        """Search for similar vectors and return ranked results."""
        pass

    @abstractmethod
    def keyword_search(self, collection: str, terms: List[str], limit: int = 10) -> List[SearchResult]:
        """Search record text for the given terms."""
        pass

    @abstractmethod
    def delete(self, collection: str, record_id: str) -> bool:
        """Delete a record by ID."""
        pass

    @abstractmethod
    def clear(self, collection: Optional[str] = None) -> None:
        """Clear one collection or all of them."""
        pass


def _matches_filter(metadata: Dict[str, Any], metadata_filter: Optional[Dict[str, Any]]) -> bool:
    if not metadata_filter:
        return True
    for key, expected in metadata_filter.items():
        if key not in metadata or metadata[key] != expected:
            return False
    return True


class Collection:
    """Ordered set of records sharing one vector dimension."""

    def __init__(self, name: str, dimension: int):
        if dimension < 1:
            raise ValueError("dimension must be >= 1")
        self.name = name
        self.dimension = dimension
        self._records: "OrderedDict[str, Record]" = OrderedDict()
        self._order: Dict[str, int] = {}
        self._versions: Dict[str, int] = {}
        self._next_order = 0
        self._mutation_seq = 0
        self._lock = threading.RLock()

        self._matrix: Optional[np.ndarray] = None
        self._matrix_ids: List[str] = []

        self._ann: Optional[HNSWIndex] = None
        self._ann_seq = 0
        self._unindexed: set = set()
        self._deleted_since_build = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _check_dimension(self, vector: np.ndarray):
        if vector.shape[0] != self.dimension:
            raise DimensionMismatch(self.name, self.dimension, int(vector.shape[0]))

    def _touch(self, record_id: str):
        # Caller holds the lock.
        self._mutation_seq += 1
        self._versions[record_id] = self._mutation_seq
        self._matrix = None
        if self._ann is not None:
            self._unindexed.add(record_id)

    def insert(self, record: Record) -> None:
        stored = record.copy()
        self._check_dimension(stored.vector)
        with self._lock:
            if stored.id in self._records:
                raise DuplicateRecordId(f"Record '{stored.id}' already exists in collection '{self.name}'")
            self._records[stored.id] = stored
            self._order[stored.id] = self._next_order
            self._next_order += 1
            self._touch(stored.id)

    def update(self, record_id: str, text: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None,
               vector=None) -> Record:
        with self._lock:
            current = self._records.get(record_id)
            if current is None:
                raise RecordNotFound(f"Record '{record_id}' not found in collection '{self.name}'")

            updated = current.copy()
            if vector is not None:
                updated.vector = np.asarray(vector, dtype=np.float32).reshape(-1)
                self._check_dimension(updated.vector)
            if text is not None:
                updated.text = text
            if metadata is not None:
                updated.metadata = dict(metadata)
            updated.timestamp = max(now_ms(), current.timestamp + 1)

            self._records[record_id] = updated
            self._touch(record_id)
            return updated.copy()

    def delete(self, record_id: str) -> bool:
        with self._lock:
            if record_id not in self._records:
                return False
            del self._records[record_id]
            del self._order[record_id]
            self._versions.pop(record_id, None)
            self._unindexed.discard(record_id)
            self._mutation_seq += 1
            self._matrix = None
            if self._ann is not None:
                self._deleted_since_build += 1
            return True

    def get(self, record_id: str) -> Optional[Record]:
        with self._lock:
            record = self._records.get(record_id)
            return record.copy() if record is not None else None

    def all_records(self) -> List[Record]:
        with self._lock:
            return [r.copy() for r in self._records.values()]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._order.clear()
            self._versions.clear()
            self._unindexed.clear()
            self._mutation_seq += 1
            self._matrix = None
            self._ann = None
            self._deleted_since_build = 0

    @property
    def dirty_count(self) -> int:
        with self._lock:
            return len(self._unindexed) + self._deleted_since_build

    @property
    def indexed(self) -> bool:
        with self._lock:
            return self._ann is not None

    def _ensure_matrix(self):
        # Caller holds the lock.
        if self._matrix is None:
            self._matrix_ids = list(self._records.keys())
            if self._matrix_ids:
                self._matrix = np.vstack([self._records[i].vector for i in self._matrix_ids])
            else:
                self._matrix = np.zeros((0, self.dimension), dtype=np.float32)
        return self._matrix, self._matrix_ids

    def _rank(self, scored, limit: int) -> List[SearchResult]:
        # Caller holds the lock. Ties keep insertion order.
        scored.sort(key=lambda item: (-item[1], self._order[item[0]]))
        return [
            SearchResult(record=self._records[rid].copy(), score=score, collection=self.name)
            for rid, score in scored[:limit]
        ]

    def exact_search(self, query: np.ndarray, limit: int, score_threshold: float,
                     metadata_filter: Optional[Dict[str, Any]] = None) -> List[SearchResult]:
        self._check_dimension(query)
        with self._lock:
            matrix, ids = self._ensure_matrix()
            scores = cosine_scores(matrix, query)
            scored = [
                (rid, float(score)) for rid, score in zip(ids, scores)
                if score >= score_threshold and _matches_filter(self._records[rid].metadata, metadata_filter)
            ]
            return self._rank(scored, limit)

    def rebuild_index(self, max_connections: Optional[int] = None) -> None:
        """Rebuild the HNSW graph from a snapshot; writes may continue meanwhile."""
        with self._lock:
            matrix, ids = self._ensure_matrix()
            matrix = matrix.copy()
            ids = list(ids)
            snapshot_seq = self._mutation_seq

        kwargs = {"max_connections": max_connections} if max_connections else {}
        index = HNSWIndex(self.dimension, **kwargs)
        index.build(ids, matrix)

        with self._lock:
            self._ann = index
            self._ann_seq = snapshot_seq
            self._unindexed = {rid for rid, seq in self._versions.items() if seq > snapshot_seq}
            self._deleted_since_build = 0

    def approximate_search(self, query: np.ndarray, limit: int, score_threshold: float,
                           rebuild_threshold: int) -> List[SearchResult]:
        """Search through the HNSW index, rescoring its candidates exactly."""
        self._check_dimension(query)
        with self._lock:
            needs_build = self._ann is None or self.dirty_count > rebuild_threshold
        if needs_build:
            self.rebuild_index()

        with self._lock:
            index = self._ann
            pending = set(self._unindexed)

        # Over-fetch so exact rescoring can reorder the graph's candidates.
        proposals = index.search(query, max(limit * 4, limit + 10))
        candidate_ids = {rid for rid, _ in proposals} | pending

        with self._lock:
            live = [rid for rid in candidate_ids if rid in self._records]
            if not live:
                return []
            matrix = np.vstack([self._records[rid].vector for rid in live])
            scores = cosine_scores(matrix, query)
            scored = [(rid, float(s)) for rid, s in zip(live, scores) if s >= score_threshold]
            return self._rank(scored, limit)

    def keyword_search(self, terms: List[str], limit: int) -> List[SearchResult]:
        needles = []
        for term in terms or []:
            t = (term or "").strip().lower()
            if t and t not in needles:
                needles.append(t)
        if not needles:
            return []

        with self._lock:
            scored = []
            for rid, record in self._records.items():
                haystack = record.text.lower()
                matched = sum(1 for t in needles if t in haystack)
                if matched:
                    scored.append((rid, matched / len(needles)))
            return self._rank(scored, limit)

    def describe(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "records": len(self._records),
                "dimension": self.dimension,
                "indexed": self._ann is not None,
                "dirty": len(self._unindexed) + self._deleted_since_build,
            }


class VectorStore(IVectorStore):
    """Named collections with exact and approximate cosine search."""

    def __init__(self, default_dimension: int = EMBED_DIM, ann_enabled: Optional[bool] = None,
                 ann_min_records: int = ANN_MIN_RECORDS, rebuild_threshold: int = ANN_REBUILD_THRESHOLD,
                 search_timeout: Optional[float] = SEARCH_TIMEOUT_SEC, logger=None):
        """
        Initialize the store.

        Args:
            default_dimension: Dimension given to lazily created collections
            ann_enabled: Allow the HNSW index; None reads ANN_ENABLED
            ann_min_records: Collections smaller than this always use exact search
            rebuild_threshold: Dirty records tolerated before the index is rebuilt
            search_timeout: Deadline for approximate search before exact fallback
            logger: StructuredLogger to report through
        """
        self.default_dimension = default_dimension
        self.ann_enabled = is_ann_enabled() if ann_enabled is None else ann_enabled
        self.ann_min_records = ann_min_records
        self.rebuild_threshold = rebuild_threshold
        self.search_timeout = search_timeout
        self.logger = logger or default_logger
        self._collections: Dict[str, Collection] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="ragguard-search")

    def create_collection(self, name: str, dimension: Optional[int] = None) -> Collection:
        """Create a collection, or return the existing one if its dimension matches."""
        dimension = dimension or self.default_dimension
        with self._lock:
            existing = self._collections.get(name)
            if existing is not None:
                if existing.dimension != dimension:
                    raise DimensionMismatch(name, existing.dimension, dimension)
                return existing
            collection = Collection(name, dimension)
            self._collections[name] = collection

        self.logger.log_vector_operation("create_collection", name, details={"dimension": dimension})
        return collection

    def get_collection(self, name: str) -> Collection:
        with self._lock:
            collection = self._collections.get(name)
        if collection is None:
            raise CollectionNotFound(f"Collection '{name}' does not exist")
        return collection

    def has_collection(self, name: str) -> bool:
        with self._lock:
            return name in self._collections

    def collection_names(self) -> List[str]:
        with self._lock:
            return list(self._collections.keys())

    def _lookup(self, name: str) -> Optional[Collection]:
        with self._lock:
            return self._collections.get(name)

    def _get_or_create(self, name: str) -> Collection:
        existing = self._lookup(name)
        if existing is not None:
            return existing
        try:
            return self.create_collection(name)
        except DimensionMismatch:
            # Created concurrently with another dimension.
            return self.get_collection(name)

    def insert(self, collection: str, record: Record) -> None:
        """Insert one record; a dimension mismatch leaves the collection unchanged."""
        target = self._get_or_create(collection)
        try:
            target.insert(record)
        except DimensionMismatch as e:
            self.logger.log_vector_operation("insert", collection, record.id, status="rejected",
                                             details={"expected": e.expected, "actual": e.actual})
            raise
        self.logger.log_vector_operation("insert", collection, record.id)

    def insert_many(self, collection: str, records: List[Record]) -> Dict[str, List]:
        """Insert records one by one; each failure is reported and does not stop the rest."""
        inserted, failed = [], []
        target = self._get_or_create(collection)
        for record in records:
            try:
                target.insert(record)
                inserted.append(record.id)
            except (DimensionMismatch, DuplicateRecordId) as e:
                failed.append((record.id, str(e)))

        status = "success" if not failed else "degraded"
        self.logger.log_vector_operation("insert_many", collection, status=status,
                                         details={"inserted": len(inserted), "failed": len(failed)})
        return {"inserted": inserted, "failed": failed}

    def update(self, collection: str, record_id: str, text: Optional[str] = None,
               metadata: Optional[Dict[str, Any]] = None, vector=None) -> Record:
        """Explicit update path; bumps the record timestamp."""
        record = self.get_collection(collection).update(record_id, text=text, metadata=metadata, vector=vector)
        self.logger.log_vector_operation("update", collection, record_id)
        return record

    def get(self, collection: str, record_id: str) -> Optional[Record]:
        target = self._lookup(collection)
        return target.get(record_id) if target is not None else None

    def all_records(self, collection: str) -> List[Record]:
        target = self._lookup(collection)
        return target.all_records() if target is not None else []

    def search(self, collection: str, query_vector, limit: int = 10, score_threshold: float = 0.0,
               metadata_filter: Optional[Dict[str, Any]] = None, use_index: bool = True,
               timeout: Optional[float] = None) -> List[SearchResult]:
        """
        Cosine-similarity search.

        Results at or above score_threshold, best first, ties by insertion
        order. Collections below ann_min_records, filtered searches and any
        index failure or deadline miss use exact search.
        """
        target = self._lookup(collection)
        if target is None or limit <= 0:
            return []

        query = np.asarray(query_vector, dtype=np.float32).reshape(-1)
        if query.shape[0] != target.dimension:
            raise DimensionMismatch(collection, target.dimension, int(query.shape[0]))

        use_ann = (use_index and self.ann_enabled and not metadata_filter
                   and len(target) >= self.ann_min_records)
        if use_ann:
            deadline = timeout if timeout is not None else self.search_timeout
            try:
                results = run_with_timeout(self._executor, target.approximate_search, deadline,
                                           query, limit, score_threshold, self.rebuild_threshold,
                                           label="ann_search")
                self.logger.log_vector_operation("search", collection, details={"method": "ann",
                                                                                 "results": len(results)})
                return results
            except DeadlineExceeded as e:
                self.logger.log_vector_operation("search", collection, status="fallback",
                                                 details={"reason": "timeout", "timeout": e.timeout})
            except Exception as e:
                self.logger.log_vector_operation("search", collection, status="fallback",
                                                 details={"reason": "index_error", "error": str(e)})

        results = target.exact_search(query, limit, score_threshold, metadata_filter)
        self.logger.log_vector_operation("search", collection, details={"method": "exact",
                                                                         "results": len(results)})
        return results

    def keyword_search(self, collection: str, terms: List[str], limit: int = 10) -> List[SearchResult]:
        """Case-insensitive substring match; score is the fraction of terms matched."""
        target = self._lookup(collection)
        if target is None or limit <= 0:
            return []
        return target.keyword_search(terms, limit)

    def delete(self, collection: str, record_id: str) -> bool:
        target = self._lookup(collection)
        if target is None:
            return False
        deleted = target.delete(record_id)
        if deleted:
            self.logger.log_vector_operation("delete", collection, record_id)
        return deleted

    def rebuild_index(self, collection: str) -> None:
        """Force an HNSW rebuild for a collection."""
        self.get_collection(collection).rebuild_index()
        self.logger.log_vector_operation("rebuild_index", collection)

    def clear(self, collection: Optional[str] = None) -> None:
        if collection is None:
            with self._lock:
                targets = list(self._collections.values())
        else:
            target = self._lookup(collection)
            targets = [target] if target is not None else []

        for target in targets:
            target.clear()
        self.logger.log_vector_operation("clear", collection or "*")

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            collections = dict(self._collections)
        per_collection = {name: c.describe() for name, c in collections.items()}
        return {
            "collections": len(per_collection),
            "total_records": sum(c["records"] for c in per_collection.values()),
            "per_collection": per_collection,
        }

    def health_check(self) -> bool:
        """Round-trip a test vector through a scratch collection."""
        scratch = Collection("__health__", 2)
        try:
            scratch.insert(Record(id="health", vector=np.array([1.0, 0.0]), text="health"))
            hits = scratch.exact_search(np.array([1.0, 0.0], dtype=np.float32), 1, 0.0)
            return len(hits) == 1 and abs(hits[0].score - 1.0) < 1e-6
        except Exception as e:
            self.logger.log_vector_operation("health_check", "__health__", status="failed",
                                             details={"error": str(e)})
            return False

    def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)
