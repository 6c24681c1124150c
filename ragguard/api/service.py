"""
Service facade: Ingest, Query and Health over one set of pipeline components.

RetrievalService wires a VectorStore, EmbeddingService, RetrievalOrchestrator,
Reranker, HallucinationGuard, CrisisDetector and PipelineOrchestrator
together. Components can be injected for tests; otherwise they are built
from ragguard.core.config.
"""

import threading
import time
import uuid
from typing import Any, Dict, List, Optional

from ..agents.hallucination import HallucinationGuard
from ..agents.orchestrator import PipelineOrchestrator
from ..agents.responder import ResponseAssembler
from ..agents.safety import CrisisDetector
from ..core.config import DEFAULT_COLLECTION, EMBED_DIM, VERSION, validate_config
from ..core.errors import ConfigurationError
from ..retrieval.orchestrator import RetrievalOptions, RetrievalOrchestrator
from ..retrieval.reranker import Reranker
from ..util.logging import AuditSink, logger as default_logger
from ..vector.chunking import chunk_text
from ..vector.embeddings import EmbeddingService
from ..vector.index import VectorStore
from ..vector.types import Record
from .schemas import (
    FlagModel,
    HealthResponse,
    IngestRequest,
    IngestResponse,
    QueryRequest,
    QueryResponse,
    StatsResponse,
)


class RetrievalService:
    """
    Public entry point for ingesting content and answering user turns.

    Usage:
        with RetrievalService() as service:
            service.add_content("Grounding exercises can ease panic.")
            reply = service.retrieve_and_verify("I feel panicky", [], "session-1")
    """

    def __init__(self, embeddings: Optional[EmbeddingService] = None, store: Optional[VectorStore] = None,
                 reranker: Optional[Reranker] = None, crisis_detector: Optional[CrisisDetector] = None,
                 assembler: Optional[ResponseAssembler] = None, audit_sink: Optional[AuditSink] = None,
                 retrieval_options: Optional[RetrievalOptions] = None,
                 default_collection: str = DEFAULT_COLLECTION, strict_config: bool = False, logger=None):
        self.logger = logger or default_logger

        issues = validate_config()
        if issues:
            if strict_config:
                raise ConfigurationError("; ".join(issues))
            self.logger.warning(f"Configuration issues: {issues}")

        self.embeddings = embeddings or EmbeddingService(logger=self.logger)
        self.store = store or VectorStore(default_dimension=self.embeddings.dimension or EMBED_DIM,
                                          logger=self.logger)
        self.crisis_detector = crisis_detector or CrisisDetector()
        self.retriever = RetrievalOrchestrator(self.store, self.embeddings,
                                               default_options=retrieval_options, logger=self.logger)
        self.reranker = reranker or Reranker(self.embeddings, logger=self.logger)
        self.guard = HallucinationGuard(store=self.store, embeddings=self.embeddings,
                                        crisis_detector=self.crisis_detector, logger=self.logger)
        self.pipeline = PipelineOrchestrator(
            self.retriever, self.reranker, self.guard,
            crisis_detector=self.crisis_detector,
            assembler=assembler,
            audit_sink=audit_sink,
            retrieval_options=retrieval_options,
            logger=self.logger,
        )
        self.default_collection = default_collection
        self._running = False
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> "RetrievalService":
        """Create the default collection and mark the service running."""
        with self._lock:
            if self._running:
                return self
            self.store.create_collection(self.default_collection, self.embeddings.dimension)
            self._running = True
        self.logger.log_operation("service.start", "success", {
            "collection": self.default_collection,
            "embedding_mode": self.embeddings.mode.value,
        })
        return self

    def stop(self):
        """Release worker pools. Stored records are not persisted."""
        with self._lock:
            if not self._running:
                return
            self._running = False
        self.reranker.close()
        self.store.close()
        self.embeddings.close()
        self.logger.log_operation("service.stop", "success", {})

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False

    def add_content(self, text: str, metadata: Optional[Dict[str, Any]] = None,
                    collection: Optional[str] = None) -> List[str]:
        """
        Chunk, embed and store a piece of content.

        Args:
            text: Content to ingest
            metadata: Copied onto every chunk record
            collection: Target collection; the default collection if omitted

        Returns:
            Ids of the inserted chunk records

        Raises:
            pydantic.ValidationError: empty text or blank collection name
        """
        request = IngestRequest(text=text, metadata=metadata, collection=collection)
        target = request.collection or self.default_collection
        start = time.time()

        chunks = chunk_text(request.text)
        if not chunks:
            self.logger.log_operation("service.add_content", "degraded", {
                "collection": target, "reason": "no chunks",
            })
            return []

        vectors = self.embeddings.embed_batch(chunks)
        base_metadata = dict(request.metadata or {})
        records = []
        for index, (chunk, vector) in enumerate(zip(chunks, vectors)):
            chunk_metadata = dict(base_metadata)
            chunk_metadata["chunk_index"] = index
            chunk_metadata["chunk_count"] = len(chunks)
            records.append(Record(id=str(uuid.uuid4()), vector=vector, text=chunk, metadata=chunk_metadata))

        outcome = self.store.insert_many(target, records)
        status = "success" if not outcome["failed"] else "degraded"
        self.logger.log_operation("service.add_content", status, {
            "collection": target,
            "chunks": len(chunks),
            "inserted": len(outcome["inserted"]),
            "failed": len(outcome["failed"]),
            "duration_ms": round((time.time() - start) * 1000, 2),
        })
        return list(outcome["inserted"])

    def retrieve_and_verify(self, user_input: str, history=None, session_id: Optional[str] = None,
                            cancel_token=None) -> QueryResponse:
        """Run one user turn through the pipeline. Never raises."""
        result = self.pipeline.process_turn(user_input, history or [], session_id, cancel_token)
        return QueryResponse(
            text=result.text,
            confidence=max(0.0, min(1.0, result.confidence)),
            flags=[FlagModel(**flag.to_dict()) for flag in result.flags],
            audit=result.audit,
            crisis_detected=result.crisis_detected,
            was_enhanced=result.was_enhanced,
            processing_time_ms=result.processing_time_ms,
        )

    def ingest(self, request: IngestRequest) -> IngestResponse:
        """Ingest entry point for callers holding a validated request model."""
        collection = request.collection or self.default_collection
        record_ids = self.add_content(request.text, request.metadata, collection)
        return IngestResponse(record_ids=record_ids, collection=collection, chunks=len(record_ids))

    def query(self, request: QueryRequest) -> QueryResponse:
        """Query entry point for callers holding a validated request model."""
        return self.retrieve_and_verify(request.user_input, request.history, request.session_id)

    def health_check(self) -> HealthResponse:
        """Run every component's own health check."""
        per_stage = {
            "embedding": self._check_stage("embedding", self.embeddings.health_check),
            "vector_store": self._check_stage("vector_store", self.store.health_check),
            "retrieval": self._check_stage("retrieval", self.retriever.health_check),
            "reranker": self._check_stage("reranker", self.reranker.health_check),
            "hallucination_guard": self._check_stage("hallucination_guard", self.guard.health_check),
            "safety": self._check_stage("safety", self.crisis_detector.health_check),
        }
        healthy = all(per_stage.values())
        self.logger.log_operation("service.health_check", "success" if healthy else "degraded", per_stage)
        return HealthResponse(
            healthy=healthy,
            per_stage=per_stage,
            version=VERSION,
            embedding_mode=self.embeddings.mode.value,
        )

    def _check_stage(self, name: str, check) -> bool:
        try:
            return bool(check())
        except Exception as e:
            self.logger.log_operation("service.health_check", "failed", {"stage": name, "error": str(e)})
            return False

    def stats(self) -> StatsResponse:
        return StatsResponse(
            embedding=self.embeddings.get_stats(),
            vector_store=self.store.stats(),
            reranker=self.reranker.get_stats(),
            pipeline=self.pipeline.get_stats(),
            safety=self.crisis_detector.get_stats(),
        )
