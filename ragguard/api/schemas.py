"""
Request and response models for the public service surface:
Ingest (add_content), Query (retrieve_and_verify) and Health.
"""

from pydantic import BaseModel, field_validator, ConfigDict
from typing import Optional, List, Dict, Any


class IngestRequest(BaseModel):
    """Content to chunk, embed and store."""
    text: str
    metadata: Optional[Dict[str, Any]] = None
    collection: Optional[str] = None

    @field_validator('text')
    @classmethod
    def text_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('text cannot be empty')
        return v

    @field_validator('collection')
    @classmethod
    def collection_must_not_be_blank(cls, v):
        if v is not None and not v.strip():
            raise ValueError('collection cannot be blank')
        return v


class IngestResponse(BaseModel):
    record_ids: List[str]
    collection: str
    chunks: int


class QueryRequest(BaseModel):
    """One user turn plus the prior conversation, oldest first."""
    user_input: str
    history: List[Any] = []
    session_id: Optional[str] = None

    @field_validator('user_input')
    @classmethod
    def user_input_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('user_input cannot be empty')
        return v

    @field_validator('history')
    @classmethod
    def history_entries_must_be_turns(cls, v):
        for entry in v:
            if isinstance(entry, str):
                continue
            if isinstance(entry, dict) and ('text' in entry or 'content' in entry):
                continue
            raise ValueError('history entries must be strings or {role, text} objects')
        return v


class FlagModel(BaseModel):
    """A hallucination flag as exposed to callers."""
    type: str
    severity: str
    confidence: float
    description: str
    affected_span: Optional[List[int]] = None

    @field_validator('severity')
    @classmethod
    def severity_must_be_valid(cls, v):
        valid_severities = ['low', 'medium', 'high', 'critical']
        if v not in valid_severities:
            raise ValueError(f'severity must be one of: {valid_severities}')
        return v

    @field_validator('confidence')
    @classmethod
    def confidence_in_unit_range(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError('confidence must be between 0 and 1')
        return v


class QueryResponse(BaseModel):
    """Verified reply for one turn."""
    model_config = ConfigDict(protected_namespaces=())

    text: str
    confidence: float
    flags: List[FlagModel] = []
    audit: List[str] = []
    crisis_detected: bool = False
    was_enhanced: bool = False
    processing_time_ms: float = 0.0

    @field_validator('confidence')
    @classmethod
    def confidence_in_unit_range(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError('confidence must be between 0 and 1')
        return v


class HealthResponse(BaseModel):
    """Overall health plus one boolean per pipeline stage."""
    healthy: bool
    per_stage: Dict[str, bool]
    version: str
    embedding_mode: str


class StatsResponse(BaseModel):
    embedding: Dict[str, Any]
    vector_store: Dict[str, Any]
    reranker: Dict[str, Any]
    pipeline: Dict[str, Any]
    safety: Dict[str, int]
