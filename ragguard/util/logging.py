"""
Structured logging and audit sinks for the retrieval and verification core.

Every component reports through a StructuredLogger as
"Operation: <name>, Status: <status>, Details: {...}". The status picks the
level: failures log at ERROR, degraded paths (fallback, timeout, rejected)
at WARNING, everything else at INFO.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.config import debug_enabled

ERROR_STATUSES = ("failed", "error")
WARNING_STATUSES = ("degraded", "fallback", "timeout", "rejected", "cancelled")

SENSITIVE_FIELDS = ["user_input", "text", "content", "history"]
MAX_LOGGED_STRING = 100


class StructuredLogger:
    """Structured logger for vector, embedding, pipeline and verification operations."""

    def __init__(self, name: str = "ragguard"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG if debug_enabled() else logging.INFO)

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            ))
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log one operation outcome; the status selects the level."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message = f"{message}, Details: {details}"

        if status in ERROR_STATUSES:
            self.logger.error(message)
        elif status in WARNING_STATUSES:
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_vector_operation(self, operation: str, collection: str, record_id: str = None,
                             details: Dict[str, Any] = None, status: str = "success"):
        """Log a vector store operation against one collection."""
        payload = {"collection": collection}
        if record_id is not None:
            payload["record_id"] = record_id
        payload.update(details or {})
        self.log_operation(f"vector.{operation}", status, payload)

    def log_embedding_event(self, event: str, status: str = "success", details: Dict[str, Any] = None):
        """Log an embedding service event (model load, fallback switch, timeout)."""
        self.log_operation(f"embedding.{event}", status, details)

    def log_stage(self, stage: str, status: str, start_time: float, end_time: float,
                  details: Dict[str, Any] = None):
        """Log one pipeline stage with its wall-clock duration."""
        payload = {"duration_ms": round((end_time - start_time) * 1000, 2)}
        payload.update(details or {})
        self.log_operation(f"pipeline.{stage}", status, payload)

    def log_flag(self, flag_type: str, severity: str, details: Dict[str, Any] = None):
        """Log a hallucination flag raised against a response."""
        payload = {"flag_type": flag_type, "severity": severity}
        payload.update(details or {})
        self.log_operation("verify.flag", "rejected" if severity == "critical" else "detected", payload)

    def warning(self, message: str) -> None:
        self.logger.warning(message)


class AuditSink:
    """Receives one audit record per completed turn."""

    def record(self, event: Dict[str, Any]) -> None:
        raise NotImplementedError


class LoggingAuditSink(AuditSink):
    """Audit sink that writes sanitized turn records through a StructuredLogger."""

    def __init__(self, structured_logger: Optional[StructuredLogger] = None):
        self.structured_logger = structured_logger or logger

    def record(self, event: Dict[str, Any]) -> None:
        self.structured_logger.log_operation("audit.turn", "audit", sanitize_payload(event))


class MemoryAuditSink(AuditSink):
    """Audit sink that keeps records in memory, bounded to max_records."""

    def __init__(self, max_records: int = 1000):
        self.max_records = max_records
        self._records: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def record(self, event: Dict[str, Any]) -> None:
        entry = dict(event)
        entry.setdefault("recorded_at", datetime.now().isoformat())
        with self._lock:
            self._records.append(entry)
            overflow = len(self._records) - self.max_records
            if overflow > 0:
                del self._records[:overflow]

    def records(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


# Global logger instance
logger = StructuredLogger()


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None,
                     max_length: int = MAX_LOGGED_STRING) -> Any:
    """
    Redact user text from an audit payload and truncate long strings.

    Dicts and lists are walked recursively; values under a sensitive key
    become "[REDACTED]" unless reveal_sensitive is set.
    """
    fields = SENSITIVE_FIELDS if sensitive_fields is None else sensitive_fields

    if isinstance(payload, dict):
        return {
            key: (sanitize_payload(value, reveal_sensitive, fields, max_length)
                  if reveal_sensitive or key not in fields else "[REDACTED]")
            for key, value in payload.items()
        }
    if isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, fields, max_length) for item in payload]
    if isinstance(payload, str) and len(payload) > max_length:
        return payload[:max_length] + "..."
    return payload
