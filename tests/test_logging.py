"""
Tests for structured logging, payload sanitization and audit sinks.
"""

from unittest.mock import MagicMock

import pytest

from ragguard.util.logging import LoggingAuditSink, MemoryAuditSink, StructuredLogger, sanitize_payload


@pytest.fixture
def structured():
    s = StructuredLogger("ragguard.test")
    s.logger = MagicMock()
    return s


def test_status_selects_level(structured):
    structured.log_operation("embed", "failed", {"error": "boom"})
    structured.log_operation("search", "fallback")
    structured.log_operation("insert", "success")

    structured.logger.error.assert_called_once()
    structured.logger.warning.assert_called_once()
    structured.logger.info.assert_called_once()
    assert "Operation: embed, Status: failed" in structured.logger.error.call_args[0][0]


def test_vector_operation_carries_collection(structured):
    structured.log_vector_operation("insert", "docs", "r1", details={"dimension": 3})

    message = structured.logger.info.call_args[0][0]
    assert "vector.insert" in message
    assert "'collection': 'docs'" in message
    assert "'record_id': 'r1'" in message


def test_critical_flag_logs_warning(structured):
    structured.log_flag("crisis-mismatch", "critical")
    structured.log_flag("repetition", "high")

    structured.logger.warning.assert_called_once()
    structured.logger.info.assert_called_once()


def test_log_stage_records_duration(structured):
    structured.log_stage("retrieve", "success", 1.0, 1.25)

    assert "'duration_ms': 250.0" in structured.logger.info.call_args[0][0]


def test_sanitize_payload_redacts_and_truncates():
    payload = {
        "user_input": "something private",
        "session_id": "s1",
        "nested": {"text": "also private", "note": "x" * 150},
        "items": [{"content": "hidden"}],
    }

    sanitized = sanitize_payload(payload)

    assert sanitized["user_input"] == "[REDACTED]"
    assert sanitized["session_id"] == "s1"
    assert sanitized["nested"]["text"] == "[REDACTED]"
    assert sanitized["nested"]["note"] == "x" * 100 + "..."
    assert sanitized["items"] == [{"content": "[REDACTED]"}]
    assert sanitize_payload(payload, reveal_sensitive=True)["user_input"] == "something private"


def test_memory_sink_is_bounded():
    sink = MemoryAuditSink(max_records=3)
    for i in range(5):
        sink.record({"turn": i})

    records = sink.records()
    assert [r["turn"] for r in records] == [2, 3, 4]
    assert all("recorded_at" in r for r in records)

    sink.clear()
    assert sink.records() == []


def test_logging_sink_sanitizes():
    structured = MagicMock()
    sink = LoggingAuditSink(structured)

    sink.record({"session_id": "s1", "user_input": "private"})

    structured.log_operation.assert_called_once_with(
        "audit.turn", "audit", {"session_id": "s1", "user_input": "[REDACTED]"}
    )


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
