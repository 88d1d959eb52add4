"""
Tests for structured logging and payload sanitization.
"""

import logging

from recall.util.logging import StructuredLogger, sanitize_payload


def test_sensitive_fields_are_redacted():
    payload = {"user_id": "u1", "content": "my diary", "nested": {"api_key": "sk-secret"}}

    sanitized = sanitize_payload(payload)

    assert sanitized["user_id"] == "u1"
    assert sanitized["content"] == "[REDACTED]"
    assert sanitized["nested"]["api_key"] == "[REDACTED]"


def test_reveal_sensitive_keeps_values():
    assert sanitize_payload({"content": "visible"}, reveal_sensitive=True) == {"content": "visible"}


def test_long_strings_are_truncated():
    sanitized = sanitize_payload({"error": "x" * 150})

    assert sanitized["error"] == "x" * 100 + "..."


def test_pipeline_stage_levels(caplog):
    structured = StructuredLogger("recall.test")

    with caplog.at_level(logging.INFO, logger="recall.test"):
        structured.log_pipeline_stage("hyde", "skipped", "u1", {"reason": "timeout"})
        structured.log_pipeline_stage("embedding", "success", "u1")

    levels = [record.levelno for record in caplog.records]
    assert levels == [logging.WARNING, logging.INFO]
    assert "pipeline.hyde" in caplog.records[0].getMessage()
    assert "'reason': 'timeout'" in caplog.records[0].getMessage()
