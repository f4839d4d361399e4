"""
Tests for security audit logging with allowlist policy.
"""

import dataclasses
import json
import logging
from unittest.mock import patch

from postguard.audit_log import (
    AuditEvent,
    RequestTimer,
    generate_request_id,
    hash_identity,
    log_blocked,
    log_error,
    log_injection,
    log_quality,
    log_rate_limited,
    log_served,
    utcnow_iso,
)


def test_audit_event_serialization():
    """Test that audit events serialize to valid JSON."""
    event = AuditEvent(
        event_type="injection",
        request_id="abc123",
        timestamp="2026-01-10T12:00:00Z",
        field_name="q2",
        rule_ids=["jailbreak"],
    )

    parsed = json.loads(event.to_json())

    assert parsed["event_type"] == "injection"
    assert parsed["request_id"] == "abc123"
    assert parsed["field_name"] == "q2"
    assert parsed["rule_ids"] == ["jailbreak"]


def test_audit_event_no_content_fields():
    """Verify that AuditEvent has no fields for sensitive content."""
    field_names = {f.name for f in dataclasses.fields(AuditEvent)}

    forbidden_fields = {
        "answer",
        "answers",
        "prompt",
        "post",
        "content",
        "text",
        "matched_text",
        "message",
        "user_id",
    }

    assert field_names.isdisjoint(forbidden_fields), (
        f"Audit event contains forbidden fields: {field_names & forbidden_fields}"
    )


def test_generate_request_id():
    """Test request ID generation."""
    id1 = generate_request_id()
    id2 = generate_request_id()

    assert len(id1) == 16
    assert id1 != id2


def test_utcnow_iso_format():
    """Test timestamp format."""
    ts = utcnow_iso()

    assert "T" in ts
    assert ts.endswith("+00:00") or ts.endswith("Z")


def test_hash_identity():
    """Identities are hashed to a stable 16-char digest."""
    assert hash_identity("user-1") == hash_identity("user-1")
    assert hash_identity("user-1") != hash_identity("user-2")
    assert len(hash_identity("user-1")) == 16
    assert "user-1" not in hash_identity("user-1")
    assert hash_identity("") == ""


def test_request_timer():
    """Test request timing context manager."""
    import time

    with RequestTimer() as timer:
        time.sleep(0.01)

    assert timer.elapsed_ms >= 10
    assert timer.elapsed_ms < 1000


def test_log_injection_structure(captured_audit):
    """log_injection records the rule id and field, never text."""
    log_injection(request_id="req1", identity="user-1", field_name="q3", rule_id="act_as")

    (event,) = captured_audit.events
    assert event["event_type"] == "injection"
    assert event["field_name"] == "q3"
    assert event["rule_ids"] == ["act_as"]
    assert event["identity_hash"] == hash_identity("user-1")
    assert "user-1" not in captured_audit.raw[0]


def test_log_blocked_structure(captured_audit):
    log_blocked("req1", "user-1", "q2", ["ignore_instructions", "jailbreak"])

    (event,) = captured_audit.events
    assert event["event_type"] == "blocked"
    assert event["error_code"] == "INPUT_BLOCKED"
    assert event["rule_ids"] == ["ignore_instructions", "jailbreak"]


def test_log_rate_limited_structure(captured_audit):
    log_rate_limited("req1", "rate:user:abc:generate", "generate", 42)

    (event,) = captured_audit.events
    assert event["event_type"] == "rate_limited"
    assert event["tier"] == "generate"
    assert event["retry_after"] == 42


def test_log_quality_and_served(captured_audit):
    log_quality("req1", "u", "high", 7)
    log_served("req1", "u", "generate", 120, severity="high")

    quality, served = captured_audit.events
    assert quality["severity"] == "high"
    assert quality["match_count"] == 7
    assert served["event_type"] == "served"
    assert served["latency_ms"] == 120


def test_log_error_no_message(captured_audit):
    """Test that log_error uses error_code, not error message."""
    log_error(request_id="req123", identity="u", error_code="GENERATION_ERROR")

    (event,) = captured_audit.events
    assert event["error_code"] == "GENERATION_ERROR"
    assert "message" not in event
    assert "error_message" not in event


def test_audit_failure_never_raises(caplog):
    """A broken audit sink is reported on the app log, not raised."""
    with patch("postguard.audit_log._get_audit_logger") as mock_logger:
        mock_logger.return_value.info.side_effect = OSError("disk full")
        with caplog.at_level(logging.WARNING, logger="postguard.audit_log"):
            log_error("req1", "u", "SERVER_ERROR")

    assert "Audit event dropped" in caplog.text


def test_audit_file_is_written():
    """The real audit logger writes JSON lines to the configured path."""
    from postguard.settings import settings

    log_error("file-check", "u", "UNKNOWN_ERROR")
    for handler in logging.getLogger("audit").handlers:
        handler.flush()

    lines = settings.audit_log_path.read_text(encoding="utf-8").splitlines()
    assert any(json.loads(line)["request_id"] == "file-check" for line in lines)
