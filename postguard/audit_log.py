"""
Security audit logging with strict allowlist policy.

CRITICAL: This module enforces a strict allowlist policy for logging.
We NEVER log any content that could contain user input.

Allowlist (what we log):
- request_id: Unique identifier for request tracing
- timestamp: When the event occurred
- identity_hash: Truncated SHA-256 of the rate-limit key or user id
- field_name: Name of the sanitized field (e.g. "q2"), never its value
- rule_ids: Identifiers of the rules that fired
- tier: Rate-limit tier
- severity / match_count: Quality gate classification
- retry_after / latency_ms: Numeric values
- event_type / error_code: Controlled enums and codes

Blocklist (NEVER log):
- interview answers or any sanitized / raw field value
- matched injection text
- prompts or generated posts
- raw user ids (hash them via hash_identity)

Design decisions:
- Separate audit logger from application logger
- Structured JSON format for machine parsing
- File rotation to prevent unbounded growth
- Explicit function interface to prevent accidental content logging
- Emission never raises: a broken audit sink must not fail a request
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Literal

from .settings import settings

logger = logging.getLogger(__name__)

EventType = Literal[
    "injection", "blocked", "rate_limited", "quality", "served", "error"
]


@dataclass(frozen=True)
class AuditEvent:
    """
    Structured audit event with allowlist-only fields.

    All fields are either identifiers, numeric values, or controlled enums.
    No free-text content is allowed.
    """
    event_type: EventType
    request_id: str
    timestamp: str
    identity_hash: str = ""
    field_name: str = ""
    rule_ids: list[str] = field(default_factory=list)
    tier: str = ""
    severity: str = ""
    match_count: int = 0
    retry_after: int = 0
    latency_ms: int = 0
    error_code: str = ""

    def to_json(self) -> str:
        """Serialize to JSON line."""
        return json.dumps(asdict(self), ensure_ascii=False)


def _get_audit_logger() -> logging.Logger:
    """
    Get or create the audit logger with file rotation.

    Separate from application logging to ensure audit events
    are captured even if app logging is reconfigured.
    """
    audit = logging.getLogger("audit")

    if audit.handlers:
        return audit

    audit.setLevel(logging.INFO)
    audit.propagate = False  # Don't send to root logger

    path = settings.audit_log_path
    path.parent.mkdir(parents=True, exist_ok=True)

    # Rotating file handler: 10MB max, keep 5 backups
    handler = RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit.addHandler(handler)

    return audit


def generate_request_id() -> str:
    """Generate a unique request ID for tracing."""
    return uuid.uuid4().hex[:16]


def utcnow_iso() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def hash_identity(identity: str) -> str:
    """Stable, non-reversible short identifier for a user id or rate-limit key."""
    if not identity:
        return ""
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()[:16]


def _emit(event: AuditEvent) -> None:
    try:
        _get_audit_logger().info(event.to_json())
    except Exception:
        logger.warning("Audit event dropped", extra={"error_code": "AUDIT_WRITE_ERROR"})


def log_injection(
    request_id: str,
    identity: str,
    field_name: str,
    rule_id: str,
) -> None:
    """
    Log one injection-rule hit.

    Note: We deliberately do NOT accept the matched text.
    """
    _emit(
        AuditEvent(
            event_type="injection",
            request_id=request_id,
            timestamp=utcnow_iso(),
            identity_hash=hash_identity(identity),
            field_name=field_name,
            rule_ids=[rule_id],
        )
    )


def log_blocked(
    request_id: str,
    identity: str,
    field_name: str,
    rule_ids: list[str],
) -> None:
    """Log a field rejected for carrying too many injection patterns."""
    _emit(
        AuditEvent(
            event_type="blocked",
            request_id=request_id,
            timestamp=utcnow_iso(),
            identity_hash=hash_identity(identity),
            field_name=field_name,
            rule_ids=rule_ids,
            error_code="INPUT_BLOCKED",
        )
    )


def log_rate_limited(
    request_id: str,
    identity: str,
    tier: str,
    retry_after: int,
) -> None:
    _emit(
        AuditEvent(
            event_type="rate_limited",
            request_id=request_id,
            timestamp=utcnow_iso(),
            identity_hash=hash_identity(identity),
            tier=tier,
            retry_after=retry_after,
            error_code="RATE_LIMIT_EXCEEDED",
        )
    )


def log_quality(
    request_id: str,
    identity: str,
    severity: str,
    match_count: int,
) -> None:
    """Log a generated text rated Medium or worse by the quality gate."""
    _emit(
        AuditEvent(
            event_type="quality",
            request_id=request_id,
            timestamp=utcnow_iso(),
            identity_hash=hash_identity(identity),
            severity=severity,
            match_count=match_count,
        )
    )


def log_served(
    request_id: str,
    identity: str,
    tier: str,
    latency_ms: int,
    severity: str = "",
) -> None:
    _emit(
        AuditEvent(
            event_type="served",
            request_id=request_id,
            timestamp=utcnow_iso(),
            identity_hash=hash_identity(identity),
            tier=tier,
            latency_ms=latency_ms,
            severity=severity,
        )
    )


def log_error(
    request_id: str,
    identity: str,
    error_code: str,
) -> None:
    """
    Log an error event.

    Note: We log error_code, not error message (which could contain user input).
    """
    _emit(
        AuditEvent(
            event_type="error",
            request_id=request_id,
            timestamp=utcnow_iso(),
            identity_hash=hash_identity(identity),
            error_code=error_code,
        )
    )


class RequestTimer:
    """Context manager for timing requests."""

    def __init__(self):
        self.start_time: float = 0
        self.elapsed_ms: int = 0

    def __enter__(self) -> RequestTimer:
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args) -> None:
        self.elapsed_ms = int((time.perf_counter() - self.start_time) * 1000)
