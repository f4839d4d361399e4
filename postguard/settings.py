"""
Centralized configuration for the postguard gateway.

Design decisions:
- Frozen dataclass: immutable after creation, prevents accidental modification
- Environment variables: 12-factor app compliance, easy deployment configuration
- Sensible defaults: works out of the box for development

Key parameters explained:

Rate limiting (fixed window):
- general tier 10 requests/60s: cheap endpoints (insight extraction, status)
- generate tier 5 requests/60s: every call costs a full LLM generation
- redis_url empty: in-memory store (single process only)

Sanitization:
- max_answer_len=5000: matches the wire schema limit for interview answers
- block_threshold=3: more than 3 [FILTERED] tokens rejects the whole field
  (carried over unchanged; not known to be empirically tuned)

Quality gate:
- severity buckets 0 / 1-2 / 3-5 / 6+ filler matches
- auto_repair_low_quality=True: Medium/High outputs are auto-repaired once

Request guard:
- max_body_bytes=500KB: rejects oversized payloads before validation
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"


def _env_bool(name: str, default: bool) -> bool:
    """Parse boolean from environment variable."""
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    """Parse integer from environment variable."""
    v = os.getenv(name)
    if v is None:
        return default
    return int(v)


def _env_path(name: str, default: Path) -> Path:
    v = os.getenv(name)
    if not v:
        return default
    return Path(v)


@dataclass(frozen=True)
class Settings:
    """
    Gateway settings.

    All settings can be overridden via environment variables.

    Attributes:
        general_max_requests: Requests allowed per window on the general tier
        general_window_seconds: Window length of the general tier
        generate_max_requests: Requests allowed per window on the generate tier
        generate_window_seconds: Window length of the generate tier
        redis_url: Counter store URL; empty selects the in-memory store
        redis_key_prefix: Namespace for counter keys in Redis
        max_answer_len: Maximum length of a sanitized interview answer
        max_signature_len: Maximum length of a signature phrase
        max_post_len: Maximum length of a post body
        max_body_bytes: Maximum accepted request body size
        block_threshold: Sentinel count above which input is rejected
        severity_low_max: Highest match count still rated Low
        severity_medium_max: Highest match count still rated Medium
        auto_repair_low_quality: Auto-repair outputs rated Medium or worse
        log_level: Root log level name or number
        audit_log_path: JSON-lines file for security audit events
    """

    # Rate limiting
    general_max_requests: int = _env_int("RATE_LIMIT_GENERAL_MAX_REQUESTS", 10)
    general_window_seconds: int = _env_int("RATE_LIMIT_GENERAL_WINDOW_SECONDS", 60)
    generate_max_requests: int = _env_int("RATE_LIMIT_GENERATE_MAX_REQUESTS", 5)
    generate_window_seconds: int = _env_int("RATE_LIMIT_GENERATE_WINDOW_SECONDS", 60)

    # Counter store
    redis_url: str = os.getenv("REDIS_URL", "")
    redis_key_prefix: str = os.getenv("REDIS_KEY_PREFIX", "postguard_ratelimit")

    # Length limits
    max_answer_len: int = _env_int("MAX_ANSWER_LEN", 5000)
    max_signature_len: int = _env_int("MAX_SIGNATURE_LEN", 200)
    max_post_len: int = _env_int("MAX_POST_LEN", 10000)
    max_body_bytes: int = _env_int("MAX_BODY_BYTES", 500 * 1024)

    # Sanitizer
    block_threshold: int = _env_int("SANITIZER_BLOCK_THRESHOLD", 3)

    # Quality gate
    severity_low_max: int = _env_int("QUALITY_SEVERITY_LOW_MAX", 2)
    severity_medium_max: int = _env_int("QUALITY_SEVERITY_MEDIUM_MAX", 5)
    auto_repair_low_quality: bool = _env_bool("QUALITY_AUTO_REPAIR", True)

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Audit
    audit_log_path: Path = _env_path("AUDIT_LOG_PATH", DATA_DIR / "audit.jsonl")


settings = Settings()
