"""
Error sanitization: generic user-facing messages, redacted server-side detail.

Design decisions:
- Users only ever see a message from GENERIC_MESSAGES, keyed by error code
- Exception text is redacted before it reaches a log line
- Patterns cover credentials, filesystem paths, network addresses,
  connection strings and stack frames

Usage:
    err = sanitize_error(exc, "GENERATION_ERROR")
    logger.error("Generation failed: %s", err.detail)
    return err.message
"""

from __future__ import annotations

import re
from dataclasses import dataclass

REDACTED = "[REDACTED]"

SENSITIVE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, flags)
    for p, flags in (
        # API keys and tokens
        (r"api[_-]?key[:=\s]*[^\s]+", re.IGNORECASE),
        (r"bearer\s+[^\s]+", re.IGNORECASE),
        (r"token[:=\s]*[^\s]+", re.IGNORECASE),
        (r"authorization[:=\s]*[^\s]+", re.IGNORECASE),
        # Credentials
        (r"password[:=\s]*[^\s]+", re.IGNORECASE),
        (r"secret[:=\s]*[^\s]+", re.IGNORECASE),
        (r"credential[:=\s]*[^\s]+", re.IGNORECASE),
        # Connection strings
        (r"mongodb(\+srv)?://[^\s]+", re.IGNORECASE),
        (r"postgres(ql)?://[^\s]+", re.IGNORECASE),
        (r"mysql://[^\s]+", re.IGNORECASE),
        (r"rediss?://[^\s]+", re.IGNORECASE),
        # Paths revealing system layout
        (r"/Users/[^\s]+", 0),
        (r"/home/[^\s]+", 0),
        (r"/var/[^\s]+", 0),
        (r"C:\\Users\\[^\s]+", re.IGNORECASE),
        # Network and people
        (r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b", 0),
        (r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}", 0),
        # Stack frames and environment lookups
        (r'File "[^"]+", line \d+', 0),
        (r"os\.environ\[[^\]]+\]", 0),
        (r"os\.getenv\([^)]*\)", 0),
    )
)

GENERIC_MESSAGES: dict[str, str] = {
    "VALIDATION_ERROR": "The request data is invalid. Please check your input and try again.",
    "INPUT_BLOCKED": "Your answers could not be processed. Please rephrase them and try again.",
    "PAYLOAD_TOO_LARGE": "The request is too large. Please shorten your answers.",
    "RATE_LIMIT_EXCEEDED": "Too many requests. Please wait a moment and try again.",
    "UNAUTHORIZED": "Authentication required. Please sign in to continue.",
    "GENERATION_ERROR": "Content generation failed. Please try again.",
    "SERVER_ERROR": "Something went wrong on our end. Please try again later.",
    "UNKNOWN_ERROR": "An unexpected error occurred. Please try again.",
}


@dataclass(frozen=True)
class SanitizedError:
    message: str
    code: str
    detail: str


def contains_sensitive_info(message: str) -> bool:
    return any(p.search(message or "") for p in SENSITIVE_PATTERNS)


def redact_sensitive_info(message: str) -> str:
    redacted = message or ""
    for pattern in SENSITIVE_PATTERNS:
        redacted = pattern.sub(REDACTED, redacted)
    return redacted


def get_generic_message(code: str) -> str:
    return GENERIC_MESSAGES.get(code, GENERIC_MESSAGES["UNKNOWN_ERROR"])


def sanitize_error(error: BaseException | str | None, default_code: str = "UNKNOWN_ERROR") -> SanitizedError:
    """
    Turn an exception into a safe (message, code, detail) triple.

    `message` is always generic; `detail` is the redacted original text,
    suitable for server-side logs only.
    """
    if error is None:
        return SanitizedError(get_generic_message(default_code), default_code, "")

    if isinstance(error, BaseException):
        original = f"{type(error).__name__}: {error}"
    else:
        original = str(error)

    return SanitizedError(
        message=get_generic_message(default_code),
        code=default_code if default_code in GENERIC_MESSAGES else "UNKNOWN_ERROR",
        detail=redact_sensitive_info(original),
    )
