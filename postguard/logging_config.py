"""
Logging configuration for the gateway.

Design decisions:
- Format: Timestamp | Level | Logger | Message
- stdout output: compatible with container logging (CLI passes stderr
  so its JSON report stays clean)
- Level from LOG_LEVEL (name or number), INFO by default
- Idempotent setup: safe to call from every entry point

SECURITY:
- Application logs never contain answers, prompts or generated posts
- Security events go to the separate audit logger (audit_log.py)

Usage:
    from postguard.logging_config import setup_logging
    setup_logging()  # Call once at startup
"""

from __future__ import annotations

import logging
import sys
from typing import TextIO

from .settings import settings

# Third-party loggers capped at WARNING
_QUIET_LOGGERS = ("redis", "tenacity")


def resolve_level(level: int | str | None) -> int:
    """Accept a logging level as int, name ("debug") or numeric string."""
    if level is None:
        level = settings.log_level
    if isinstance(level, int):
        return level
    name = level.strip().upper()
    if name.isdigit():
        return int(name)
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: int | str | None = None, stream: TextIO | None = None) -> None:
    """
    Configure the root logger once.
    Won't add duplicate handlers if already configured.
    """
    root = logging.getLogger()
    if root.handlers:
        return

    logging.basicConfig(
        level=resolve_level(level),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        handlers=[logging.StreamHandler(stream or sys.stdout)],
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
