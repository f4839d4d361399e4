"""
Shared test fixtures.

- Environment setup: the audit log goes to a temp directory and tier limits
  are pinned, before any postguard import reads settings
- FakeClock: manually advanced clock for rate-limit windows
- captured_audit: collects audit JSON lines instead of writing them
"""

from __future__ import annotations

import copy
import json
import os
import tempfile
from unittest.mock import patch

import pytest

# ---------------------------------------------------------------------------
# Environment setup -- must run before any application imports
# ---------------------------------------------------------------------------

_AUDIT_DIR = tempfile.mkdtemp(prefix="postguard-audit-")
os.environ["AUDIT_LOG_PATH"] = os.path.join(_AUDIT_DIR, "audit.jsonl")
os.environ["RATE_LIMIT_GENERAL_MAX_REQUESTS"] = "10"
os.environ["RATE_LIMIT_GENERATE_MAX_REQUESTS"] = "5"
os.environ["RATE_LIMIT_GENERAL_WINDOW_SECONDS"] = "60"
os.environ["RATE_LIMIT_GENERATE_WINDOW_SECONDS"] = "60"
os.environ.pop("REDIS_URL", None)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def captured_audit():
    """Audit events emitted during the test, parsed from JSON."""
    lines: list[str] = []
    with patch("postguard.audit_log._get_audit_logger") as mock_logger:
        mock_logger.return_value.info = lambda x: lines.append(x)
        yield _ParsedLines(lines)


class _ParsedLines:
    def __init__(self, lines: list[str]):
        self._lines = lines

    @property
    def raw(self) -> list[str]:
        return list(self._lines)

    @property
    def events(self) -> list[dict]:
        return [json.loads(line) for line in self._lines]

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e["event_type"] == event_type]


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

VALID_GENERATE_PAYLOAD = {
    "interview": {
        "id": "int-1",
        "flowType": "experience",
        "voiceModeId": "storyteller",
        "answers": {
            "q1": "We migrated billing in March.",
            "q2": "Two customers were double charged.",
            "q3": "We refunded within an hour.",
            "q4": "Support wrote to every account.",
            "q5": "Churn did not move.",
        },
        "platform": "linkedin",
        "targetAudience": "Founders",
        "extractedInsight": "Fast refunds buy trust.",
    },
    "voiceProfile": {
        "id": "vp-1",
        "name": "Default",
        "signaturePhrases": ["Ship it.", "Small bets."],
    },
}


@pytest.fixture()
def payload():
    """A fresh, valid generate-route payload."""
    return copy.deepcopy(VALID_GENERATE_PAYLOAD)
