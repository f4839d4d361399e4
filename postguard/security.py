"""
Input sanitization and prompt injection protection.

Design decisions:
- Neutralize, don't drop: injection matches are replaced by a sentinel
  ([FILTERED]) so the rest of a legitimate answer survives
- Reject on saturation: more than `block_threshold` sentinels in the final
  text means the field is mostly adversarial, so the whole field is discarded.
  This is the one intentionally aggressive rule (false positives over risk)
- When a rule fires, sentinels typed by the user are first rewritten to an
  inert form, so saturation only counts what the rules inserted
- Warning patterns are informational only, never modify text
- Control and zero-width characters are stripped (hidden instructions)
- Length limiting prevents token stuffing
- Structural delimiters are escaped after sanitization so user text cannot
  close or open a prompt section

Known limitations (acceptable, best-effort):
- Blocklist can be bypassed with synonyms, typos, encoding tricks
- No ML-based detection

SECURITY:
- This is defense-in-depth layer 1 (input sanitization)
- Layer 2 is delimiter escaping + safe sections (prompts.py)
- Layer 3 is the output quality gate (quality_gate.py)
- Audit records carry rule ids and field names, never matched text
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Mapping

from . import audit_log
from .exceptions import ConfigurationError
from .patterns import PatternLibrary, PatternRule, default_library
from .settings import settings

logger = logging.getLogger(__name__)

SENTINEL = "[FILTERED]"
BLOCKED_PLACEHOLDER = "[Content blocked due to security concerns]"
BLOCK_REASON = "Too many suspicious patterns detected"

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
# Zero-width space / non-joiner / joiner, word joiner, BOM
_INVISIBLE_CHARS = re.compile("[\u200B\u200C\u200D\u2060\uFEFF]")

_SECTION_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9 _-]")

# Runs are rewritten as a whole so escaping is idempotent ("[[[" -> "[ [ [")
_BACKTICK_RUN = re.compile(r"`{3,}")
_SPACED_RUNS = (
    re.compile(r"-{3,}"),
    re.compile(r"={3,}"),
    re.compile(r"\[{2,}"),
    re.compile(r"\]{2,}"),
    re.compile(r"<{2,}"),
    re.compile(r">{2,}"),
)


@dataclass(frozen=True)
class SanitizationVerdict:
    """Result of sanitizing one field. Never mutated after return."""

    sanitized_text: str
    was_modified: bool = False
    warnings: tuple[str, ...] = ()
    blocked: bool = False
    block_reason: str | None = None
    rule_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class AnswersVerdict:
    """Aggregate result of sanitizing a map of answers."""

    sanitized: dict[str, str]
    was_modified: bool
    warnings: tuple[str, ...]
    blocked: bool
    block_reason: str | None = None
    blocked_fields: tuple[str, ...] = ()
    verdicts: dict[str, SanitizationVerdict] = field(default_factory=dict)


def _truncated_source(rule: PatternRule) -> str:
    src = rule.source
    return src if len(src) <= 30 else src[:30] + "..."


def escape_structural_delimiters(text: str) -> str:
    """
    Neutralize sequences that could break out of a prompt section.

    ``` -> ''', --- -> - - -, === -> = = =, [[ -> [ [, ]] -> ] ],
    << -> < <, >> -> > >. Idempotent.
    """
    if not text:
        return ""
    out = _BACKTICK_RUN.sub(lambda m: "'" * len(m.group()), text)
    for run in _SPACED_RUNS:
        out = run.sub(lambda m: " ".join(m.group()), out)
    return out


def render_section(name: str, verdict: SanitizationVerdict) -> str:
    """Delimited block for an already-sanitized field; placeholder body if blocked."""
    title = _SECTION_NAME_UNSAFE.sub("", name or "").upper()[:50] or "FIELD"
    if verdict.blocked:
        body = BLOCKED_PLACEHOLDER
    else:
        body = escape_structural_delimiters(verdict.sanitized_text)
    return f"=== {title} ===\n{body}\n=== END {title} ===\n"


class PromptSanitizer:
    """Detects, neutralizes and optionally rejects adversarial input."""

    def __init__(
        self,
        library: PatternLibrary | None = None,
        block_threshold: int | None = None,
        sentinel: str = SENTINEL,
    ) -> None:
        self.library = library or default_library()
        self.block_threshold = (
            settings.block_threshold if block_threshold is None else block_threshold
        )
        if self.block_threshold < 0:
            raise ConfigurationError("block_threshold must be >= 0")
        if not sentinel:
            raise ConfigurationError("sentinel must be a non-empty string")
        self.sentinel = sentinel
        self.inert_sentinel = f"({sentinel.strip('[]()')})"
        if self.inert_sentinel == sentinel:
            raise ConfigurationError("sentinel must not be wrapped in parentheses")

    def sanitize(
        self,
        text: Any,
        max_length: int = settings.max_answer_len,
        field_name: str = "",
        identity: str = "",
        request_id: str = "",
    ) -> SanitizationVerdict:
        """
        Sanitize user input before it is placed in a prompt.

        Never raises on malformed input: empty or non-string input yields an
        empty, unmodified, unblocked verdict.

        Args:
            text: Raw user text
            max_length: Maximum length of the sanitized text
            field_name: Field identifier for audit records (never its value)
            identity: Caller identity, hashed in audit records
            request_id: Request identifier for audit correlation

        Returns:
            SanitizationVerdict
        """
        if not isinstance(text, str) or not text:
            return SanitizationVerdict(sanitized_text="")

        max_length = max(0, int(max_length))
        warnings: list[str] = []
        fired: list[str] = []
        modified = False

        out = text.strip()

        if any(rule.matches(out) for rule in self.library.injection):
            # Only rule-inserted sentinels count toward saturation
            inert = out.replace(self.sentinel, self.inert_sentinel)
            if inert != out:
                out = inert
                modified = True

        for rule in self.library.injection:
            if not rule.matches(out):
                continue
            out = rule.matcher.sub(self.sentinel, out)
            modified = True
            fired.append(rule.rule_id)
            warnings.append(
                f"Suspicious pattern removed ({rule.category.value}:{rule.rule_id}): "
                f"{_truncated_source(rule)}"
            )
            logger.warning(
                "Potential prompt injection detected",
                extra={"rule_id": rule.rule_id, "field_name": field_name},
            )
            audit_log.log_injection(request_id, identity, field_name, rule.rule_id)

        for rule in self.library.warning:
            if rule.matches(out):
                warnings.append(
                    f"Potentially suspicious content detected "
                    f"({rule.category.value}:{rule.rule_id})"
                )

        stripped = _INVISIBLE_CHARS.sub("", _CONTROL_CHARS.sub("", out))
        if stripped != out:
            out = stripped
            modified = True
            warnings.append("Control characters removed")

        if len(out) > max_length:
            out = out[:max_length]
            modified = True
            warnings.append(f"Content truncated to {max_length} characters")

        if fired and out.count(self.sentinel) > self.block_threshold:
            logger.warning(
                "Input blocked: too many suspicious patterns",
                extra={"field_name": field_name, "rule_count": len(fired)},
            )
            audit_log.log_blocked(request_id, identity, field_name, fired)
            return SanitizationVerdict(
                sanitized_text="",
                was_modified=True,
                warnings=tuple(warnings),
                blocked=True,
                block_reason=BLOCK_REASON,
                rule_ids=tuple(fired),
            )

        return SanitizationVerdict(
            sanitized_text=out,
            was_modified=modified,
            warnings=tuple(warnings),
            rule_ids=tuple(fired),
        )

    def sanitize_answers(
        self,
        answers: Mapping[str, Any],
        max_length: int = settings.max_answer_len,
        identity: str = "",
        request_id: str = "",
    ) -> AnswersVerdict:
        """Sanitize every field of an answer map; blocked if any field is."""
        sanitized: dict[str, str] = {}
        verdicts: dict[str, SanitizationVerdict] = {}
        warnings: list[str] = []
        blocked_fields: list[str] = []
        block_reason: str | None = None

        for key, value in answers.items():
            verdict = self.sanitize(
                value, max_length, field_name=key, identity=identity, request_id=request_id
            )
            verdicts[key] = verdict
            sanitized[key] = verdict.sanitized_text
            warnings.extend(f"{key}: {w}" for w in verdict.warnings)
            if verdict.blocked:
                blocked_fields.append(key)
                block_reason = f"Answer {key}: {verdict.block_reason}"

        return AnswersVerdict(
            sanitized=sanitized,
            was_modified=any(v.was_modified for v in verdicts.values()),
            warnings=tuple(warnings),
            blocked=bool(blocked_fields),
            block_reason=block_reason,
            blocked_fields=tuple(blocked_fields),
            verdicts=verdicts,
        )

    def is_content_safe(self, text: str) -> bool:
        """True if no injection rule matches."""
        if not text:
            return True
        return not any(rule.matches(text) for rule in self.library.injection)

    def build_safe_section(
        self,
        name: str,
        text: Any,
        max_length: int = settings.max_answer_len,
        identity: str = "",
        request_id: str = "",
    ) -> str:
        """
        Render a clearly delimited prompt block for untrusted text.

        A blocked verdict renders the fixed placeholder as the body, so
        callers never need to special-case rejected input.
        """
        verdict = self.sanitize(
            text, max_length, field_name=name, identity=identity, request_id=request_id
        )
        return render_section(name, verdict)


@lru_cache(maxsize=1)
def default_sanitizer() -> PromptSanitizer:
    return PromptSanitizer()


def sanitize_for_prompt(text: Any, max_length: int = settings.max_answer_len) -> SanitizationVerdict:
    """Sanitize with the built-in pattern library."""
    return default_sanitizer().sanitize(text, max_length)
