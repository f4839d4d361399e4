"""
Content quality gate for drafted and generated posts.

Scans text for filler language ("AI slop": buzzwords, generic openers,
engagement bait, corporate speak, AI tells, weak qualifiers) and classifies
it into a severity bucket by match count:

    0 -> none, 1-2 -> low, 3-5 -> medium, 6+ -> high

Design decisions:
- Pattern-only detection: no attempt to understand why text is weak
- Same shape as the sanitizer: detect -> classify -> optionally auto-repair
- Soft signal: the gate never blocks a response, callers decide whether to
  repair, regenerate or pass through with a warning
- Word-bounded matching: "robust" does not fire inside "robustness"
- Auto-repair runs to a fixpoint, so repairing repaired text changes nothing
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .exceptions import ConfigurationError
from .patterns import DEFAULT_ALTERNATIVE, PatternLibrary, default_library
from .settings import settings

CONTEXT_WIDTH = 20

_WHITESPACE = re.compile(r"\s+")
_SPACE_BEFORE_PUNCT = re.compile(r"\s+([,.])")
_MISSING_SPACE_AFTER_PUNCT = re.compile(r"([,.])(?=[A-Za-z])")
_LEADING_COMMAS = re.compile(r"^[,\s]+")


class Severity(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = (Severity.NONE, Severity.LOW, Severity.MEDIUM, Severity.HIGH)


@dataclass(frozen=True)
class FillerMatch:
    phrase: str
    group: str
    position: int
    context: str


@dataclass(frozen=True)
class QualityVerdict:
    matches: tuple[FillerMatch, ...]
    severity: Severity
    suggestions: tuple[str, ...]

    @property
    def match_count(self) -> int:
        return len(self.matches)


@dataclass(frozen=True)
class RepairResult:
    repaired: str
    changes: tuple[str, ...]


def classify_severity(match_count: int, low_max: int = 2, medium_max: int = 5) -> Severity:
    """Map a match count to its severity bucket."""
    if match_count <= 0:
        return Severity.NONE
    if match_count <= low_max:
        return Severity.LOW
    if match_count <= medium_max:
        return Severity.MEDIUM
    return Severity.HIGH


def normalize_spacing(text: str) -> str:
    """Collapse whitespace, trim, and fix spacing around commas and periods."""
    out = _WHITESPACE.sub(" ", text).strip()
    out = _SPACE_BEFORE_PUNCT.sub(r"\1", out)
    out = _MISSING_SPACE_AFTER_PUNCT.sub(r"\1 ", out)
    return _LEADING_COMMAS.sub("", out)


def _match_case(matched: str, replacement: str) -> str:
    if replacement and matched[:1].isupper():
        return replacement[0].upper() + replacement[1:]
    return replacement


class ContentQualityGate:
    """Scores text for filler phrases and repairs the common ones."""

    def __init__(
        self,
        library: PatternLibrary | None = None,
        low_max: int | None = None,
        medium_max: int | None = None,
        context_width: int = CONTEXT_WIDTH,
    ) -> None:
        self.library = library or default_library()
        self.low_max = settings.severity_low_max if low_max is None else low_max
        self.medium_max = settings.severity_medium_max if medium_max is None else medium_max
        if not 0 < self.low_max <= self.medium_max:
            raise ConfigurationError(
                f"Invalid severity buckets: low_max={self.low_max}, medium_max={self.medium_max}"
            )
        self.context_width = context_width

        # A deleted phrase takes its trailing comma with it ("In conclusion, x" -> "x")
        self._repairs: list[tuple[str, str, re.Pattern[str]]] = []
        for phrase, replacement in self.library.repairs:
            tail = r"(?:\s*,)?" if not replacement else ""
            pattern = re.compile(
                r"(?<!\w)" + re.escape(phrase) + r"(?!\w)" + tail, re.IGNORECASE
            )
            self._repairs.append((phrase, replacement, pattern))

    def evaluate(self, text: Any) -> QualityVerdict:
        """Collect every filler match with surrounding context."""
        if not isinstance(text, str) or not text:
            return QualityVerdict(matches=(), severity=Severity.NONE, suggestions=())

        matches: list[FillerMatch] = []
        for rule in self.library.filler:
            for m in rule.finditer(text):
                start = max(0, m.start() - self.context_width)
                end = min(len(text), m.end() + self.context_width)
                matches.append(
                    FillerMatch(
                        phrase=rule.rule_id,
                        group=rule.group,
                        position=m.start(),
                        context=f"...{text[start:end]}...",
                    )
                )

        suggestions = tuple(
            f'Remove or replace "{m.phrase}" found near: {m.context}' for m in matches
        )
        return QualityVerdict(
            matches=tuple(matches),
            severity=classify_severity(len(matches), self.low_max, self.medium_max),
            suggestions=suggestions,
        )

    def auto_repair(self, text: Any) -> RepairResult:
        """
        Apply the phrase replacement table, then normalize spacing.

        One change entry per phrase actually replaced (not per occurrence).
        Passes repeat until the text is stable, which makes the operation
        idempotent even when a removal exposes a new phrase.
        Stops because the library rejects replacements that contain a
        repair phrase.
        """
        if not isinstance(text, str) or not text:
            return RepairResult(repaired="", changes=())

        changes: list[str] = []
        seen: set[str] = set()
        out = text

        while True:
            before = out
            for phrase, replacement, pattern in self._repairs:
                out, n = pattern.subn(lambda m: _match_case(m.group(), replacement), out)
                if n and phrase not in seen:
                    seen.add(phrase)
                    changes.append(f'Replaced "{phrase}" with "{replacement or "(removed)"}"')
            out = normalize_spacing(out)
            if out == before:
                break

        return RepairResult(repaired=out, changes=tuple(changes))

    def passes_threshold(self, text: Any) -> bool:
        """The single gate callers use before treating text as final."""
        return self.evaluate(text).severity in (Severity.NONE, Severity.LOW)

    def has_filler(self, text: str) -> bool:
        if not text:
            return False
        return any(rule.matches(text) for rule in self.library.filler)

    def score(self, text: str) -> int:
        """
        0-105 score: 5 points off per match (max 30 off), +5 for a short clean post.
        """
        count = self.evaluate(text).match_count
        words = len((text or "").split())
        deduction = min(count * 5, 30)
        bonus = 5 if count == 0 and words < 100 else 0
        return max(0, 100 - deduction + bonus)

    def alternatives_for(self, phrase: str) -> list[str]:
        return list(self.library.alternatives.get(phrase.lower(), DEFAULT_ALTERNATIVE))

    def clean(self, text: Any) -> str:
        return self.auto_repair(text).repaired
