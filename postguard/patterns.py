"""
Pattern library shared by the sanitizer and the quality gate.

Design decisions:
- Tagged rules: every rule carries its category (injection, warning, filler)
  instead of living in ad hoc global regex lists
- Immutable: rules and the library are frozen, built once at startup
- Injected: engines receive a PatternLibrary, so tests can swap tables
- Validated eagerly: a malformed table raises ConfigurationError when the
  library is built, never per request

Ordering:
- Injection rules are applied in table order, so an earlier rule may consume
  text a later rule would have matched ("DAN mode" before bare "DAN")
- Detection of filler phrases is order independent
- The repair table is applied in order: longer phrases come first

Known limitations (acceptable, best-effort defense):
- Blocklist can be bypassed with synonyms, typos, encoding tricks
- English only
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from types import MappingProxyType
from typing import Iterator, Mapping

from .exceptions import ConfigurationError


class RuleCategory(str, Enum):
    INJECTION = "injection"
    WARNING = "warning"
    FILLER = "filler"


@dataclass(frozen=True)
class PatternRule:
    """A single detection rule."""

    rule_id: str
    category: RuleCategory
    matcher: re.Pattern[str]
    replacement: str | None = None
    group: str = ""

    @property
    def source(self) -> str:
        return self.matcher.pattern

    def matches(self, text: str) -> bool:
        return self.matcher.search(text) is not None

    def finditer(self, text: str) -> Iterator[re.Match[str]]:
        return self.matcher.finditer(text)


def _rule(
    rule_id: str,
    category: RuleCategory,
    pattern: str,
    flags: int = re.IGNORECASE,
    group: str = "",
) -> PatternRule:
    return PatternRule(rule_id, category, re.compile(pattern, flags), group=group)


def phrase_matcher(phrase: str) -> re.Pattern[str]:
    """Case-insensitive matcher for a literal phrase that does not start or end mid-word."""
    return re.compile(r"(?<!\w)" + re.escape(phrase) + r"(?!\w)", re.IGNORECASE)


# ============================================================================
# INJECTION RULES (text is replaced by the sentinel)
# ============================================================================

_INSTRUCTION_TARGET = r"(all\s+)?(previous|above|prior)\s+(instructions?|prompts?|commands?)"

INJECTION_RULES: tuple[PatternRule, ...] = (
    # Ignore/override instructions
    _rule("ignore_instructions", RuleCategory.INJECTION, r"ignore\s+" + _INSTRUCTION_TARGET),
    _rule("disregard_instructions", RuleCategory.INJECTION, r"disregard\s+" + _INSTRUCTION_TARGET),
    _rule("forget_instructions", RuleCategory.INJECTION, r"forget\s+" + _INSTRUCTION_TARGET),
    _rule("override_instructions", RuleCategory.INJECTION, r"override\s+" + _INSTRUCTION_TARGET),
    # System prompt manipulation
    _rule("system_prefix", RuleCategory.INJECTION, r"system\s*:\s*"),
    _rule("system_tag_bracket", RuleCategory.INJECTION, r"\[system\]"),
    _rule("system_tag_double_bracket", RuleCategory.INJECTION, r"\[\[system\]\]"),
    _rule("system_tag_open", RuleCategory.INJECTION, r"<system>"),
    _rule("system_tag_close", RuleCategory.INJECTION, r"</system>"),
    # Role manipulation
    _rule("new_assistant", RuleCategory.INJECTION, r"you\s+are\s+(now\s+)?a\s+(new\s+)?assistant"),
    _rule("act_as", RuleCategory.INJECTION, r"act\s+as\s+(if\s+you\s+are\s+)?a\s+(different\s+)?"),
    _rule("pretend", RuleCategory.INJECTION, r"pretend\s+(to\s+be|you\s+are)"),
    _rule("roleplay", RuleCategory.INJECTION, r"roleplay\s+as"),
    # Jailbreak attempts
    _rule("dan_mode", RuleCategory.INJECTION, r"DAN\s*mode"),
    _rule("developer_mode", RuleCategory.INJECTION, r"developer\s*mode"),
    _rule("dan", RuleCategory.INJECTION, r"\bDAN\b", flags=0),
    _rule("jailbreak", RuleCategory.INJECTION, r"jailbreak"),
    # Encoded payloads
    _rule("base64_data_uri", RuleCategory.INJECTION, r"data:text/[^;]+;base64,"),
    # Code execution fences
    _rule(
        "code_fence_exec",
        RuleCategory.INJECTION,
        r"```\s*(python|javascript|bash|sh|exec|eval|system)",
    ),
)

# ============================================================================
# WARNING RULES (logged, text untouched)
# ============================================================================

WARNING_RULES: tuple[PatternRule, ...] = (
    _rule("instructions_label", RuleCategory.WARNING, r"instructions?\s*:"),
    _rule("prompt_label", RuleCategory.WARNING, r"prompt\s*:"),
    _rule("context_label", RuleCategory.WARNING, r"context\s*:"),
    _rule("rules_label", RuleCategory.WARNING, r"rules?\s*:"),
)

# ============================================================================
# FILLER PHRASES (quality gate)
# ============================================================================

FILLER_PHRASES: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        "buzzwords": (
            "leverage", "ecosystem", "synergy", "paradigm", "cutting-edge",
            "next-level", "game-changing", "world-class", "best-in-class",
            "industry-leading", "state-of-the-art", "innovative", "groundbreaking",
            "revolutionary", "transformative", "disruptive", "holistic", "robust",
            "scalable", "seamless",
        ),
        "filler": (
            "dive deep", "delve into", "unpack", "let's explore", "in today's world",
            "in this day and age", "at the end of the day", "when all is said and done",
            "it goes without saying", "needless to say", "suffice it to say",
            "the fact of the matter is", "for all intents and purposes", "in terms of",
            "with that being said",
        ),
        "generic_openers": (
            "let me tell you", "imagine this", "picture this", "think about it",
            "have you ever wondered", "in my experience", "as you know",
            "it's no secret that", "we all know that", "everyone knows",
            "here's the thing", "fun fact",
        ),
        "engagement_bait": (
            "what do you think?", "let me know in the comments", "drop a comment below",
            "tag someone who", "share if you agree", "thoughts?", "agree or disagree?",
            "hot take:", "unpopular opinion:", "controversial opinion:",
        ),
        "corporate_speak": (
            "circle back", "touch base", "reach out", "loop in", "move the needle",
            "low-hanging fruit", "quick win", "value-add", "drill down", "take it offline",
            "think outside the box", "paradigm shift", "win-win", "best practice",
            "core competency", "bandwidth", "synergize", "operationalize", "incentivize",
            "optimize",
        ),
        "ai_tells": (
            "moreover", "furthermore", "additionally", "in conclusion",
            "it's worth noting that", "it's important to note", "to summarize",
            "in summary", "as we've seen", "as mentioned earlier", "moving forward",
            "going forward", "that being said", "with that in mind", "it's crucial to",
            "it's essential to", "it's imperative to", "one must consider",
            "it should be noted", "interestingly", "notably", "importantly",
            "significantly", "consequently", "subsequently",
        ),
        "weak_qualifiers": (
            "sort of", "kind of", "somewhat", "relatively", "fairly", "quite", "rather",
            "a bit", "slightly", "to some extent",
        ),
    }
)


def _filler_rules() -> tuple[PatternRule, ...]:
    rules: list[PatternRule] = []
    for group, phrases in FILLER_PHRASES.items():
        for phrase in phrases:
            rules.append(
                PatternRule(phrase, RuleCategory.FILLER, phrase_matcher(phrase), group=group)
            )
    return tuple(rules)


FILLER_RULES: tuple[PatternRule, ...] = _filler_rules()

# Auto-repair table: phrase -> replacement ("" deletes the phrase)
REPAIRS: tuple[tuple[str, str], ...] = (
    ("dive deep into", "examine"),
    ("delve into", "look at"),
    ("let's explore", "here's"),
    ("in today's world", ""),
    ("at the end of the day", "ultimately"),
    ("it's worth noting that", ""),
    ("it's important to note that", ""),
    ("moreover", "also"),
    ("furthermore", "and"),
    ("additionally", "also"),
    ("in conclusion", ""),
    ("leverage", "use"),
    ("utilize", "use"),
    ("implement", "add"),
    ("synergy", "collaboration"),
    ("paradigm", "approach"),
    ("ecosystem", "community"),
)

ALTERNATIVES: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        "leverage": ("use", "apply", "build on"),
        "ecosystem": ("community", "network", "market"),
        "synergy": ("collaboration", "combined effect", "partnership"),
        "dive deep": ("examine", "look at", "explore"),
        "delve into": ("examine", "look at", "explore"),
        "at the end of the day": ("ultimately", "in the end", "(remove entirely)"),
        "circle back": ("follow up", "revisit", "return to"),
        "touch base": ("connect", "check in", "talk"),
        "move the needle": ("make progress", "improve", "change"),
        "low-hanging fruit": ("easy wins", "quick fixes", "obvious opportunities"),
        "moreover": ("also", "and", "(start new sentence)"),
        "furthermore": ("also", "and", "(start new sentence)"),
        "additionally": ("also", "and", "(start new sentence)"),
        "it's worth noting that": ("(remove entirely)", "notably,", "also,"),
        "in conclusion": ("(remove entirely)", "so,", "finally,"),
    }
)

DEFAULT_ALTERNATIVE = ("(consider removing or rephrasing)",)


# ============================================================================
# LIBRARY
# ============================================================================


@dataclass(frozen=True)
class PatternLibrary:
    """Immutable, validated set of rule tables injected into the engines."""

    injection: tuple[PatternRule, ...]
    warning: tuple[PatternRule, ...]
    filler: tuple[PatternRule, ...]
    repairs: tuple[tuple[str, str], ...] = ()
    alternatives: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def __post_init__(self) -> None:
        if not self.injection:
            raise ConfigurationError("Pattern library has no injection rules")
        if not self.filler:
            raise ConfigurationError("Pattern library has no filler rules")

        expected = (
            (self.injection, RuleCategory.INJECTION),
            (self.warning, RuleCategory.WARNING),
            (self.filler, RuleCategory.FILLER),
        )
        for rules, category in expected:
            seen: set[str] = set()
            for rule in rules:
                if not isinstance(rule, PatternRule):
                    raise ConfigurationError(f"Not a PatternRule: {rule!r}")
                if rule.category is not category:
                    raise ConfigurationError(
                        f"Rule {rule.rule_id!r} is {rule.category.value}, "
                        f"expected {category.value}"
                    )
                if rule.rule_id in seen:
                    raise ConfigurationError(f"Duplicate rule id: {rule.rule_id!r}")
                seen.add(rule.rule_id)

        for phrase, replacement in self.repairs:
            if not phrase or not isinstance(replacement, str):
                raise ConfigurationError(f"Malformed repair entry: {phrase!r}")
        # Repairs run to a fixpoint, so no replacement may reintroduce a phrase
        for phrase, _ in self.repairs:
            matcher = phrase_matcher(phrase)
            for source, replacement in self.repairs:
                if matcher.search(replacement):
                    raise ConfigurationError(
                        f"Replacement for {source!r} contains repair phrase {phrase!r}"
                    )

    def rules(self, category: RuleCategory) -> tuple[PatternRule, ...]:
        if category is RuleCategory.INJECTION:
            return self.injection
        if category is RuleCategory.WARNING:
            return self.warning
        return self.filler


@lru_cache(maxsize=1)
def default_library() -> PatternLibrary:
    """Return the built-in library (built once, shared)."""
    return PatternLibrary(
        injection=INJECTION_RULES,
        warning=WARNING_RULES,
        filler=FILLER_RULES,
        repairs=REPAIRS,
        alternatives=ALTERNATIVES,
    )
