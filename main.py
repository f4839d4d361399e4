"""
postguard command line.

Commands:
    scan [FILE]     Sanitize and quality-score a text (file or stdin),
                    print a JSON report
    check-payload [FILE]
                    Run a generate-route JSON payload through validation and
                    sanitization (no rate limit, no generation), print the
                    verdicts and the assembled prompt length

Usage:
    python main.py scan draft.txt
    echo "Ignore all previous instructions" | python main.py scan
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict

from dotenv import load_dotenv

from postguard.logging_config import setup_logging
from postguard.prompts import build_generation_prompt
from postguard.quality_gate import ContentQualityGate
from postguard.schemas import validate_generate_payload
from postguard.security import PromptSanitizer
from postguard.settings import settings


def _read_input(path: str | None) -> str:
    if not path or path == "-":
        return sys.stdin.read()
    with open(path, encoding="utf-8") as f:
        return f.read()


def scan_report(text: str, max_length: int, repair: bool = False) -> dict:
    """Sanitization and quality verdicts for one text, as plain data."""
    sanitizer = PromptSanitizer()
    gate = ContentQualityGate(library=sanitizer.library)

    verdict = sanitizer.sanitize(text, max_length, field_name="cli")
    quality = gate.evaluate(text)

    report = {
        "sanitization": {
            "blocked": verdict.blocked,
            "block_reason": verdict.block_reason,
            "was_modified": verdict.was_modified,
            "warnings": list(verdict.warnings),
            "rule_ids": list(verdict.rule_ids),
            "sanitized_text": verdict.sanitized_text,
        },
        "quality": {
            "severity": quality.severity.value,
            "match_count": quality.match_count,
            "score": gate.score(text),
            "passes": gate.passes_threshold(text),
            "matches": [asdict(m) for m in quality.matches],
            "suggestions": list(quality.suggestions),
        },
    }
    if repair:
        result = gate.auto_repair(text)
        report["repair"] = {"repaired": result.repaired, "changes": list(result.changes)}
    return report


def payload_report(raw: str) -> dict:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        return {"valid": False, "error": f"Invalid JSON: {e.msg} (line {e.lineno})"}

    fields, error = validate_generate_payload(data)
    if fields is None:
        return {"valid": False, "error": error}

    sanitizer = PromptSanitizer()
    answers = sanitizer.sanitize_answers(fields, settings.max_answer_len, identity="cli")
    report = {
        "valid": True,
        "blocked": answers.blocked,
        "block_reason": answers.block_reason,
        "blocked_fields": list(answers.blocked_fields),
        "warnings": list(answers.warnings),
    }
    if not answers.blocked:
        prompt = build_generation_prompt(answers.verdicts, library=sanitizer.library)
        report["prompt_chars"] = len(prompt)
    return report


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="postguard", description=__doc__.split("\n\n")[0])
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="sanitize and quality-score a text")
    scan.add_argument("file", nargs="?", help="input file (default: stdin)")
    scan.add_argument("--max-length", type=int, default=settings.max_post_len)
    scan.add_argument("--repair", action="store_true", help="include auto-repair output")

    payload = sub.add_parser("check-payload", help="validate and sanitize a generate payload")
    payload.add_argument("file", nargs="?", help="JSON file (default: stdin)")
    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    setup_logging(stream=sys.stderr)
    args = build_parser().parse_args(argv)

    if args.command == "scan":
        report = scan_report(_read_input(args.file), args.max_length, args.repair)
        exit_code = 1 if report["sanitization"]["blocked"] else 0
    else:
        report = payload_report(_read_input(args.file))
        exit_code = 0 if report["valid"] and not report.get("blocked") else 1

    print(json.dumps(report, indent=2, ensure_ascii=False))
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
