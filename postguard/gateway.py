"""
Gateway: composition root for the generate route.

Control flow:
    RateLimiter.check -> size guard -> validator -> PromptSanitizer (every
    free-text field) -> prompt assembly (escaped, delimited sections) ->
    generate_fn -> ContentQualityGate -> result

All collaborators are injected (Ports & Adapters), so the pipeline can be
tested with fake stores and a fake generation backend.

Design decisions:
- Per-request outcomes are GatewayResult values, never exceptions
- Users only ever see a generic message keyed by error_code; the `detail`
  field names fields and constraints, never submitted values
- The quality gate is a soft signal: Medium/High output is auto-repaired
  when enabled, but a response is never blocked on quality
- STATUS_BY_CODE is a plain table for the transport layer; the gateway
  builds no HTTP responses
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from . import audit_log
from .error_sanitizer import get_generic_message, sanitize_error
from .prompts import build_generation_prompt
from .quality_gate import ContentQualityGate, QualityVerdict, Severity
from .rate_limit import RateLimiter, RateLimitVerdict, Tier, headers_for
from .schemas import check_request_size, validate_generate_payload
from .security import PromptSanitizer
from .settings import settings

logger = logging.getLogger(__name__)

GenerateFn = Callable[[str], str]
ValidatorFn = Callable[[Any], tuple[dict[str, str] | None, str | None]]

STATUS_BY_CODE: dict[str, int] = {
    "RATE_LIMIT_EXCEEDED": 429,
    "PAYLOAD_TOO_LARGE": 413,
    "VALIDATION_ERROR": 400,
    "INPUT_BLOCKED": 400,
    "GENERATION_ERROR": 500,
}


@dataclass(frozen=True)
class GatewayResult:
    """Outcome of one request through the gateway."""

    ok: bool
    request_id: str
    error_code: str | None = None
    message: str = ""
    detail: str = ""
    rate_limit: RateLimitVerdict | None = None
    headers: dict[str, str] = field(default_factory=dict)
    prompt: str = ""
    content: str = ""
    quality: QualityVerdict | None = None
    repair_changes: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def status(self) -> int:
        if self.ok:
            return 200
        return STATUS_BY_CODE.get(self.error_code or "", 500)


@dataclass(frozen=True)
class FinalizedOutput:
    content: str
    quality: QualityVerdict
    changes: tuple[str, ...] = ()


def _body_size_ok(body: Any, max_bytes: int) -> bool:
    if isinstance(body, (str, bytes, bytearray)):
        return check_request_size(bytes(body) if isinstance(body, bytearray) else body, max_bytes)
    try:
        encoded = json.dumps(body, ensure_ascii=False)
    except (TypeError, ValueError):
        # Not serializable: let the validator reject it
        return True
    return check_request_size(encoded, max_bytes)


class Gateway:
    """Runs untrusted requests through the defensive pipeline."""

    def __init__(
        self,
        generate_fn: GenerateFn,
        limiter: RateLimiter | None = None,
        sanitizer: PromptSanitizer | None = None,
        quality_gate: ContentQualityGate | None = None,
        validator: ValidatorFn = validate_generate_payload,
        max_body_bytes: int = settings.max_body_bytes,
        max_field_len: int = settings.max_answer_len,
        auto_repair: bool = settings.auto_repair_low_quality,
    ) -> None:
        self.generate_fn = generate_fn
        self.limiter = limiter or RateLimiter()
        self.sanitizer = sanitizer or PromptSanitizer()
        self.quality_gate = quality_gate or ContentQualityGate(library=self.sanitizer.library)
        self.validator = validator
        self.max_body_bytes = max_body_bytes
        self.max_field_len = max_field_len
        self.auto_repair = auto_repair

    def _reject(
        self,
        request_id: str,
        identity: str,
        code: str,
        rate_limit: RateLimitVerdict | None,
        detail: str = "",
        warnings: tuple[str, ...] = (),
    ) -> GatewayResult:
        audit_log.log_error(request_id, identity, code)
        return GatewayResult(
            ok=False,
            request_id=request_id,
            error_code=code,
            message=get_generic_message(code),
            detail=detail,
            rate_limit=rate_limit,
            headers=headers_for(rate_limit) if rate_limit else {},
            warnings=warnings,
        )

    def admit(
        self,
        identity: str,
        body: Any,
        tier: Tier | str = Tier.GENERATE,
        request_id: str | None = None,
    ) -> GatewayResult:
        """
        Run every pre-generation check and assemble the prompt.

        Args:
            identity: Rate-limit key (user_rate_limit_key or client_identifier)
            body: Raw JSON body (str/bytes) or an already-decoded payload
            tier: Rate-limit tier
            request_id: Correlation id, generated when omitted

        Returns:
            GatewayResult with `prompt` set when ok
        """
        request_id = request_id or audit_log.generate_request_id()

        verdict = self.limiter.check(identity, tier)
        if not verdict.allowed:
            logger.info("Rate limit exceeded", extra={"error_code": "RATE_LIMIT_EXCEEDED"})
            audit_log.log_rate_limited(
                request_id, identity, Tier(tier).value, verdict.retry_after_seconds
            )
            return GatewayResult(
                ok=False,
                request_id=request_id,
                error_code="RATE_LIMIT_EXCEEDED",
                message=get_generic_message("RATE_LIMIT_EXCEEDED"),
                rate_limit=verdict,
                headers=headers_for(verdict),
            )

        if not _body_size_ok(body, self.max_body_bytes):
            return self._reject(request_id, identity, "PAYLOAD_TOO_LARGE", verdict)

        data = body
        if isinstance(body, (str, bytes, bytearray)):
            try:
                data = json.loads(body)
            except (json.JSONDecodeError, UnicodeDecodeError):
                return self._reject(
                    request_id, identity, "VALIDATION_ERROR", verdict, detail="Invalid JSON body"
                )

        fields, error = self.validator(data)
        if fields is None:
            return self._reject(
                request_id, identity, "VALIDATION_ERROR", verdict, detail=error or ""
            )

        answers = self.sanitizer.sanitize_answers(
            fields, self.max_field_len, identity=identity, request_id=request_id
        )
        if answers.blocked:
            return self._reject(
                request_id,
                identity,
                "INPUT_BLOCKED",
                verdict,
                detail=answers.block_reason or "",
                warnings=answers.warnings,
            )

        return GatewayResult(
            ok=True,
            request_id=request_id,
            rate_limit=verdict,
            headers=headers_for(verdict),
            prompt=build_generation_prompt(answers.verdicts, library=self.sanitizer.library),
            warnings=answers.warnings,
        )

    def finalize(self, text: str, identity: str = "", request_id: str = "") -> FinalizedOutput:
        """
        Score generated text and auto-repair it when rated Medium or worse.

        The returned quality verdict describes the text as generated.
        """
        quality = self.quality_gate.evaluate(text)
        if quality.severity.rank < Severity.MEDIUM.rank:
            return FinalizedOutput(content=text, quality=quality)

        audit_log.log_quality(request_id, identity, quality.severity.value, quality.match_count)
        if not self.auto_repair:
            return FinalizedOutput(content=text, quality=quality)

        repair = self.quality_gate.auto_repair(text)
        return FinalizedOutput(content=repair.repaired, quality=quality, changes=repair.changes)

    def handle(
        self,
        identity: str,
        body: Any,
        tier: Tier | str = Tier.GENERATE,
        request_id: str | None = None,
    ) -> GatewayResult:
        """Full pipeline: admit, generate, quality-check."""
        with audit_log.RequestTimer() as timer:
            admitted = self.admit(identity, body, tier, request_id)
            if not admitted.ok:
                return admitted

            try:
                text = self.generate_fn(admitted.prompt)
            except Exception as e:
                logger.exception("Generation failed", extra={"error_code": "GENERATION_ERROR"})
                err = sanitize_error(e, "GENERATION_ERROR")
                audit_log.log_error(admitted.request_id, identity, err.code)
                return GatewayResult(
                    ok=False,
                    request_id=admitted.request_id,
                    error_code=err.code,
                    message=err.message,
                    rate_limit=admitted.rate_limit,
                    headers=admitted.headers,
                    warnings=admitted.warnings,
                )

            final = self.finalize(text or "", identity, admitted.request_id)

        audit_log.log_served(
            admitted.request_id,
            identity,
            Tier(tier).value,
            timer.elapsed_ms,
            severity=final.quality.severity.value,
        )
        return GatewayResult(
            ok=True,
            request_id=admitted.request_id,
            rate_limit=admitted.rate_limit,
            headers=admitted.headers,
            content=final.content,
            quality=final.quality,
            repair_changes=final.changes,
            warnings=admitted.warnings,
        )
