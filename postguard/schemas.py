"""
Wire payload validation (pydantic).

The gateway treats validation as a black box that turns a raw JSON body into
a map of free-text fields. These models are the default implementation.

Limits mirror the client-side form limits:
- answers: 5000 characters each, q1-q5 required, q6 optional
- target audience: 500 characters
- signature phrases: at most 50, 200 characters each
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .settings import settings

MAX_ANSWER_LENGTH = 5000
MAX_AUDIENCE_LENGTH = 500
MAX_ARRAY_LENGTH = 50

VoiceModeId = Literal[
    "thought-leader", "storyteller", "educator", "provocateur", "community-builder"
]
Platform = Literal["linkedin", "twitter", "both"]
FlowType = Literal["experience", "pattern"]

AnswerText = Annotated[str, Field(max_length=MAX_ANSWER_LENGTH)]
RequiredAnswer = Annotated[str, Field(min_length=1, max_length=MAX_ANSWER_LENGTH)]

ModelT = TypeVar("ModelT", bound=BaseModel)


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class InterviewAnswers(_Wire):
    q1: RequiredAnswer
    q2: RequiredAnswer
    q3: RequiredAnswer
    q4: RequiredAnswer
    q5: RequiredAnswer
    q6: AnswerText | None = None

    def as_fields(self) -> dict[str, str]:
        return {k: v for k, v in self.model_dump().items() if v is not None}


class VoiceProfileRef(_Wire):
    id: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=100)
    signature_phrases: list[Annotated[str, Field(min_length=1, max_length=settings.max_signature_len)]] = Field(
        default_factory=list, alias="signaturePhrases", max_length=MAX_ARRAY_LENGTH
    )


class InterviewResponse(_Wire):
    id: str = Field(..., min_length=1, max_length=100)
    flow_type: FlowType = Field(..., alias="flowType")
    voice_mode_id: VoiceModeId = Field(..., alias="voiceModeId")
    answers: InterviewAnswers
    extracted_insight: AnswerText | None = Field(default=None, alias="extractedInsight")
    platform: Platform
    target_audience: str | None = Field(
        default=None, alias="targetAudience", max_length=MAX_AUDIENCE_LENGTH
    )


class GenerateRequest(_Wire):
    interview: InterviewResponse
    voice_profile: VoiceProfileRef | None = Field(default=None, alias="voiceProfile")

    def free_text_fields(self) -> dict[str, str]:
        """Every user-authored string that will be placed in a prompt."""
        fields = self.interview.answers.as_fields()
        if self.interview.extracted_insight:
            fields["insight"] = self.interview.extracted_insight
        if self.interview.target_audience:
            fields["audience"] = self.interview.target_audience
        if self.voice_profile:
            for i, phrase in enumerate(self.voice_profile.signature_phrases, start=1):
                fields[f"signature_{i}"] = phrase
        return fields


class ExtractInsightRequest(_Wire):
    flow_type: FlowType = Field(..., alias="flowType")
    answers: dict[str, AnswerText]
    voice_mode_id: VoiceModeId | None = Field(default=None, alias="voiceModeId")

    def free_text_fields(self) -> dict[str, str]:
        return dict(self.answers)


def validate_request(model: type[ModelT], data: Any) -> tuple[ModelT | None, str | None]:
    """
    Validate a payload against a model.

    Returns:
        Tuple of (parsed_model, None) or (None, error_message).
        The message names fields and constraints, never submitted values.
    """
    try:
        return model.model_validate(data), None
    except ValidationError as e:
        issues = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        return None, f"Validation failed: {issues}"


def validate_generate_payload(data: Any) -> tuple[dict[str, str] | None, str | None]:
    """Default gateway validator for the generate route."""
    parsed, error = validate_request(GenerateRequest, data)
    if parsed is None:
        return None, error
    return parsed.free_text_fields(), None


def validate_extract_payload(data: Any) -> tuple[dict[str, str] | None, str | None]:
    parsed, error = validate_request(ExtractInsightRequest, data)
    if parsed is None:
        return None, error
    return parsed.free_text_fields(), None


def check_request_size(body: bytes | str, max_bytes: int = settings.max_body_bytes) -> bool:
    size = len(body.encode("utf-8")) if isinstance(body, str) else len(body)
    return size <= max_bytes
