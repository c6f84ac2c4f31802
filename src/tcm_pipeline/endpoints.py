from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field

from .contracts import OutputMode
from .normalizer import (
    AUDIO_CONTRACT,
    CHAT_CONTRACT,
    CONSULT_CONTRACT,
    IMAGE_CONTRACT,
    REPORT_CHAT_CONTRACT,
    SUMMARY_CONTRACT,
    ResponseContract,
    StreamContract,
)
from .tiering import (
    AUDIO_MODELS,
    DEFAULT_FALLBACK_MODELS,
    REPORT_CHAT_FALLBACK_MODELS,
    VISION_MODELS,
    ModelTier,
    candidates_for,
    select_candidates,
)
from .validation import DEFAULT_MIN_CONFIDENCE, ResponseValidator, ValidationRules


@dataclass(frozen=True)
class EndpointSpec:
    name: str
    prompt_role: str
    output_mode: OutputMode
    timeout_seconds: float
    contract: ResponseContract | StreamContract
    rules: ValidationRules = field(default_factory=ValidationRules)
    # Static ranking; ignored when ``uses_tier`` is set.
    fallback_models: tuple[str, ...] = ()
    uses_tier: bool = False
    # A caller-requested model is tried first, ahead of the ranking.
    accepts_requested_model: bool = False
    temperature: float | None = None

    def validator(self) -> ResponseValidator:
        return ResponseValidator(self.rules)

    def candidates(self, *, requested_model: str | None = None, tier: ModelTier | str | None = None) -> tuple[str, ...]:
        ranking = select_candidates(tier) if self.uses_tier else self.fallback_models
        primary = requested_model if self.accepts_requested_model else None
        return candidates_for(primary, ranking)

    def with_min_confidence(self, min_confidence: float) -> "EndpointSpec":
        if self.rules.min_confidence is None:
            return self
        return dataclasses.replace(self, rules=dataclasses.replace(self.rules, min_confidence=min_confidence))


IMAGE_RULES = ValidationRules(
    min_length=50,
    reject_refusals=True,
    expect_json=True,
    allow_plain_text=True,
    min_confidence=DEFAULT_MIN_CONFIDENCE,
    checked_text_keys=("observation", "analysis", "description"),
)

AUDIO_RULES = ValidationRules(
    min_length=50,
    expect_json=True,
    allow_plain_text=True,
    required_any_keys=("overall_observation", "voice_quality_analysis"),
)

SUMMARY_RULES = ValidationRules(min_length=1)

CHAT = EndpointSpec(
    name="chat",
    prompt_role="doctor_chat",
    output_mode=OutputMode.STREAM,
    timeout_seconds=60,
    contract=CHAT_CONTRACT,
    uses_tier=True,
    temperature=0.7,
)

ANALYZE_IMAGE = EndpointSpec(
    name="analyze_image",
    prompt_role="doctor_image_tongue",
    output_mode=OutputMode.STRUCTURED,
    timeout_seconds=120,
    contract=IMAGE_CONTRACT,
    rules=IMAGE_RULES,
    fallback_models=VISION_MODELS,
    temperature=0.4,
)

ANALYZE_AUDIO = EndpointSpec(
    name="analyze_audio",
    prompt_role="doctor_listening",
    output_mode=OutputMode.STRUCTURED,
    timeout_seconds=120,
    contract=AUDIO_CONTRACT,
    rules=AUDIO_RULES,
    fallback_models=AUDIO_MODELS,
    temperature=0.4,
)

SUMMARIZE_INQUIRY = EndpointSpec(
    name="summarize_inquiry",
    prompt_role="doctor_inquiry_summary",
    output_mode=OutputMode.TEXT,
    timeout_seconds=60,
    contract=SUMMARY_CONTRACT,
    rules=SUMMARY_RULES,
    uses_tier=True,
    accepts_requested_model=True,
)

CONSULT = EndpointSpec(
    name="consult",
    prompt_role="doctor_final",
    output_mode=OutputMode.STREAM,
    timeout_seconds=60,
    contract=CONSULT_CONTRACT,
    fallback_models=DEFAULT_FALLBACK_MODELS,
    accepts_requested_model=True,
)

REPORT_CHAT = EndpointSpec(
    name="report_chat",
    prompt_role="report_chat",
    output_mode=OutputMode.STREAM,
    timeout_seconds=30,
    contract=REPORT_CHAT_CONTRACT,
    fallback_models=REPORT_CHAT_FALLBACK_MODELS,
    accepts_requested_model=True,
    temperature=0.7,
)

ENDPOINTS: dict[str, EndpointSpec] = {
    spec.name: spec for spec in (CHAT, ANALYZE_IMAGE, ANALYZE_AUDIO, SUMMARIZE_INQUIRY, CONSULT, REPORT_CHAT)
}

IMAGE_PROMPT_ROLES = {
    "tongue": "doctor_image_tongue",
    "face": "doctor_image_face",
    "body": "doctor_image_body",
    "part": "doctor_image_body",
}


def image_prompt_role(image_type: str | None) -> str:
    return IMAGE_PROMPT_ROLES.get((image_type or "tongue").strip().lower(), "doctor_image_tongue")
