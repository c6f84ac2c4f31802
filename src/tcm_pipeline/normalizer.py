from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .contracts import ValidatedResult
from .tiering import status_message

_MISSING = object()


def _present(value: Any) -> bool:
    return value is not None and value != "" and value != [] and value != {}


def _first_present(payload: Mapping[str, Any], aliases: tuple[str, ...]) -> Any:
    for alias in aliases:
        value = payload.get(alias, _MISSING)
        if value is not _MISSING and _present(value):
            return value
    return _MISSING


def extract_first(payload: Mapping[str, Any], aliases: tuple[str, ...], default: Any = None) -> Any:
    """Return the first present value among ``aliases`` (tried in order)."""
    value = _first_present(payload, aliases)
    return copy.deepcopy(default) if value is _MISSING else value


@dataclass(frozen=True)
class ExtractionRule:
    name: str
    aliases: tuple[str, ...]
    default: Any = None
    # Use the whole unstructured text when the payload is plain text.
    from_text: bool = False
    # Also use the raw response text when a parsed object has none of the aliases.
    raw_fallback: bool = False

    def apply(self, payload: Mapping[str, Any] | str, raw_text: str | None = None) -> Any:
        if isinstance(payload, str):
            return payload if self.from_text else copy.deepcopy(self.default)
        value = _first_present(payload, self.aliases or (self.name,))
        if value is not _MISSING:
            return value
        if self.raw_fallback and raw_text and raw_text.strip():
            return raw_text.strip()
        return copy.deepcopy(self.default)


@dataclass(frozen=True)
class ResponseContract:
    fields: tuple[ExtractionRule, ...]
    fallback_payload: Any
    # Copy every payload key through before applying the rules.
    passthrough: bool = False
    include_model_info: bool = True
    text_status: str | None = None

    def fallback(self) -> Any:
        return copy.deepcopy(self.fallback_payload)

    def normalize(self, validated: ValidatedResult, *, model_rank: int, model_id: str | None) -> dict[str, Any]:
        payload = validated.payload
        out: dict[str, Any] = {}
        if self.passthrough and isinstance(payload, Mapping):
            out.update(copy.deepcopy(dict(payload)))
        for rule in self.fields:
            out[rule.name] = rule.apply(payload, validated.raw_text)
        if self.include_model_info:
            out["modelUsed"] = model_rank
            if isinstance(payload, str) and self.text_status:
                out["status"] = self.text_status
            elif not (self.passthrough and isinstance(payload, Mapping) and payload.get("status")):
                out["status"] = status_message(model_id)
        if validated.confidence is not None and "confidence" in out and out["confidence"] is None:
            out["confidence"] = validated.confidence
        return out


IMAGE_FALLBACK_PAYLOAD: dict[str, Any] = {
    "observation": (
        "Unable to analyze the image at this time. "
        "The visual inspection results will be reviewed manually."
    ),
    "potential_issues": [],
    "modelUsed": 0,
    "status": "Analysis pending",
}

IMAGE_CONTRACT = ResponseContract(
    fields=(
        ExtractionRule(
            "observation", ("observation", "analysis", "description"), from_text=True, raw_fallback=True
        ),
        ExtractionRule("potential_issues", ("potential_issues", "issues", "indications", "pattern_suggestions"), []),
        ExtractionRule("confidence", ("confidence",)),
        ExtractionRule("image_description", ("image_description",), ""),
        ExtractionRule("analysis_tags", ("analysis_tags",), []),
        ExtractionRule("tcm_indicators", ("tcm_indicators",), []),
        ExtractionRule("pattern_suggestions", ("pattern_suggestions",), []),
        ExtractionRule("notes", ("notes",), ""),
    ),
    fallback_payload=IMAGE_FALLBACK_PAYLOAD,
)


def _pending_section(observation: str, significance: str, indicators: list[str] | None = None) -> dict[str, Any]:
    return {
        "observation": observation,
        "severity": "pending",
        "tcm_indicators": indicators or [],
        "clinical_significance": significance,
    }


AUDIO_FALLBACK_PAYLOAD: dict[str, Any] = {
    "overall_observation": "Audio analysis will be processed with your final diagnosis report.",
    "voice_quality_analysis": _pending_section(
        "Voice recording received",
        "Will be integrated with other diagnostic data",
        ["Audio recorded successfully"],
    ),
    "breathing_patterns": _pending_section("Pending analysis", "Pending comprehensive analysis"),
    "speech_patterns": _pending_section("Pending analysis", "Will be evaluated alongside other findings"),
    "cough_sounds": _pending_section("Pending analysis", "Pending"),
    "pattern_suggestions": ["Analysis pending"],
    "recommendations": ["Continue with remaining diagnostic steps"],
    "confidence": "low",
    "notes": (
        "Real-time audio analysis temporarily unavailable. Your recording has been saved "
        "and will be analyzed in your final diagnosis."
    ),
    "modelUsed": 0,
    "status": "pending",
}

AUDIO_CONTRACT = ResponseContract(
    fields=(
        ExtractionRule("overall_observation", ("overall_observation", "observation", "analysis"), from_text=True),
        ExtractionRule("voice_quality_analysis", ("voice_quality_analysis",)),
        ExtractionRule("breathing_patterns", ("breathing_patterns",)),
        ExtractionRule("speech_patterns", ("speech_patterns",)),
        ExtractionRule("cough_sounds", ("cough_sounds",)),
    ),
    fallback_payload=AUDIO_FALLBACK_PAYLOAD,
    passthrough=True,
    text_status="partial",
)

SUMMARY_FALLBACK_PAYLOAD: dict[str, Any] = {
    "summary": (
        "The inquiry summary could not be generated right now. "
        "Your consultation has been saved and will be summarized by the physician."
    ),
    "status": "pending",
}

SUMMARY_CONTRACT = ResponseContract(
    fields=(ExtractionRule("summary", ("summary",), from_text=True),),
    fallback_payload=SUMMARY_FALLBACK_PAYLOAD,
    include_model_info=False,
)


@dataclass(frozen=True)
class StreamContract:
    fallback_text: str

    def fallback(self) -> str:
        return self.fallback_text


CHAT_CONTRACT = StreamContract(
    fallback_text=(
        "I'm having trouble connecting right now. Please continue; your answers are saved "
        "and the physician will review them."
    )
)

CONSULT_CONTRACT = StreamContract(
    fallback_text=(
        '{"diagnosis": "Analysis pending", "constitution": "Not determined", '
        '"analysis": "The AI report could not be generated at this time. Your data has been saved '
        'and will be reviewed by a physician.", '
        '"recommendations": {"food": ["Please retry the analysis"], "avoid": [], '
        '"lifestyle": ["Please try again later"]}, "status": "pending"}'
    )
)

REPORT_CHAT_CONTRACT = StreamContract(
    fallback_text=(
        "Sorry, I can't answer questions about your report right now. Please try again in a moment."
    )
)
