"""
Response validation for model output.

Two tiers: cheap string heuristics (length, refusal phrases) run before any
JSON parsing or repair is attempted.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from .contracts import ValidatedResult
from .errors import JSONRepairError
from .json_repair import parse_json_lenient

log = structlog.get_logger()

DEFAULT_MIN_CONFIDENCE = 60.0

REFUSAL_PHRASES: tuple[str, ...] = (
    "cannot analyze",
    "unable to analyze",
    "no observation",
    "unclear image",
    "cannot see",
    "not visible",
    "i cannot",
    "i'm unable",
    "sorry",
)


def looks_like_refusal(text: str, phrases: tuple[str, ...] = REFUSAL_PHRASES) -> bool:
    lowered = text.lower()
    return any(p in lowered for p in phrases)


def coerce_confidence(value: Any) -> float | None:
    """Numeric confidence in [0, 100]; ``None`` if missing or non-numeric."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip().rstrip("%"))
        except ValueError:
            return None
    else:
        return None
    return max(0.0, min(100.0, number))


@dataclass(frozen=True)
class ValidationRules:
    min_length: int = 1
    reject_refusals: bool = False
    refusal_phrases: tuple[str, ...] = REFUSAL_PHRASES
    expect_json: bool = False
    allow_plain_text: bool = False
    min_confidence: float | None = None
    # Missing confidence is treated as this value (older prompts did not return one).
    default_confidence: float = 100.0
    validity_flags: tuple[str, ...] = ("is_valid", "is_valid_image")
    required_any_keys: tuple[str, ...] = ()
    # First non-empty key is put through the text checks (raw text if none present).
    checked_text_keys: tuple[str, ...] = ()


class ResponseValidator:
    def __init__(self, rules: ValidationRules | None = None):
        self.rules = rules or ValidationRules()

    def _text_problem(self, text: str) -> str | None:
        if len(text.strip()) < max(1, self.rules.min_length):
            return f"response shorter than {self.rules.min_length} characters"
        if self.rules.reject_refusals and looks_like_refusal(text, self.rules.refusal_phrases):
            return "response matched refusal phrase"
        return None

    def validate(self, raw: str | None) -> ValidatedResult:
        text = raw or ""
        if not text.strip():
            return ValidatedResult(is_valid=False, diagnostic_message="empty response")

        if not self.rules.expect_json:
            problem = self._text_problem(text)
            if problem:
                return ValidatedResult(is_valid=False, diagnostic_message=problem)
            return ValidatedResult(is_valid=True, payload=text.strip())

        try:
            data = parse_json_lenient(text)
        except JSONRepairError as e:
            if self.rules.allow_plain_text and self._text_problem(text) is None:
                log.debug("validator_plain_text_accepted", chars=len(text))
                return ValidatedResult(
                    is_valid=True,
                    payload=text.strip(),
                    confidence=self.rules.default_confidence,
                    diagnostic_message="unstructured response",
                )
            return ValidatedResult(is_valid=False, diagnostic_message=str(e))

        if not isinstance(data, Mapping):
            return ValidatedResult(is_valid=False, payload=data, diagnostic_message="expected a JSON object")
        return self.validate_structured(data, raw_text=text)

    def validate_structured(self, data: Mapping[str, Any], *, raw_text: str = "") -> ValidatedResult:
        payload = dict(data)
        confidence = coerce_confidence(payload.get("confidence"))
        if confidence is None:
            confidence = self.rules.default_confidence

        for flag in self.rules.validity_flags:
            if flag in payload and payload[flag] is False:
                return ValidatedResult(
                    is_valid=False,
                    payload=payload,
                    confidence=confidence,
                    diagnostic_message=f"{flag} is false",
                )

        if self.rules.min_confidence is not None and confidence < self.rules.min_confidence:
            return ValidatedResult(
                is_valid=False,
                payload=payload,
                confidence=confidence,
                diagnostic_message=f"confidence {confidence:g} below {self.rules.min_confidence:g}",
            )

        if self.rules.required_any_keys and not any(payload.get(k) for k in self.rules.required_any_keys):
            return ValidatedResult(
                is_valid=False,
                payload=payload,
                confidence=confidence,
                diagnostic_message="missing expected fields",
            )

        if self.rules.checked_text_keys:
            checked = next(
                (payload[k] for k in self.rules.checked_text_keys if isinstance(payload.get(k), str) and payload[k]),
                raw_text,
            )
            problem = self._text_problem(checked)
            if problem:
                return ValidatedResult(
                    is_valid=False,
                    payload=payload,
                    confidence=confidence,
                    diagnostic_message=problem,
                )

        return ValidatedResult(is_valid=True, payload=payload, confidence=confidence, raw_text=raw_text or None)
