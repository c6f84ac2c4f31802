import json

import pytest

from tcm_pipeline.endpoints import AUDIO_RULES, IMAGE_RULES
from tcm_pipeline.validation import (
    ResponseValidator,
    ValidationRules,
    coerce_confidence,
    looks_like_refusal,
)

LONG_OBSERVATION = "Red tongue body with a thick yellow greasy coating concentrated at the root."


def _image(**fields) -> str:
    payload = {"is_valid_image": True, "observation": LONG_OBSERVATION}
    payload.update(fields)
    return json.dumps(payload)


@pytest.mark.parametrize(
    ("confidence", "valid"),
    [(59.9, False), (0, False), (60, True), (61, True), ("75%", True), ("45", False)],
)
def test_confidence_threshold_is_inclusive_at_sixty(confidence, valid):
    result = ResponseValidator(IMAGE_RULES).validate(_image(confidence=confidence))
    assert result.is_valid is valid


def test_missing_confidence_is_treated_as_full():
    result = ResponseValidator(IMAGE_RULES).validate(_image())
    assert result.is_valid
    assert result.confidence == 100.0


@pytest.mark.parametrize("flag", ["is_valid", "is_valid_image"])
def test_explicit_validity_flag_false_is_invalid(flag):
    result = ResponseValidator(IMAGE_RULES).validate(_image(**{flag: False}, confidence=95))
    assert not result.is_valid
    assert flag in result.diagnostic_message


def test_empty_response_is_invalid():
    result = ResponseValidator().validate("   ")
    assert not result.is_valid
    assert result.diagnostic_message == "empty response"


def test_short_observation_is_invalid():
    result = ResponseValidator(IMAGE_RULES).validate(_image(observation="Pale."))
    assert not result.is_valid


def test_refusal_in_observation_is_invalid():
    text = "I'm unable to determine the tongue features in this photo due to the lighting conditions."
    result = ResponseValidator(IMAGE_RULES).validate(_image(observation=text))
    assert not result.is_valid
    assert "refusal" in result.diagnostic_message


def test_observation_alias_is_checked_when_observation_missing():
    payload = json.dumps({"analysis": "Too short", "confidence": 90})
    assert not ResponseValidator(IMAGE_RULES).validate(payload).is_valid


def test_plain_text_is_accepted_when_allowed():
    result = ResponseValidator(IMAGE_RULES).validate(LONG_OBSERVATION)
    assert result.is_valid
    assert result.payload == LONG_OBSERVATION


def test_plain_text_refusal_is_rejected():
    text = "Sorry, the image is too dark for me to make out any of the features of the tongue."
    assert not ResponseValidator(IMAGE_RULES).validate(text).is_valid


def test_plain_text_rejected_when_json_required():
    rules = ValidationRules(expect_json=True)
    result = ResponseValidator(rules).validate("no json here")
    assert not result.is_valid


def test_non_object_json_is_invalid():
    rules = ValidationRules(expect_json=True)
    assert not ResponseValidator(rules).validate("[1, 2]").is_valid


def test_required_any_keys():
    rules = ValidationRules(expect_json=True, required_any_keys=("summary", "analysis"))
    validator = ResponseValidator(rules)
    assert not validator.validate('{"other": 1}').is_valid
    assert validator.validate('{"analysis": "x"}').is_valid


def test_repaired_json_passes_validation():
    raw = "```json\n" + _image(confidence=80)[:-1] + ', "notes": "x",}\n```'
    result = ResponseValidator(IMAGE_RULES).validate(raw)
    assert result.is_valid
    assert result.payload["notes"] == "x"


def test_audio_string_confidence_does_not_block():
    payload = json.dumps({"overall_observation": "Voice is weak and low with shallow breathing.", "confidence": "low"})
    assert ResponseValidator(AUDIO_RULES).validate(payload).is_valid


def test_text_mode_refusal_only_checked_when_enabled():
    text = "Sorry to hear about your headaches; let's look at your sleep."
    assert ResponseValidator(ValidationRules()).validate(text).is_valid
    assert not ResponseValidator(ValidationRules(reject_refusals=True)).validate(text).is_valid


def test_looks_like_refusal_is_case_insensitive():
    assert looks_like_refusal("I CANNOT see the tongue")
    assert not looks_like_refusal("The coating is thin and white")


@pytest.mark.parametrize(
    ("value", "expected"),
    [(85, 85.0), ("85%", 85.0), (150, 100.0), (-3, 0.0), (True, None), (None, None), ("high", None)],
)
def test_coerce_confidence(value, expected):
    assert coerce_confidence(value) == expected


def test_audio_rules_require_an_audio_section():
    assert not ResponseValidator(AUDIO_RULES).validate(json.dumps({"foo": "bar"})).is_valid
    ok = json.dumps({"voice_quality_analysis": {"observation": "Hoarse", "severity": "mild"}})
    assert ResponseValidator(AUDIO_RULES).validate(ok).is_valid


def test_audio_plain_text_needs_fifty_characters():
    assert not ResponseValidator(AUDIO_RULES).validate("Voice sounds weak and breathy.").is_valid
    long_text = "Voice sounds weak and breathy throughout, with frequent pauses for breath."
    assert ResponseValidator(AUDIO_RULES).validate(long_text).is_valid


def test_structured_result_keeps_raw_text():
    raw = json.dumps({"overall_observation": "Weak voice with shallow breathing and frequent sighs."})
    assert ResponseValidator(AUDIO_RULES).validate(raw).raw_text == raw
