from tcm_pipeline.contracts import ValidatedResult
from tcm_pipeline.normalizer import (
    AUDIO_CONTRACT,
    AUDIO_FALLBACK_PAYLOAD,
    IMAGE_CONTRACT,
    IMAGE_FALLBACK_PAYLOAD,
    SUMMARY_CONTRACT,
    ExtractionRule,
    extract_first,
)


def test_extract_first_respects_alias_order_and_skips_empty_values():
    payload = {"observation": "", "analysis": "from analysis", "description": "from description"}
    assert extract_first(payload, ("observation", "analysis", "description")) == "from analysis"
    assert extract_first(payload, ("missing",), default="d") == "d"


def test_extraction_rule_uses_raw_text_only_when_asked():
    assert ExtractionRule("observation", ("observation",), from_text=True).apply("raw text") == "raw text"
    assert ExtractionRule("issues", ("issues",), default=[]).apply("raw text") == []


def test_image_contract_maps_aliases():
    validated = ValidatedResult(
        is_valid=True,
        payload={"description": "Thin white coat", "indications": ["Cold pattern"], "confidence": 72},
        confidence=72,
    )
    out = IMAGE_CONTRACT.normalize(validated, model_rank=2, model_id="gemini-2.0-flash")

    assert out["observation"] == "Thin white coat"
    assert out["potential_issues"] == ["Cold pattern"]
    assert out["confidence"] == 72
    assert out["tcm_indicators"] == []
    assert out["modelUsed"] == 2
    assert out["status"] == "Using rapid analysis..."


def test_image_contract_fills_missing_confidence_from_validation():
    validated = ValidatedResult(is_valid=True, payload={"observation": "x" * 60}, confidence=100.0)
    out = IMAGE_CONTRACT.normalize(validated, model_rank=1, model_id="gemini-2.5-pro")
    assert out["confidence"] == 100.0


def test_image_contract_accepts_plain_text_payload():
    validated = ValidatedResult(is_valid=True, payload="The tongue is pale and swollen.", confidence=100.0)
    out = IMAGE_CONTRACT.normalize(validated, model_rank=1, model_id="gemini-2.0-flash")
    assert out["observation"] == "The tongue is pale and swollen."
    assert out["potential_issues"] == []


def test_audio_contract_passes_through_and_keeps_model_status():
    validated = ValidatedResult(
        is_valid=True,
        payload={"overall_observation": "Quiet recording", "status": "silence", "recommendations": ["Re-record"]},
    )
    out = AUDIO_CONTRACT.normalize(validated, model_rank=1, model_id="gemini-2.5-pro")
    assert out["status"] == "silence"
    assert out["recommendations"] == ["Re-record"]
    assert out["modelUsed"] == 1


def test_audio_contract_marks_plain_text_as_partial():
    validated = ValidatedResult(is_valid=True, payload="Voice sounds weak and breathy throughout.")
    out = AUDIO_CONTRACT.normalize(validated, model_rank=2, model_id="gemini-2.0-flash")
    assert out["overall_observation"] == "Voice sounds weak and breathy throughout."
    assert out["status"] == "partial"


def test_summary_contract_has_no_model_info():
    out = SUMMARY_CONTRACT.normalize(ValidatedResult(is_valid=True, payload="Summary"), model_rank=1, model_id="m")
    assert out == {"summary": "Summary"}


def test_fallback_payloads_are_deep_copies():
    a = AUDIO_CONTRACT.fallback()
    a["voice_quality_analysis"]["tcm_indicators"].append("mutated")
    assert AUDIO_CONTRACT.fallback() == AUDIO_FALLBACK_PAYLOAD
    assert "mutated" not in AUDIO_FALLBACK_PAYLOAD["voice_quality_analysis"]["tcm_indicators"]

    img = IMAGE_CONTRACT.fallback()
    assert img == IMAGE_FALLBACK_PAYLOAD
    assert img is not IMAGE_FALLBACK_PAYLOAD
    assert img["modelUsed"] == 0
    assert img["status"] == "Analysis pending"


def test_raw_fallback_rule_uses_raw_text_when_no_alias_is_present():
    rule = ExtractionRule("observation", ("observation", "analysis"), from_text=True, raw_fallback=True)
    assert rule.apply({"notes": "n"}, '  {"notes": "n"}  ') == '{"notes": "n"}'
    assert rule.apply({"analysis": "from analysis"}, "raw") == "from analysis"
    assert rule.apply({"notes": "n"}) is None
    assert ExtractionRule("observation", ("observation",)).apply({"notes": "n"}, "raw") is None


def test_image_contract_falls_back_to_raw_text_for_observation():
    validated = ValidatedResult(
        is_valid=True, payload={"confidence": 90, "notes": "Thin coat"}, confidence=90, raw_text='{"notes": "Thin coat"}'
    )
    out = IMAGE_CONTRACT.normalize(validated, model_rank=1, model_id="gemini-2.0-flash")
    assert out["observation"] == '{"notes": "Thin coat"}'


def test_audio_contract_does_not_copy_raw_text_into_observation():
    validated = ValidatedResult(
        is_valid=True, payload={"voice_quality_analysis": {"observation": "Weak"}}, raw_text="{...}"
    )
    out = AUDIO_CONTRACT.normalize(validated, model_rank=1, model_id="gemini-2.5-pro")
    assert out["overall_observation"] is None
