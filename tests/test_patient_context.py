import pytest

from tcm_pipeline.patient_context import (
    NOT_PROVIDED,
    basic_info_context,
    bmi_category,
    build_consult_input,
    build_inquiry_summary_input,
    build_report_context,
    compute_bmi,
    format_chat_history,
)
from tcm_pipeline.prompts import language_instruction


@pytest.mark.parametrize(
    ("weight", "height", "expected"),
    [(70, 175, 22.9), ("60", "160", 23.4), (None, 170, None), (70, 0, None), ("abc", 170, None)],
)
def test_compute_bmi(weight, height, expected):
    assert compute_bmi(weight, height) == expected


@pytest.mark.parametrize(
    ("bmi", "category"),
    [(17.0, "underweight"), (18.5, "normal"), (24.9, "normal"), (25.0, "overweight"), (31.2, "obese"), (None, None)],
)
def test_bmi_category(bmi, category):
    assert bmi_category(bmi) == category


def test_basic_info_context_defaults():
    ctx = basic_info_context(None)
    assert ctx["name"] == NOT_PROVIDED
    assert ctx["bmi"] == NOT_PROVIDED
    assert set(ctx) == {"name", "age", "gender", "height", "weight", "bmi", "symptoms", "symptom_duration"}


def test_basic_info_context_reads_camel_case_fields():
    ctx = basic_info_context(
        {"name": "Lim", "height": 170, "weight": 65, "mainComplaint": "insomnia", "symptomDuration": "2 weeks"}
    )
    assert ctx["symptoms"] == "insomnia"
    assert ctx["symptom_duration"] == "2 weeks"
    assert ctx["height"] == "170 cm"
    assert ctx["bmi"] == 22.5


def test_format_chat_history():
    msgs = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]
    assert format_chat_history(msgs) == "user: hi\nassistant: hello"
    assert format_chat_history(msgs, upper_roles=True) == "[USER]: hi\n\n[ASSISTANT]: hello"


def test_inquiry_summary_input_lists_files_and_history():
    text = build_inquiry_summary_input(
        chat_history=[{"role": "user", "content": "I sleep badly"}],
        basic_info={"name": "Lim"},
        report_files=[{"name": "blood.pdf", "extractedText": "Hb 12"}],
    )
    assert "- Name: Lim" in text
    assert "- blood.pdf: Hb 12" in text
    assert "[USER]: I sleep badly" in text
    assert "None uploaded" in text


def test_consult_input_prefers_verified_summaries():
    data = {
        "basic_info": {"name": "Lim", "age": 40},
        "verified_summaries": {"wang_tongue": "Verified: pale tongue"},
        "wang_tongue": {"observation": "unverified", "image": "AAAA"},
        "qie": {"bpm": 72},
    }
    text = build_consult_input(data, language="zh")

    assert "Verified: pale tongue" in text
    assert "unverified" not in text
    assert "Pulse BPM: 72" in text
    assert "✓ Tongue image provided" in text
    assert "✗ No voice recording" in text
    assert text.endswith(language_instruction("final", "zh"))


def test_consult_input_honours_report_options():
    text = build_consult_input({"report_options": {"suggestMedicine": False, "includeDietary": True}})
    assert "DO NOT suggest specific herbal medicines" in text
    assert "MUST include dietary advice" in text


def test_report_context_flattens_nested_report():
    report = {
        "diagnosis": {"primary_pattern": "Spleen Qi Deficiency", "secondary_patterns": ["Dampness"]},
        "constitution": {"type": "Qi deficient", "description": "Tires easily"},
        "recommendations": {"food": ["congee"], "avoid": ["cold drinks"]},
    }
    text = build_report_context(report, {"name": "Lim"})
    assert "MAIN DIAGNOSIS (辨证): Spleen Qi Deficiency" in text
    assert "Secondary Patterns: Dampness" in text
    assert "- Recommended Foods: congee" in text
    assert "- Avoid: cold drinks" in text
    assert "- Name: Lim" in text


def test_report_context_skips_sections_with_unexpected_shapes():
    report = {"recommendations": {"food_therapy": ["congee"], "food": ["millet"]}, "precautions": "rest"}
    text = build_report_context(report)
    assert "- Recommended Foods: millet" in text
    assert "Beneficial Foods" not in text
    assert "PRECAUTIONS" not in text
