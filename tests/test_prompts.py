import pytest

from tcm_pipeline.prompts import (
    DEFAULT_TEMPLATES,
    assemble_prompt,
    build_system_prompt,
    default_template,
    interpolate,
    language_instruction,
    normalize_language,
    resolve_template,
    user_instruction,
)


class DictSource:
    def __init__(self, prompts):
        self.prompts = prompts

    def get_prompt(self, role):
        return self.prompts.get(role)


class BrokenSource:
    def get_prompt(self, role):
        raise OSError("database unreachable")


def test_assemble_prompt_prepends_language_directive_and_keeps_unknown_placeholders():
    template = "Patient {{name}}, {{ age }} years. Note: {{unknown_field}}"
    out = assemble_prompt(template, {"name": "Tan", "age": 52}, "zh")

    directive = language_instruction("strict", "zh")
    assert out.startswith(directive + "\n\n")
    assert out.endswith("Patient Tan, 52 years. Note: {{unknown_field}}")


def test_none_values_are_left_as_placeholders():
    assert interpolate("{{a}}-{{b}}", {"a": None, "b": 0}) == "{{a}}-0"


def test_assemble_prompt_is_deterministic():
    a = assemble_prompt("Hi {{name}}", {"name": "Ali"}, "ms")
    b = assemble_prompt("Hi {{name}}", {"name": "Ali"}, "ms")
    assert a == b


@pytest.mark.parametrize(
    ("given", "expected"),
    [("en", "en"), ("ZH", "zh"), ("zh-CN", "zh"), ("ms_MY", "ms"), ("fr", "en"), (None, "en"), ("", "en")],
)
def test_normalize_language(given, expected):
    assert normalize_language(given) == expected


def test_final_instruction_differs_per_language():
    assert language_instruction("final", "en") != language_instruction("final", "zh")
    assert "Bahasa Malaysia" in language_instruction("final", "ms")


def test_override_wins_over_default():
    source = DictSource({"doctor_chat": "Custom {{name}}"})
    assert resolve_template("doctor_chat", source) == "Custom {{name}}"


def test_blank_override_falls_back_to_default():
    source = DictSource({"doctor_chat": "   "})
    assert resolve_template("doctor_chat", source) == DEFAULT_TEMPLATES["doctor_chat"]


def test_override_lookup_failure_falls_back_to_default():
    assert resolve_template("report_chat", BrokenSource()) == DEFAULT_TEMPLATES["report_chat"]


def test_unknown_role_without_override_raises():
    with pytest.raises(KeyError):
        default_template("no_such_role")


def test_build_system_prompt_interpolates_default_template():
    out = build_system_prompt("doctor_chat", context={"name": "Mei", "age": 30}, language="en")
    assert "Patient: Mei, 30 years" in out
    assert "{{gender}}" in out


def test_user_instruction_appends_patient_context():
    text = user_instruction("doctor_image_tongue", main_complaint="fatigue")
    assert "PATIENT CONTEXT" in text
    assert "Main Complaint: fatigue" in text
    assert "Symptoms: Not provided" in text
    assert "PATIENT CONTEXT" not in user_instruction("doctor_image_tongue")
