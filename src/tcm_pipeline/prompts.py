"""
Prompt assembly for the TCM completion endpoints.

A prompt is built from three layers:
  - a template (an admin override stored under a prompt role, or the default below)
  - ``{{placeholder}}`` interpolation from patient context
  - a language directive, always prepended

Unresolved placeholders are left verbatim so older templates keep working when
new context fields are introduced (and vice versa).
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Literal, Protocol

import structlog

log = structlog.get_logger()

SUPPORTED_LANGUAGES = ("en", "zh", "ms")
DEFAULT_LANGUAGE = "en"

LanguageMode = Literal["strict", "final"]

_LANGUAGE_DIRECTIVES: dict[str, dict[str, str]] = {
    "strict": {
        "en": "You MUST respond entirely in English. Be clear, friendly, and educational.",
        "zh": "你必须完全使用简体中文回复。语言要清晰、友好、有教育性。",
        "ms": "Anda MESTI menjawab sepenuhnya dalam Bahasa Malaysia. Jelas, mesra, dan bersifat mendidik.",
    },
    "final": {
        "en": "\n\nIMPORTANT: Write every field of the report in English. Keep JSON keys in English.",
        "zh": "\n\n重要：报告的所有内容必须使用简体中文书写。JSON 键名保持英文。",
        "ms": "\n\nPENTING: Tulis setiap bahagian laporan dalam Bahasa Malaysia. Kekalkan kunci JSON dalam Bahasa Inggeris.",
    },
}

_LANGUAGE_ALIASES = {
    "english": "en",
    "chinese": "zh",
    "zh-cn": "zh",
    "zh-hans": "zh",
    "zh-sg": "zh",
    "zh-my": "zh",
    "malay": "ms",
    "bm": "ms",
    "ms-my": "ms",
}

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def normalize_language(language: str | None) -> str:
    if not language:
        return DEFAULT_LANGUAGE
    code = language.strip().lower().replace("_", "-")
    if code in SUPPORTED_LANGUAGES:
        return code
    if code in _LANGUAGE_ALIASES:
        return _LANGUAGE_ALIASES[code]
    base = code.split("-", 1)[0]
    return base if base in SUPPORTED_LANGUAGES else DEFAULT_LANGUAGE


def language_instruction(mode: LanguageMode, language: str | None) -> str:
    directives = _LANGUAGE_DIRECTIVES[mode]
    return directives[normalize_language(language)]


def interpolate(template: str, context: Mapping[str, Any]) -> str:
    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in context or context[key] is None:
            return match.group(0)
        return str(context[key])

    return _PLACEHOLDER_RE.sub(_replace, template)


def assemble_prompt(template: str, context: Mapping[str, Any] | None, language: str | None) -> str:
    body = interpolate(template, context or {})
    return f"{language_instruction('strict', language)}\n\n{body}"


class PromptSource(Protocol):
    def get_prompt(self, role: str) -> str | None: ...


DEFAULT_TEMPLATES: dict[str, str] = {
    "doctor_chat": """\
You are an experienced TCM physician conducting Wen Zhen (问诊), the inquiry examination.

Patient: {{name}}, {{age}} years, {{gender}}.
Chief complaint: {{symptoms}} (duration: {{symptom_duration}}).

Ask ONE focused question at a time about sleep, appetite, digestion, thirst,
temperature preference, sweating, emotions and pain. Keep each reply short and
warm. Do not give a final diagnosis; say so when asked.""",
    "doctor_image_tongue": """\
You are an expert TCM practitioner performing Shé Zhěn (舌诊), tongue inspection.

1. STRICT VALIDATION: the image MUST be a clear, close-up photo of a tongue.
   Otherwise set "is_valid_image": false.
2. Describe tongue colour, shape, coating, moisture and sublingual veins.
3. Use TCM terminology with Chinese and English terms.

Return a valid JSON object only, no markdown:
{"is_valid_image": boolean, "image_description": string, "observation": string,
 "tcm_indicators": [string], "pattern_suggestions": [string],
 "analysis_tags": [{"title": string, "confidence": number}],
 "confidence": 0-100, "notes": string}""",
    "doctor_image_face": """\
You are an expert TCM practitioner performing facial inspection (面诊).

The image MUST show a human face; otherwise set "is_valid_image": false.
Describe complexion, lustre, colour zones mapped to the Zang-Fu organs, eyes and lips.

Return a valid JSON object only, no markdown:
{"is_valid_image": boolean, "image_description": string, "observation": string,
 "potential_issues": [string], "confidence": 0-100, "notes": string}""",
    "doctor_image_body": """\
You are an expert TCM practitioner inspecting a body area the patient is concerned about.

Describe colour, texture, swelling and any lesions, and relate them to TCM patterns.

Return a valid JSON object only, no markdown:
{"is_valid_image": boolean, "image_description": string, "observation": string,
 "potential_issues": [string], "confidence": 0-100, "notes": string}""",
    "doctor_listening": """\
You are an expert TCM practitioner performing Wén Zhěn (闻诊), the listening examination.

Analyze voice quality, breathing patterns, speech patterns and cough sounds.
Rate each category as normal / mild / moderate / significant.
If the audio is silent or contains only noise, return "status": "silence".

Return a valid JSON object only:
{"overall_observation": string,
 "voice_quality_analysis": {"observation": string, "severity": string, "tcm_indicators": [string], "clinical_significance": string},
 "breathing_patterns": {...}, "speech_patterns": {...}, "cough_sounds": {...},
 "pattern_suggestions": [string], "recommendations": [string], "confidence": string, "notes": string}""",
    "doctor_inquiry_summary": """\
You are a TCM physician assistant summarizing an inquiry session (问诊总结) for the lead physician.

Produce a concise clinical summary with: main symptoms (duration, severity, triggers),
relevant medical history, current medications, TCM-relevant signs (sleep, appetite,
digestion, emotions) and any red flags. Do not make a diagnosis.""",
    "doctor_final": """\
You are a senior TCM physician synthesizing the Four Examinations (望闻问切) into a
diagnosis report.

Return a valid JSON object only with: patient_summary, diagnosis (primary_pattern,
secondary_patterns, affected_organs, pathomechanism), constitution (type,
description), analysis (summary, key_findings, five_elements), recommendations,
precautions, follow_up and disclaimer.""",
    "report_chat": """\
You are a helpful TCM assistant helping a patient understand their diagnosis report.

PATIENT'S TCM DIAGNOSIS REPORT
{{report_context}}

Answer questions about this report in plain language, explain TCM terminology,
and keep replies to 2-4 paragraphs. Do not diagnose new conditions or change the
assessment; encourage consulting a licensed TCM practitioner.""",
}


# User-turn text sent alongside an attachment.
USER_INSTRUCTIONS: dict[str, str] = {
    "doctor_image_tongue": "Analyze this tongue image following TCM tongue diagnosis principles. Return only the JSON object.",
    "doctor_image_face": "Analyze this facial image following TCM facial diagnosis principles. Return only the JSON object.",
    "doctor_image_body": "Analyze this body area image from a TCM perspective. Return only the JSON object.",
    "doctor_listening": "Analyze this voice recording for the TCM listening examination. Return only the JSON object.",
}


def user_instruction(role: str, *, main_complaint: str | None = None, symptoms: str | None = None) -> str:
    text = USER_INSTRUCTIONS.get(role, "Analyze the attached media.")
    if main_complaint or symptoms:
        text += (
            "\n\nPATIENT CONTEXT:\n"
            f"Main Complaint: {main_complaint or 'Not provided'}\n"
            f"Symptoms: {symptoms or 'Not provided'}"
        )
    return text


def default_template(role: str) -> str:
    try:
        return DEFAULT_TEMPLATES[role]
    except KeyError as e:
        raise KeyError(f"No default prompt template for role {role!r}") from e


def resolve_template(role: str, source: PromptSource | None = None) -> str:
    if source is not None:
        try:
            override = source.get_prompt(role)
        except Exception as e:
            log.warning("prompt_override_lookup_failed", role=role, error=str(e))
            override = None
        if override and override.strip():
            log.debug("prompt_override_used", role=role)
            return override
    return default_template(role)


def build_system_prompt(
    role: str,
    *,
    context: Mapping[str, Any] | None = None,
    language: str | None = None,
    source: PromptSource | None = None,
) -> str:
    return assemble_prompt(resolve_template(role, source), context, language)
