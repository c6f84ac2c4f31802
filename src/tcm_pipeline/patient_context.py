from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from .prompts import language_instruction

NOT_PROVIDED = "Not provided"

_RULE = "═" * 79


def _section(title: str) -> str:
    return f"\n{_RULE}\n{title:^79}\n{_RULE}\n"


def _as_float(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def compute_bmi(weight_kg: Any, height_cm: Any) -> float | None:
    weight = _as_float(weight_kg)
    height = _as_float(height_cm)
    if weight is None or height is None:
        return None
    return round(weight / (height / 100) ** 2, 1)


def bmi_category(bmi: float | None) -> str | None:
    if bmi is None:
        return None
    if bmi < 18.5:
        return "underweight"
    if bmi < 25:
        return "normal"
    if bmi < 30:
        return "overweight"
    return "obese"


def _value(info: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = info.get(key)
        if value not in (None, ""):
            return value
    return None


def basic_info_context(basic_info: Mapping[str, Any] | None) -> dict[str, Any]:
    info = basic_info or {}
    height = _value(info, "height")
    weight = _value(info, "weight")
    bmi = compute_bmi(weight, height)
    return {
        "name": _value(info, "name") or NOT_PROVIDED,
        "age": _value(info, "age") or NOT_PROVIDED,
        "gender": _value(info, "gender") or NOT_PROVIDED,
        "height": f"{height} cm" if height else NOT_PROVIDED,
        "weight": f"{weight} kg" if weight else NOT_PROVIDED,
        "bmi": bmi if bmi is not None else NOT_PROVIDED,
        "symptoms": _value(info, "symptoms", "mainComplaint") or NOT_PROVIDED,
        "symptom_duration": _value(info, "symptomDuration", "symptom_duration") or NOT_PROVIDED,
    }


def format_chat_history(messages: Iterable[Mapping[str, Any]], *, upper_roles: bool = False) -> str:
    lines = []
    for m in messages:
        role = str(m.get("role", "user"))
        label = f"[{role.upper()}]" if upper_roles else role
        lines.append(f"{label}: {m.get('content', '')}")
    return ("\n\n" if upper_roles else "\n").join(lines)


def _format_files(files: Iterable[Mapping[str, Any]] | None, empty_text: str, sep: str = "\n") -> str:
    items = list(files or [])
    if not items:
        return "None uploaded"
    return sep.join(f"- {f.get('name', 'file')}: {f.get('extractedText') or empty_text}" for f in items)


def build_inquiry_summary_input(
    *,
    chat_history: Iterable[Mapping[str, Any]],
    basic_info: Mapping[str, Any] | None = None,
    report_files: Iterable[Mapping[str, Any]] | None = None,
    medicine_files: Iterable[Mapping[str, Any]] | None = None,
) -> str:
    ctx = basic_info_context(basic_info)
    return (
        _section("PATIENT DATA FOR SUMMARY")
        + "\n## Patient Basic Info:\n"
        + f"- Name: {ctx['name']}\n"
        + f"- Age: {ctx['age']}\n"
        + f"- Gender: {ctx['gender']}\n"
        + f"- Chief Complaint: {ctx['symptoms']}\n"
        + f"- Symptom Duration: {ctx['symptom_duration']}\n"
        + "\n## Uploaded Medical Reports:\n"
        + _format_files(report_files, "No text extracted", sep="\n\n")
        + "\n\n## Current Medications (from uploaded images):\n"
        + _format_files(medicine_files, "No medication info extracted")
        + "\n\n## Complete Chat History (问诊记录):\n"
        + format_chat_history(chat_history, upper_roles=True)
        + "\n"
        + _section("INSTRUCTIONS")
        + "\nPlease generate a comprehensive yet concise medical summary based on the above data.\n"
        + "Follow the structured format specified in your system prompt.\n"
    )


def _observation_block(label: str, entry: Mapping[str, Any] | None, verified: str | None, missing: str | None) -> str:
    if verified:
        return f"\n{label}:\n{verified}\n"
    if entry and entry.get("observation"):
        out = f"\n{label}:\n{entry['observation']}\n"
        issues = entry.get("potential_issues") or []
        if issues:
            out += f"Indications: {', '.join(map(str, issues))}\n"
        return out
    return f"{missing}\n" if missing else ""


def _audio_block(audio: Mapping[str, Any] | None) -> str:
    if not audio or not audio.get("audio"):
        return "Voice Recording: Not provided\n"
    out = "Voice Recording: ✓ Provided\n"
    analysis = audio.get("analysis")
    if isinstance(analysis, Mapping):
        out += "\n--- AUDIO ANALYSIS RESULTS ---\n"
        out += f"Overall Observation: {analysis.get('overall_observation') or 'N/A'}\n"
        for key, label in (
            ("voice_quality_analysis", "Voice Quality"),
            ("breathing_patterns", "Breathing"),
            ("speech_patterns", "Speech"),
            ("cough_sounds", "Cough"),
        ):
            section = analysis.get(key)
            if isinstance(section, Mapping):
                out += f"{label}: {section.get('observation')} (Severity: {section.get('severity')})\n"
        patterns = analysis.get("pattern_suggestions") or []
        if patterns:
            out += f"Audio-suggested Patterns: {', '.join(map(str, patterns))}\n"
    elif audio.get("observation"):
        out += f"Voice Analysis: {audio['observation']}\n"
    if audio.get("transcription"):
        out += f"Voice Transcription: {audio['transcription']}\n"
    return out


_SMART_CONNECT_FIELDS = (
    ("pulseRate", "Pulse Rate (Heart Rate)", " BPM"),
    ("bloodPressure", "Blood Pressure", " mmHg"),
    ("bloodOxygen", "Blood Oxygen (SpO2)", "%"),
    ("bodyTemp", "Body Temperature", "°C"),
    ("hrv", "Heart Rate Variability (HRV)", " ms"),
    ("stressLevel", "Stress Level", ""),
)


def build_consult_input(data: Mapping[str, Any], *, language: str | None = None) -> str:
    """Flatten the intake wizard's collected data into the final-report user prompt."""
    verified = data.get("verified_summaries") or {}
    basic = data.get("basic_info") or {}
    ctx = basic_info_context(basic)

    out = _section("患者资料 PATIENT PROFILE")
    if verified.get("basic_info"):
        out += f"{verified['basic_info']}\n"
    else:
        out += (
            f"Name: {ctx['name']}\nAge: {ctx['age']}\nGender: {ctx['gender']}\n"
            f"Weight: {ctx['weight']}\nHeight: {ctx['height']}\n"
        )
        if ctx["bmi"] != NOT_PROVIDED:
            out += f"BMI: {ctx['bmi']} ({bmi_category(ctx['bmi'])})\n"
        out += f"Reported Symptoms: {ctx['symptoms']}\nSymptom Duration: {ctx['symptom_duration']}\n"

    out += _section("问诊数据 INQUIRY DATA")
    inquiry = data.get("wen_inquiry") or {}
    if verified.get("wen_inquiry"):
        out += f"{verified['wen_inquiry']}\n"
    elif len(inquiry.get("inquiryText") or "") > 50:
        out += f"Inquiry Summary: {inquiry['inquiryText']}\n(Full chat history omitted as summary is provided)\n"
    else:
        if inquiry.get("inquiryText"):
            out += f"Notes: {inquiry['inquiryText']}\n"
        chat = (data.get("wen_chat") or {}).get("chat")
        if isinstance(chat, list) and chat:
            out += f"\nChat History (问诊记录):\n{format_chat_history(chat)}\n"
        else:
            out += "Chat History: No chat recorded\n"

    out += _section("切诊数据 PULSE DATA")
    pulse = data.get("qie") or {}
    if verified.get("qie"):
        out += f"{verified['qie']}\n"
    else:
        out += f"Pulse BPM: {pulse['bpm']}\n" if pulse.get("bpm") else "Pulse not measured\n"

    out += _section("望诊数据 VISUAL OBSERVATIONS")
    out += _observation_block(
        "舌诊 Tongue Observation", data.get("wang_tongue"), verified.get("wang_tongue"), "Tongue: No observation recorded"
    )
    out += _observation_block(
        "面诊 Face Observation", data.get("wang_face"), verified.get("wang_face"), "Face: No observation recorded"
    )
    out += _observation_block("体部诊 Body Part Observation", data.get("wang_part"), verified.get("wang_part"), None)

    out += _section("闻诊数据 LISTENING DATA")
    out += f"{verified['wen_audio']}\n" if verified.get("wen_audio") else _audio_block(data.get("wen_audio"))

    smart = data.get("smart_connect")
    if smart:
        out += _section("智能设备数据 SMART HEALTH DEVICE DATA")
        if verified.get("smart_connect"):
            out += f"{verified['smart_connect']}\n"
        else:
            for key, label, unit in _SMART_CONNECT_FIELDS:
                if smart.get(key):
                    out += f"{label}: {smart[key]}{unit}\n"

    out += _section("诊断资料汇总 DIAGNOSTIC DATA SUMMARY")
    out += "\nData Availability Status:\n"
    checks = (
        ((data.get("wang_tongue") or {}).get("image"), "Tongue image provided", "No tongue image"),
        ((data.get("wang_face") or {}).get("image"), "Face image provided", "No face image"),
        ((data.get("wang_part") or {}).get("image"), "Body area image provided", "No body area image"),
        ((data.get("wen_audio") or {}).get("audio"), "Voice recording provided", "No voice recording"),
        (pulse.get("bpm"), "Pulse measurement taken", "No pulse measurement"),
        (smart, "Smart health device data connected", "No smart device data"),
    )
    for present, yes, no in checks:
        out += f"✓ {yes}\n" if present else f"✗ {no}\n"

    out += _section("REPORT REQUIREMENTS")
    out += _report_requirements(data.get("report_options"))
    out += language_instruction("final", language)
    return out


_OPTION_LINES = (
    ("includePatientName", "Include patient name", "OMIT patient name"),
    ("includePatientAge", "Include patient age", "OMIT patient age"),
    ("includePatientGender", "Include patient gender", "OMIT patient gender"),
    ("includeVitalSigns", "Include vital signs (BP, HR, Temperature)", "OMIT vital signs"),
    ("includeBMI", "Include BMI & body measurements", "OMIT BMI"),
    ("includeSmartConnectData", "Include smart device health data", "OMIT smart device data"),
    ("suggestMedicine", "MUST suggest herbal medicine formulas", "DO NOT suggest specific herbal medicines"),
    ("suggestDoctor", "MUST recommend consulting a nearby TCM doctor", "DO NOT suggest consulting doctors"),
    ("includeDietary", "MUST include dietary advice (食疗) with specific foods", "OMIT dietary advice"),
    ("includeLifestyle", "MUST include lifestyle recommendations (养生)", "OMIT lifestyle advice"),
    ("includeAcupuncture", "MUST include acupuncture points (穴位)", "OMIT acupuncture points"),
    ("includeExercise", "MUST include exercise recommendations", "OMIT exercise advice"),
    ("includeSleepAdvice", "MUST include sleep and rest guidance", "OMIT sleep advice"),
    ("includeEmotionalWellness", "MUST include emotional wellness guidance (情志调养)", "OMIT emotional wellness"),
    ("includePrecautions", "MUST include precautions and warning signs", "OMIT precautions"),
    ("includeFollowUp", "MUST include follow-up guidance with timeline", "OMIT follow-up guidance"),
)


def _report_requirements(options: Mapping[str, Any] | None) -> str:
    if not options:
        return (
            "Include a comprehensive TCM diagnosis with:\n"
            "- Patient information summary\n"
            "- Primary diagnosis and constitution assessment\n"
            "- Detailed analysis with key findings\n"
            "- Five Elements scores (0-100) for Liver, Heart, Spleen, Lung, Kidney with a 1-sentence justification each\n"
            "- Dietary recommendations (foods to eat and avoid)\n"
            "- Lifestyle suggestions\n"
            "- Herbal medicine formulas (中药方剂)\n"
            "- Acupuncture points for self-care\n"
            "- Precautions and follow-up guidance\n"
        )
    out = "IMPORTANT: Generate the report following EXACTLY these user-selected options.\n"
    for key, yes, no in _OPTION_LINES:
        out += f"✓ {yes}\n" if options.get(key) else f"✗ {no}\n"
    return out


def _joined(values: Any, sep: str = ", ") -> str | None:
    if isinstance(values, list) and values:
        return sep.join(str(v.get("name", v)) if isinstance(v, Mapping) else str(v) for v in values)
    return None


def _text_or_field(value: Any, field: str) -> str:
    if isinstance(value, Mapping):
        return str(value.get(field) or value)
    return str(value)


def build_report_context(report: Mapping[str, Any] | None, patient: Mapping[str, Any] | None = None) -> str:
    report = report or {}
    lines: list[str] = []

    if patient:
        ctx = basic_info_context(patient)
        lines += [
            "PATIENT INFORMATION:",
            f"- Name: {ctx['name']}",
            f"- Age: {ctx['age']}",
            f"- Gender: {ctx['gender']}",
            f"- Chief Complaint: {ctx['symptoms']}",
        ]

    diagnosis = report.get("diagnosis")
    if diagnosis:
        lines.append(f"\nMAIN DIAGNOSIS (辨证): {_text_or_field(diagnosis, 'primary_pattern')}")
        if isinstance(diagnosis, Mapping):
            if secondary := _joined(diagnosis.get("secondary_patterns")):
                lines.append(f"Secondary Patterns: {secondary}")
            if organs := _joined(diagnosis.get("affected_organs")):
                lines.append(f"Affected Organs: {organs}")

    constitution = report.get("constitution")
    if constitution:
        lines.append(f"\nCONSTITUTION TYPE: {_text_or_field(constitution, 'type')}")
        if isinstance(constitution, Mapping) and constitution.get("description"):
            lines.append(f"Description: {constitution['description']}")

    analysis = report.get("analysis")
    if analysis:
        lines.append(f"\nFINAL ANALYSIS (综合诊断): {_text_or_field(analysis, 'summary')}")

    recs = report.get("recommendations")
    if isinstance(recs, Mapping):
        lines.append("\nRECOMMENDATIONS:")
        food_therapy = recs.get("food_therapy")
        if not isinstance(food_therapy, Mapping):
            food_therapy = {}
        for label, value in (
            ("Beneficial Foods", _joined(food_therapy.get("beneficial"))),
            ("Recommended Foods", _joined(recs.get("food"))),
            ("Foods to Avoid", _joined(food_therapy.get("avoid"))),
            ("Avoid", _joined(recs.get("avoid"))),
            ("Lifestyle Advice", _joined(recs.get("lifestyle"), "; ")),
            ("Acupressure Points", _joined(recs.get("acupoints"))),
            ("Exercise", _joined(recs.get("exercise"), "; ")),
            ("Sleep Guidance", recs.get("sleep_guidance")),
            ("Emotional Wellness", recs.get("emotional_care")),
            ("Herbal Formulas", _joined(recs.get("herbal_formulas"))),
        ):
            if value:
                lines.append(f"- {label}: {value}")

    precautions = report.get("precautions")
    if isinstance(precautions, Mapping):
        lines.append("\nPRECAUTIONS:")
        if warnings := _joined(precautions.get("warning_signs"), "; "):
            lines.append(f"- Warning Signs: {warnings}")
        if contra := _joined(precautions.get("contraindications"), "; "):
            lines.append(f"- Contraindications: {contra}")

    follow_up = report.get("follow_up")
    if isinstance(follow_up, Mapping):
        lines.append("\nFOLLOW-UP:")
        if follow_up.get("timeline"):
            lines.append(f"- Timeline: {follow_up['timeline']}")
        if follow_up.get("expected_improvement"):
            lines.append(f"- Expected Improvement: {follow_up['expected_improvement']}")

    return "\n".join(lines)
