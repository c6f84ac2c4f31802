from __future__ import annotations

from collections.abc import Iterable
from enum import Enum

import structlog

log = structlog.get_logger()


class ModelTier(str, Enum):
    FAST = "fast"
    EXPERT = "expert"
    MASTER = "master"


DEFAULT_TIER = ModelTier.EXPERT

# Most capable first.
TIER_CANDIDATES: dict[ModelTier, tuple[str, ...]] = {
    ModelTier.MASTER: ("gemini-2.5-pro", "gemini-2.5-flash", "gemini-2.0-flash"),
    ModelTier.EXPERT: ("gemini-2.5-flash", "gemini-2.0-flash", "gemini-1.5-flash"),
    ModelTier.FAST: ("gemini-2.0-flash", "gemini-1.5-flash"),
}

DEFAULT_FALLBACK_MODELS: tuple[str, ...] = ("gemini-2.0-flash", "gemini-1.5-flash")
VISION_MODELS: tuple[str, ...] = ("gemini-2.0-flash", "gemini-1.5-flash")
AUDIO_MODELS: tuple[str, ...] = ("gemini-2.5-pro", "gemini-2.0-flash")
REPORT_CHAT_FALLBACK_MODELS: tuple[str, ...] = ("gemini-2.5-flash", "gemini-2.0-flash-exp", "gemini-2.0-flash")

# Patient-facing "doctor level" picked in the intake wizard.
DOCTOR_LEVEL_TIERS: dict[str, ModelTier] = {
    "master": ModelTier.MASTER,
    "expert": ModelTier.EXPERT,
    "physician": ModelTier.FAST,
}

MODEL_STATUS_MESSAGES: dict[str, str] = {
    "gemini-2.5-pro": "Using expert-level analysis...",
    "gemini-2.5-flash": "Using advanced analysis...",
    "gemini-2.0-flash": "Using rapid analysis...",
    "gemini-2.0-flash-exp": "Using rapid analysis...",
    "gemini-1.5-flash": "Using standard analysis...",
}


def _coerce_tier(tier: ModelTier | str | None) -> ModelTier | None:
    if isinstance(tier, ModelTier):
        return tier
    if not tier:
        return None
    try:
        return ModelTier(str(tier).strip().lower())
    except ValueError:
        return None


def select_candidates(tier: ModelTier | str | None) -> tuple[str, ...]:
    resolved = _coerce_tier(tier)
    if resolved is None:
        log.debug("model_tier_unrecognized", requested=tier, fallback=DEFAULT_TIER.value)
        resolved = DEFAULT_TIER
    return TIER_CANDIDATES[resolved]


def tier_for_doctor_level(level: str | None) -> ModelTier:
    if not level:
        return DEFAULT_TIER
    return DOCTOR_LEVEL_TIERS.get(level.strip().lower(), _coerce_tier(level) or DEFAULT_TIER)


def candidates_for(primary_model: str | None, fallbacks: Iterable[str]) -> tuple[str, ...]:
    ordered: list[str] = []
    for model_id in (primary_model, *fallbacks):
        if model_id and model_id not in ordered:
            ordered.append(model_id)
    return tuple(ordered)


def status_message(model_id: str | None) -> str:
    if not model_id:
        return "Analysis pending"
    return MODEL_STATUS_MESSAGES.get(model_id, "Analysis complete")
