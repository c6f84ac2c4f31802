from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from .config import PipelineConfig
from .crypto import decrypt_bytes, encrypt_bytes

log = structlog.get_logger()


@dataclass(frozen=True)
class AdminSettings:
    gemini_api_key: str | None = None
    system_prompts: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AdminSettings":
        prompts = payload.get("system_prompts") or {}
        if not isinstance(prompts, dict):
            raise ValueError("system_prompts must be a JSON object.")
        key = payload.get("gemini_api_key")
        return cls(
            gemini_api_key=key if isinstance(key, str) and key.strip() else None,
            system_prompts={str(k): str(v) for k, v in prompts.items() if isinstance(v, str)},
        )

    def to_payload(self) -> dict[str, Any]:
        return {"gemini_api_key": self.gemini_api_key, "system_prompts": dict(self.system_prompts)}


class AdminSettingsStore:
    """
    Encrypted-at-rest admin settings (Fernet).

    Stores ONE blob at `path` holding the Gemini API key and per-role system
    prompt overrides. Loaded once and cached; call `refresh()` after an admin
    edit made by another process.
    """

    def __init__(self, path: str, fernet_key: str):
        self.path = Path(path)
        self.fernet_key = fernet_key
        self._cached: AdminSettings | None = None

    def exists(self) -> bool:
        return self.path.exists()

    def _read(self) -> AdminSettings:
        if not self.path.exists():
            return AdminSettings()
        raw = decrypt_bytes(self.fernet_key, self.path.read_bytes())
        payload = json.loads(raw.decode("utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("Admin settings payload must be a JSON object.")
        return AdminSettings.from_payload(payload)

    def load(self) -> AdminSettings:
        if self._cached is None:
            self._cached = self._read()
        return self._cached

    def refresh(self) -> AdminSettings:
        self._cached = self._read()
        return self._cached

    def save(self, settings: AdminSettings) -> None:
        raw = json.dumps(settings.to_payload()).encode("utf-8")
        self.path.write_bytes(encrypt_bytes(self.fernet_key, raw))
        self._cached = settings

    def get_prompt(self, role: str) -> str | None:
        return self.load().system_prompts.get(role)

    def api_key(self) -> str | None:
        return self.load().gemini_api_key


def store_from_config(cfg: PipelineConfig) -> AdminSettingsStore | None:
    if not cfg.settings_path:
        return None
    if not cfg.settings_fernet_key:
        raise ValueError("SETTINGS_FERNET_KEY is required when SETTINGS_PATH is set.")
    return AdminSettingsStore(cfg.settings_path, cfg.settings_fernet_key)


def resolve_api_key(cfg: PipelineConfig, store: AdminSettingsStore | None = None) -> str | None:
    """Admin-configured key wins over ``GOOGLE_API_KEY``."""
    if store is not None:
        try:
            key = store.api_key()
        except (OSError, ValueError) as e:
            log.warning("admin_settings_unreadable", path=str(store.path), error=str(e))
            key = None
        if key:
            return key
    return cfg.google_api_key
