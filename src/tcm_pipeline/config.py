from __future__ import annotations

import os

from pydantic import BaseModel, Field

from .retry import RetryPolicy

GEMINI_DEV_API_BASE = "https://generativelanguage.googleapis.com/v1beta"


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


class PipelineConfig(BaseModel):
    # Gemini Developer API
    google_api_key: str | None = Field(default_factory=lambda: os.getenv("GOOGLE_API_KEY"))
    gemini_api_base: str = Field(default_factory=lambda: os.getenv("GEMINI_API_BASE", GEMINI_DEV_API_BASE))

    # Admin settings (encrypted API key + prompt overrides)
    settings_path: str | None = Field(default_factory=lambda: os.getenv("SETTINGS_PATH"))
    settings_fernet_key: str | None = Field(default_factory=lambda: os.getenv("SETTINGS_FERNET_KEY"))

    # Observability
    enable_metrics: bool = Field(default_factory=lambda: _env_flag("ENABLE_METRICS"))
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))

    # Server hardening
    enable_api_docs: bool = Field(default_factory=lambda: _env_flag("ENABLE_API_DOCS"))
    allowed_hosts: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("ALLOWED_HOSTS")))
    cors_allow_origins: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("CORS_ALLOW_ORIGINS")))
    # Base64 images and audio clips are sent inline.
    max_request_body_bytes: int = Field(
        default_factory=lambda: int(os.getenv("MAX_REQUEST_BODY_BYTES", str(10 * 1024 * 1024)))
    )
    max_inflight_requests: int = Field(default_factory=lambda: int(os.getenv("MAX_INFLIGHT_REQUESTS", "32")))
    max_messages: int = Field(default_factory=lambda: int(os.getenv("MAX_MESSAGES", "200")))

    # Validation
    min_confidence: float = Field(default_factory=lambda: float(os.getenv("MIN_CONFIDENCE", "60")))

    # Same-model retries for transient failures (1 = no retry)
    retry_max_attempts: int = Field(default_factory=lambda: int(os.getenv("RETRY_MAX_ATTEMPTS", "1")))
    retry_base_delay_seconds: float = Field(
        default_factory=lambda: float(os.getenv("RETRY_BASE_DELAY_SECONDS", "0.5"))
    )
    retry_backoff_multiplier: float = Field(
        default_factory=lambda: float(os.getenv("RETRY_BACKOFF_MULTIPLIER", "2.0"))
    )
    retry_max_delay_seconds: float = Field(
        default_factory=lambda: float(os.getenv("RETRY_MAX_DELAY_SECONDS", "8.0"))
    )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay_seconds=self.retry_base_delay_seconds,
            backoff_multiplier=self.retry_backoff_multiplier,
            max_delay_seconds=self.retry_max_delay_seconds,
        )

    def log_secrets(self) -> list[str]:
        return [s for s in (self.google_api_key, self.settings_fernet_key) if s]
