import pytest
import structlog

from tcm_pipeline.config import GEMINI_DEV_API_BASE, PipelineConfig
from tcm_pipeline.logging import _make_redaction_processor, configure_logging, truncate_media


def test_defaults(monkeypatch):
    for name in ("GOOGLE_API_KEY", "GEMINI_API_BASE", "RETRY_MAX_ATTEMPTS", "CORS_ALLOW_ORIGINS", "MIN_CONFIDENCE"):
        monkeypatch.delenv(name, raising=False)
    cfg = PipelineConfig()
    assert cfg.google_api_key is None
    assert cfg.gemini_api_base == GEMINI_DEV_API_BASE
    assert cfg.cors_allow_origins == []
    assert cfg.min_confidence == 60
    assert cfg.retry_policy().attempts == 1


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("GOOGLE_API_KEY", "AIza-env")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")
    monkeypatch.setenv("ENABLE_METRICS", "TRUE")
    monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("MIN_CONFIDENCE", "75")
    cfg = PipelineConfig()

    assert cfg.google_api_key == "AIza-env"
    assert cfg.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert cfg.enable_metrics is True
    assert cfg.retry_policy().attempts == 3
    assert cfg.min_confidence == 75
    assert cfg.log_secrets() == ["AIza-env"]


def test_retry_backoff_is_capped():
    policy = PipelineConfig(retry_max_attempts=4, retry_max_delay_seconds=1.0).retry_policy()
    assert policy.compute_backoff(10) <= 1.0 * 1.25 + 1e-9


def test_redaction_processor_hides_keys_and_truncates_media():
    processor = _make_redaction_processor(secrets=["AIza-secret"])
    event = processor(
        None,
        "info",
        {
            "event": "calling https://host/v1beta/models/m:generateContent?key=AIza-other&alt=sse",
            "api_key": "AIza-secret",
            "settings_fernet_key": "abc",
            "note": "key AIza-secret leaked",
            "body": {"image": "x" * 500, "inlineData": "y" * 10},
        },
    )

    assert "AIza-other" not in event["event"]
    assert "alt=sse" in event["event"]
    assert event["api_key"] == "[REDACTED]"
    assert event["settings_fernet_key"] == "[REDACTED]"
    assert event["note"] == "key [REDACTED] leaked"
    assert event["body"]["image"] == truncate_media("x" * 500)
    assert event["body"]["image"].endswith("[500 chars]")
    assert event["body"]["inlineData"] == "y" * 10


@pytest.mark.parametrize("fmt", ["json", "console"])
def test_configure_logging(fmt):
    configure_logging(level="DEBUG", fmt=fmt, secrets=["s"])
    structlog.get_logger().info("configured", fmt=fmt)
