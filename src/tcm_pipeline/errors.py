from __future__ import annotations


class PipelineError(Exception):
    """Base error for the completion pipeline."""


class ConfigurationError(PipelineError):
    """Missing or unusable configuration (e.g. no API key). Never retried."""


class InvalidRequestError(PipelineError):
    """Caller supplied malformed or incomplete input."""


class ProviderError(PipelineError):
    """Base error for generative provider failures."""


class AuthenticationError(ProviderError):
    pass


class RateLimitError(ProviderError):
    def __init__(self, retry_after_seconds: int | None = None, message: str = "Rate limited"):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class ModelNotFoundError(ProviderError):
    pass


class UpstreamUnavailableError(ProviderError):
    """Network failure or 5xx from the provider."""


class UpstreamProtocolError(ProviderError):
    """Unexpected upstream response shape / contract mismatch."""


class CompletionTimeoutError(ProviderError):
    """Per-endpoint wall-clock ceiling exceeded."""


class JSONRepairError(PipelineError):
    """Model output could not be parsed as JSON even after repair."""


_TRANSIENT = (RateLimitError, UpstreamUnavailableError, CompletionTimeoutError)


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, _TRANSIENT)


def user_facing_error(exc: BaseException | str) -> tuple[str, str]:
    """Return ``(message, code)`` safe to show to end users."""
    if isinstance(exc, ConfigurationError):
        return "The AI service is not configured. Please contact support.", "API_KEY_MISSING"
    if isinstance(exc, AuthenticationError):
        return "Invalid API key. Please check the configured Gemini API key.", "API_KEY_INVALID"
    if isinstance(exc, RateLimitError):
        return "API quota exceeded. Please wait a moment and try again.", "API_QUOTA_EXCEEDED"
    if isinstance(exc, ModelNotFoundError):
        return "AI model not available. Please try again or contact support.", "MODEL_NOT_FOUND"
    if isinstance(exc, CompletionTimeoutError):
        return "The AI service took too long to respond.", "TIMEOUT"

    text = str(exc).lower()
    if "leaked" in text or "api key was reported" in text:
        return "API key has been flagged as leaked. Please generate a new API key.", "API_KEY_LEAKED"
    if "api_key_invalid" in text or "invalid api key" in text:
        return "Invalid API key. Please check the configured Gemini API key.", "API_KEY_INVALID"
    if "quota" in text or "rate_limit" in text or "429" in text:
        return "API quota exceeded. Please wait a moment and try again.", "API_QUOTA_EXCEEDED"
    if "not found" in text or "does not exist" in text:
        return "AI model not available. Please try again or contact support.", "MODEL_NOT_FOUND"
    return "An error occurred. Please try again.", "UNKNOWN_ERROR"
