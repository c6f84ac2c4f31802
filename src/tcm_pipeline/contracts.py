from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

Role = Literal["user", "assistant", "system"]


class OutputMode(str, Enum):
    STREAM = "stream"
    STRUCTURED = "structured"
    TEXT = "text"


class RunState(str, Enum):
    NOT_STARTED = "not_started"
    TRYING = "trying"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class Attachment:
    """Inline media sent alongside a message (base64, no data-URL prefix)."""

    mime_type: str
    data: str


@dataclass(frozen=True)
class Message:
    role: Role
    content: str
    attachments: tuple[Attachment, ...] = ()


@dataclass(frozen=True)
class GenerationOptions:
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass(frozen=True)
class CompletionRequest:
    system_prompt: str
    messages: tuple[Message, ...]
    candidate_models: tuple[str, ...]
    output_mode: OutputMode = OutputMode.TEXT
    response_schema: dict[str, Any] | None = None
    generation: GenerationOptions = field(default_factory=GenerationOptions)

    def __post_init__(self) -> None:
        if not self.candidate_models:
            raise ValueError("candidate_models must contain at least one model id.")

    def with_candidates(self, candidate_models: tuple[str, ...]) -> "CompletionRequest":
        return CompletionRequest(
            system_prompt=self.system_prompt,
            messages=self.messages,
            candidate_models=candidate_models,
            output_mode=self.output_mode,
            response_schema=self.response_schema,
            generation=self.generation,
        )


@dataclass(frozen=True)
class CompletionAttempt:
    model_id: str
    raw_result: str | None
    succeeded: bool
    failure_reason: str | None = None
    latency_seconds: float = 0.0
    # Failure may clear up on a same-model retry (rate limit, outage, timeout).
    transient: bool = False
    # Upstream Retry-After hint, rate-limited attempts only.
    retry_after_seconds: int | None = None


@dataclass(frozen=True)
class ValidatedResult:
    is_valid: bool
    payload: Any = None
    confidence: float | None = None
    diagnostic_message: str | None = None
    raw_text: str | None = None


@dataclass(frozen=True)
class PipelineOutcome:
    state: RunState
    payload: Any
    model_id: str | None
    model_rank: int
    attempts: tuple[CompletionAttempt, ...]
    validated: ValidatedResult | None = None

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.SUCCEEDED


@dataclass(frozen=True)
class StreamOutcome:
    model_id: str | None
    model_rank: int
    chunks: AsyncIterator[str]
    attempts: tuple[CompletionAttempt, ...] = ()

    @property
    def exhausted(self) -> bool:
        return self.model_id is None
