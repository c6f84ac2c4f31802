from .config import PipelineConfig
from .contracts import (
    Attachment,
    CompletionAttempt,
    CompletionRequest,
    Message,
    OutputMode,
    PipelineOutcome,
    RunState,
    StreamOutcome,
    ValidatedResult,
)
from .endpoints import ENDPOINTS, EndpointSpec
from .gemini_session import CompletionInvoker, GeminiSession
from .pipeline import CompletionPipeline
from .prompts import assemble_prompt
from .retry import RetryPolicy
from .tiering import ModelTier, select_candidates
from .validation import ResponseValidator, ValidationRules

__all__ = [
    "Attachment",
    "CompletionAttempt",
    "CompletionInvoker",
    "CompletionPipeline",
    "CompletionRequest",
    "ENDPOINTS",
    "EndpointSpec",
    "GeminiSession",
    "Message",
    "ModelTier",
    "OutputMode",
    "PipelineConfig",
    "PipelineOutcome",
    "ResponseValidator",
    "RetryPolicy",
    "RunState",
    "StreamOutcome",
    "ValidatedResult",
    "ValidationRules",
    "assemble_prompt",
    "select_candidates",
]
