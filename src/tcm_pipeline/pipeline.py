"""
Fallback controller.

Candidates are tried strictly in order, one at a time. The first result that
passes validation wins; when every candidate fails the endpoint's static
fallback payload is returned instead of an error.

    not_started -> trying(1) -> ... -> trying(n) -> succeeded | exhausted
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from .contracts import (
    CompletionAttempt,
    CompletionRequest,
    PipelineOutcome,
    RunState,
    StreamOutcome,
)
from .errors import CompletionTimeoutError, ProviderError, is_transient
from .metrics import pipeline_attempt_latency_seconds, pipeline_attempts_total, pipeline_runs_total
from .retry import NO_RETRY, RetryPolicy

if TYPE_CHECKING:
    from .endpoints import EndpointSpec

log = structlog.get_logger()


class Invoker(Protocol):
    async def invoke(
        self, model_id: str, request: CompletionRequest, timeout: float | None
    ) -> CompletionAttempt: ...

    def open_stream(self, model_id: str, request: CompletionRequest) -> AsyncIterator[str]: ...


async def _aclose(it: Any) -> None:
    aclose = getattr(it, "aclose", None)
    if callable(aclose):
        await aclose()


async def _static_stream(text: str) -> AsyncIterator[str]:
    yield text


class CompletionPipeline:
    def __init__(
        self,
        invoker: Invoker,
        *,
        retry: RetryPolicy = NO_RETRY,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.invoker = invoker
        self.retry = retry
        self._sleep: Callable[[float], Awaitable[None]] = sleeper or asyncio.sleep

    def _record(self, endpoint: str, attempt: CompletionAttempt, outcome: str) -> None:
        pipeline_attempts_total.labels(endpoint=endpoint, model=attempt.model_id, outcome=outcome).inc()
        pipeline_attempt_latency_seconds.labels(endpoint=endpoint).observe(max(0.0, attempt.latency_seconds))

    def _log_start(self, request: CompletionRequest, endpoint: EndpointSpec) -> None:
        log.debug(
            "pipeline_started",
            endpoint=endpoint.name,
            candidates=list(request.candidate_models),
            state=RunState.NOT_STARTED.value,
        )

    async def _backoff(self, retry_index: int, previous: CompletionAttempt) -> None:
        await self._sleep(
            self.retry.compute_backoff(retry_index - 1, retry_after_seconds=previous.retry_after_seconds)
        )

    async def _invoke_with_retry(
        self,
        model_id: str,
        request: CompletionRequest,
        endpoint: EndpointSpec,
        attempts: list[CompletionAttempt],
    ) -> CompletionAttempt:
        attempt: CompletionAttempt | None = None
        for retry_index in range(self.retry.attempts):
            if attempt is not None:
                await self._backoff(retry_index, attempt)
            attempt = await self.invoker.invoke(model_id, request, endpoint.timeout_seconds)
            attempts.append(attempt)
            if attempt.succeeded or not attempt.transient or retry_index == self.retry.attempts - 1:
                break
            self._record(endpoint.name, attempt, "error")
            log.info("pipeline_attempt_retrying", endpoint=endpoint.name, model=model_id, retry=retry_index + 1)
        assert attempt is not None
        return attempt

    async def run(self, request: CompletionRequest, endpoint: EndpointSpec) -> PipelineOutcome:
        """Run the fallback chain for a non-streaming endpoint. Never raises for provider failures."""
        validator = endpoint.validator()
        attempts: list[CompletionAttempt] = []
        last_reason: str | None = None
        self._log_start(request, endpoint)

        for rank, model_id in enumerate(request.candidate_models, start=1):
            log.debug("pipeline_trying", endpoint=endpoint.name, model=model_id, rank=rank, state=RunState.TRYING.value)
            attempt = await self._invoke_with_retry(model_id, request, endpoint, attempts)

            if not attempt.succeeded:
                last_reason = attempt.failure_reason
                self._record(endpoint.name, attempt, "error")
                log.warning(
                    "pipeline_attempt_failed",
                    endpoint=endpoint.name,
                    model=model_id,
                    rank=rank,
                    reason=attempt.failure_reason,
                )
                continue

            validated = validator.validate(attempt.raw_result)
            if not validated.is_valid:
                last_reason = f"invalid response: {validated.diagnostic_message}"
                attempts[-1] = dataclasses.replace(attempt, succeeded=False, failure_reason=last_reason)
                self._record(endpoint.name, attempt, "invalid")
                log.warning(
                    "pipeline_attempt_failed",
                    endpoint=endpoint.name,
                    model=model_id,
                    rank=rank,
                    reason=last_reason,
                )
                continue

            self._record(endpoint.name, attempt, "success")
            pipeline_runs_total.labels(endpoint=endpoint.name, state=RunState.SUCCEEDED.value).inc()
            log.info(
                "pipeline_succeeded",
                endpoint=endpoint.name,
                model=model_id,
                rank=rank,
                attempts=len(attempts),
            )
            payload = endpoint.contract.normalize(validated, model_rank=rank, model_id=model_id)
            return PipelineOutcome(
                state=RunState.SUCCEEDED,
                payload=payload,
                model_id=model_id,
                model_rank=rank,
                attempts=tuple(attempts),
                validated=validated,
            )

        pipeline_runs_total.labels(endpoint=endpoint.name, state=RunState.EXHAUSTED.value).inc()
        log.error(
            "pipeline_exhausted",
            endpoint=endpoint.name,
            candidates=list(request.candidate_models),
            attempts=len(attempts),
            last_reason=last_reason,
        )
        return PipelineOutcome(
            state=RunState.EXHAUSTED,
            payload=endpoint.contract.fallback(),
            model_id=None,
            model_rank=0,
            attempts=tuple(attempts),
        )

    async def _first_chunk(self, it: AsyncIterator[str]) -> str | None:
        async for chunk in it:
            if chunk:
                return chunk
        return None

    async def _open_first(
        self, model_id: str, request: CompletionRequest, endpoint: EndpointSpec
    ) -> tuple[CompletionAttempt, AsyncIterator[str] | None, str | None]:
        started = time.monotonic()
        it = self.invoker.open_stream(model_id, request).__aiter__()
        try:
            try:
                first = await asyncio.wait_for(self._first_chunk(it), timeout=endpoint.timeout_seconds or None)
            except asyncio.TimeoutError as e:
                raise CompletionTimeoutError(f"No output within {endpoint.timeout_seconds:g}s.") from e
        except ProviderError as e:
            await _aclose(it)
            return (
                CompletionAttempt(
                    model_id=model_id,
                    raw_result=None,
                    succeeded=False,
                    failure_reason=f"{type(e).__name__}: {e}",
                    latency_seconds=time.monotonic() - started,
                    transient=is_transient(e),
                    retry_after_seconds=getattr(e, "retry_after_seconds", None),
                ),
                None,
                None,
            )
        except BaseException:
            await _aclose(it)
            raise

        latency = time.monotonic() - started
        if first is None:
            await _aclose(it)
            return (
                CompletionAttempt(
                    model_id=model_id,
                    raw_result=None,
                    succeeded=False,
                    failure_reason="empty response",
                    latency_seconds=latency,
                ),
                None,
                None,
            )
        return CompletionAttempt(model_id=model_id, raw_result=first, succeeded=True, latency_seconds=latency), it, first

    async def _continue(
        self, endpoint: EndpointSpec, model_id: str, first: str, it: AsyncIterator[str]
    ) -> AsyncIterator[str]:
        try:
            yield first
            while True:
                try:
                    chunk = await asyncio.wait_for(it.__anext__(), timeout=endpoint.timeout_seconds or None)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    log.warning("pipeline_stream_stalled", endpoint=endpoint.name, model=model_id)
                    break
                except ProviderError as e:
                    # Output already committed to the client; end the stream where it stands.
                    log.warning("pipeline_stream_interrupted", endpoint=endpoint.name, model=model_id, error=str(e))
                    break
                if chunk:
                    yield chunk
        finally:
            await _aclose(it)

    async def stream(self, request: CompletionRequest, endpoint: EndpointSpec) -> StreamOutcome:
        """Fall back between candidates only until the first chunk has been produced."""
        attempts: list[CompletionAttempt] = []
        last_reason: str | None = None
        self._log_start(request, endpoint)

        for rank, model_id in enumerate(request.candidate_models, start=1):
            log.debug(
                "pipeline_trying",
                endpoint=endpoint.name,
                model=model_id,
                rank=rank,
                state=RunState.TRYING.value,
                stream=True,
            )
            for retry_index in range(self.retry.attempts):
                if retry_index:
                    await self._backoff(retry_index, attempt)
                attempt, it, first = await self._open_first(model_id, request, endpoint)
                attempts.append(attempt)
                if attempt.succeeded or not attempt.transient or retry_index == self.retry.attempts - 1:
                    break
                self._record(endpoint.name, attempt, "error")

            if it is None or first is None:
                last_reason = attempt.failure_reason
                self._record(endpoint.name, attempt, "error")
                log.warning(
                    "pipeline_attempt_failed",
                    endpoint=endpoint.name,
                    model=model_id,
                    rank=rank,
                    reason=attempt.failure_reason,
                )
                continue

            self._record(endpoint.name, attempt, "success")
            pipeline_runs_total.labels(endpoint=endpoint.name, state=RunState.SUCCEEDED.value).inc()
            log.info("pipeline_succeeded", endpoint=endpoint.name, model=model_id, rank=rank, attempts=len(attempts))
            return StreamOutcome(
                model_id=model_id,
                model_rank=rank,
                chunks=self._continue(endpoint, model_id, first, it),
                attempts=tuple(attempts),
            )

        pipeline_runs_total.labels(endpoint=endpoint.name, state=RunState.EXHAUSTED.value).inc()
        log.error(
            "pipeline_exhausted",
            endpoint=endpoint.name,
            candidates=list(request.candidate_models),
            attempts=len(attempts),
            last_reason=last_reason,
        )
        return StreamOutcome(
            model_id=None,
            model_rank=0,
            chunks=_static_stream(endpoint.contract.fallback()),
            attempts=tuple(attempts),
        )
