from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx
import structlog

from .config import GEMINI_DEV_API_BASE
from .contracts import CompletionAttempt, CompletionRequest, Message, OutputMode
from .errors import (
    AuthenticationError,
    CompletionTimeoutError,
    ConfigurationError,
    ModelNotFoundError,
    ProviderError,
    RateLimitError,
    UpstreamProtocolError,
    UpstreamUnavailableError,
    is_transient,
)

log = structlog.get_logger()

_ROLE_MAP = {"user": "user", "assistant": "model"}


def _retry_after(resp: httpx.Response) -> int | None:
    value = resp.headers.get("retry-after")
    return int(value) if value and value.isdigit() else None


def _raise_for_status(resp: httpx.Response, body: str) -> None:
    status = resp.status_code
    if status < 400:
        return
    if status in (401, 403) or (status == 400 and "API_KEY_INVALID" in body):
        raise AuthenticationError("Upstream rejected credentials (check the Gemini API key).")
    if status == 429:
        raise RateLimitError(retry_after_seconds=_retry_after(resp))
    if status == 404:
        raise ModelNotFoundError("Requested model is not available upstream.")
    if status >= 500:
        log.warning("gemini_upstream_5xx", status_code=status, body=body[:500])
        raise UpstreamUnavailableError(f"Upstream error {status}.")
    raise UpstreamProtocolError(f"Upstream error {status}.")


def _candidate_text(data: Any) -> str | None:
    """Concatenated text parts of the first candidate (``None`` if there are none)."""
    if not isinstance(data, dict):
        return None
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    if not isinstance(content, dict):
        return None
    parts = content.get("parts")
    if not isinstance(parts, list):
        return None
    texts = [p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)]
    return "".join(texts) if texts else None


class GeminiSession:
    """
    Thin client for the Gemini Developer API.

    Every call performs exactly one outbound request. Retries and model
    fallback belong to the pipeline, not here.
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        client: httpx.AsyncClient | None = None,
        base_url: str = GEMINI_DEV_API_BASE,
        timeout_seconds: float = 180,
    ):
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._base_url = base_url.rstrip("/")

    async def close(self) -> None:
        await self._client.aclose()

    def _params(self, **extra: str) -> dict[str, str]:
        if not self.api_key:
            raise ConfigurationError("Missing Gemini API key.")
        return {"key": self.api_key, **extra}

    def _build_payload(
        self,
        messages: Sequence[Message],
        *,
        system_instruction: str | None,
        temperature: float | None,
        max_tokens: int | None,
        response_mime_type: str | None = None,
        response_schema: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        system_parts = [system_instruction] if system_instruction else []
        contents: list[dict[str, Any]] = []
        for msg in messages:
            if msg.role == "system":
                if msg.content:
                    system_parts.append(msg.content)
                continue
            gemini_role = _ROLE_MAP.get(msg.role)
            if gemini_role is None:
                raise UpstreamProtocolError(f"Unsupported message role for upstream: {msg.role!r}")
            parts: list[dict[str, Any]] = [
                {"inlineData": {"mimeType": a.mime_type, "data": a.data}} for a in msg.attachments
            ]
            if msg.content or not parts:
                parts.append({"text": msg.content})
            contents.append({"role": gemini_role, "parts": parts})

        payload: dict[str, Any] = {"contents": contents}
        if system_parts:
            payload["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_parts)}]}

        generation_config: dict[str, Any] = {}
        if temperature is not None:
            generation_config["temperature"] = temperature
        if max_tokens is not None:
            generation_config["maxOutputTokens"] = max_tokens
        if response_mime_type:
            generation_config["responseMimeType"] = response_mime_type
        if response_schema:
            generation_config["responseSchema"] = response_schema
        if generation_config:
            payload["generationConfig"] = generation_config
        return payload

    async def _generate(self, model: str, payload: dict[str, Any]) -> str:
        url = f"{self._base_url}/models/{model}:generateContent"
        params = self._params()
        try:
            resp = await self._client.post(url, params=params, json=payload)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailableError("Upstream request timed out.") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError("Upstream request failed.") from e

        _raise_for_status(resp, resp.text)
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamProtocolError("Upstream returned a non-JSON body.") from e

        text = _candidate_text(data)
        if text is None:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason") if isinstance(data, dict) else None
            if block_reason:
                raise UpstreamProtocolError(f"Prompt blocked upstream ({block_reason}).")
            raise UpstreamProtocolError("Missing text in upstream response.")

        log.debug("gemini_generate_ok", model=model, chars=len(text))
        return text

    async def generate_chat(
        self,
        *,
        model: str,
        messages: Sequence[Message],
        system_instruction: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        payload = self._build_payload(
            messages, system_instruction=system_instruction, temperature=temperature, max_tokens=max_tokens
        )
        return await self._generate(model, payload)

    async def generate_structured(
        self,
        *,
        model: str,
        messages: Sequence[Message],
        system_instruction: str | None = None,
        response_schema: dict[str, Any] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        payload = self._build_payload(
            messages,
            system_instruction=system_instruction,
            temperature=temperature,
            max_tokens=max_tokens,
            response_mime_type="application/json",
            response_schema=response_schema,
        )
        return await self._generate(model, payload)

    async def stream_chat(
        self,
        *,
        model: str,
        messages: Sequence[Message],
        system_instruction: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        payload = self._build_payload(
            messages, system_instruction=system_instruction, temperature=temperature, max_tokens=max_tokens
        )
        url = f"{self._base_url}/models/{model}:streamGenerateContent"
        params = self._params(alt="sse")
        try:
            async with self._client.stream("POST", url, params=params, json=payload) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    _raise_for_status(resp, body)

                async for line in resp.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    raw = line[len("data:") :].strip()
                    if not raw:
                        continue
                    try:
                        event = json.loads(raw)
                    except json.JSONDecodeError as e:
                        raise UpstreamProtocolError("Failed to decode upstream SSE JSON.") from e
                    text = _candidate_text(event)
                    if text:
                        yield text
        except httpx.TimeoutException as e:
            raise UpstreamUnavailableError("Upstream request timed out.") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError("Upstream request failed.") from e


class CompletionInvoker:
    """Runs one model call under a wall-clock ceiling and records the attempt."""

    def __init__(self, session: GeminiSession):
        self.session = session

    async def complete(self, model_id: str, request: CompletionRequest) -> str:
        kwargs: dict[str, Any] = {
            "model": model_id,
            "messages": request.messages,
            "system_instruction": request.system_prompt or None,
            "temperature": request.generation.temperature,
            "max_tokens": request.generation.max_tokens,
        }
        if request.output_mode is OutputMode.STRUCTURED:
            return await self.session.generate_structured(response_schema=request.response_schema, **kwargs)
        return await self.session.generate_chat(**kwargs)

    async def invoke(self, model_id: str, request: CompletionRequest, timeout: float | None) -> CompletionAttempt:
        """Never raises for provider failures; ``ConfigurationError`` propagates."""
        started = time.monotonic()
        try:
            try:
                raw = await asyncio.wait_for(self.complete(model_id, request), timeout=timeout or None)
            except asyncio.TimeoutError as e:
                raise CompletionTimeoutError(f"No response within {timeout:g}s.") from e
        except ProviderError as e:
            return CompletionAttempt(
                model_id=model_id,
                raw_result=None,
                succeeded=False,
                failure_reason=f"{type(e).__name__}: {e}",
                latency_seconds=time.monotonic() - started,
                transient=is_transient(e),
                retry_after_seconds=getattr(e, "retry_after_seconds", None),
            )
        return CompletionAttempt(
            model_id=model_id,
            raw_result=raw,
            succeeded=True,
            latency_seconds=time.monotonic() - started,
        )

    def open_stream(self, model_id: str, request: CompletionRequest) -> AsyncIterator[str]:
        return self.session.stream_chat(
            model=model_id,
            messages=request.messages,
            system_instruction=request.system_prompt or None,
            temperature=request.generation.temperature,
            max_tokens=request.generation.max_tokens,
        )
