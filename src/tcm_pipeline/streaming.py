from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import structlog

log = structlog.get_logger()

TEXT_STREAM_MEDIA_TYPE = "text/plain; charset=utf-8"


async def encode_text_stream(text_stream: AsyncIterator[str]) -> AsyncIterator[bytes]:
    async for piece in text_stream:
        if not piece:
            continue
        yield piece.encode("utf-8")


async def deadline_stream(
    text_stream: AsyncIterator[str],
    *,
    idle_timeout: float | None = None,
    total_timeout: float | None = None,
) -> AsyncIterator[str]:
    """Stop a committed stream that stalls or runs past its total budget.

    The response status is already sent by then, so the stream is ended rather
    than turned into an error.
    """
    it = text_stream.__aiter__()
    try:
        loop = asyncio.get_running_loop()
        total_deadline = max(0.0, float(total_timeout or 0))
        idle = max(0.0, float(idle_timeout or 0))
        started = loop.time()

        while True:
            remaining_total: float | None = None
            if total_deadline > 0:
                remaining_total = total_deadline - (loop.time() - started)
                if remaining_total <= 0:
                    log.warning("stream_total_timeout", seconds=total_deadline)
                    break

            timeout: float | None = idle or None
            if remaining_total is not None:
                timeout = remaining_total if timeout is None else min(timeout, remaining_total)

            try:
                piece = await asyncio.wait_for(anext(it), timeout=timeout)
            except StopAsyncIteration:
                break
            except asyncio.TimeoutError:
                log.warning("stream_idle_timeout", seconds=timeout)
                break
            yield piece
    finally:
        aclose = getattr(it, "aclose", None)
        if callable(aclose):
            await aclose()
