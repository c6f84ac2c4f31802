import asyncio

import pytest

from tcm_pipeline.streaming import deadline_stream, encode_text_stream


async def _collect(stream):
    return [piece async for piece in stream]


async def _pieces(*pieces, delay=0.0):
    for p in pieces:
        if delay:
            await asyncio.sleep(delay)
        yield p


@pytest.mark.asyncio
async def test_encode_text_stream_skips_empty_chunks():
    out = await _collect(encode_text_stream(_pieces("a", "", "中")))
    assert out == [b"a", "中".encode("utf-8")]


@pytest.mark.asyncio
async def test_deadline_stream_passes_through_without_limits():
    assert await _collect(deadline_stream(_pieces("a", "b"))) == ["a", "b"]


@pytest.mark.asyncio
async def test_deadline_stream_ends_on_idle_timeout():
    async def stalls():
        yield "first"
        await asyncio.sleep(10)
        yield "never"

    assert await _collect(deadline_stream(stalls(), idle_timeout=0.05)) == ["first"]


@pytest.mark.asyncio
async def test_deadline_stream_ends_on_total_timeout():
    out = await _collect(deadline_stream(_pieces(*"abcdefghij", delay=0.03), idle_timeout=1, total_timeout=0.1))
    assert 0 < len(out) < 10


@pytest.mark.asyncio
async def test_deadline_stream_closes_source():
    closed = []

    async def source():
        try:
            yield "a"
            await asyncio.sleep(10)
        finally:
            closed.append(True)

    await _collect(deadline_stream(source(), idle_timeout=0.05))
    assert closed == [True]
