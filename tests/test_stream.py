"""Tests for ChunkStream backpressure and cancellation."""

import asyncio

import pytest

from agent_relay.runtime.chunks import AnswerToken, RunError
from agent_relay.runtime.stream import ChunkStream


async def _tokens(n, produced):
    for i in range(n):
        produced.append(i)
        yield AnswerToken(str(i))


class TestChunkStream:
    @pytest.mark.asyncio
    async def test_delivers_every_chunk_in_order(self):
        produced = []
        stream = ChunkStream(_tokens(20, produced), maxsize=2)

        got = [c.content async for c in stream]

        assert got == [str(i) for i in range(20)]

    @pytest.mark.asyncio
    async def test_producer_blocks_when_consumer_lags(self):
        produced = []
        stream = ChunkStream(_tokens(50, produced), maxsize=3)
        stream.start()

        for _ in range(10):
            await asyncio.sleep(0)

        # queue holds 3, plus the one the producer is waiting to put
        assert len(produced) <= 4
        await stream.cancel()

    @pytest.mark.asyncio
    async def test_no_chunks_after_cancel(self):
        produced = []
        stream = ChunkStream(_tokens(100, produced), maxsize=4)
        received = []

        async for chunk in stream:
            received.append(chunk)
            if len(received) == 2:
                await stream.cancel()

        assert [c.content for c in received] == ["0", "1"]
        assert stream.cancelled
        count = len(produced)
        await asyncio.sleep(0)
        assert len(produced) == count

    @pytest.mark.asyncio
    async def test_cancel_closes_the_producer(self):
        closed = asyncio.Event()

        async def producer():
            try:
                while True:
                    yield AnswerToken("x")
            finally:
                closed.set()

        stream = ChunkStream(producer(), maxsize=1)
        stream.start()
        for _ in range(3):
            await asyncio.sleep(0)
        await stream.cancel()
        await stream.cancel()

        assert closed.is_set()

    @pytest.mark.asyncio
    async def test_producer_crash_becomes_run_error(self):
        async def producer():
            yield AnswerToken("a")
            raise ValueError("boom")

        got = [c async for c in ChunkStream(producer())]

        assert got == [AnswerToken("a"), RunError("boom")]
