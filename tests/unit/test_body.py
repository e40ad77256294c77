"""Unit tests for the request body broadcast buffer.

Tests cover:
- Every branch yielding the full body in order
- The source being read at most once, whatever the number of readers
- Buffer trimming once branches close or are discarded
- Bodyless requests and branch hand-out limits
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest

from key_relay.proxy.body import BodyBranch, BroadcastBody


class CountingSource:
    """Async byte source that records how often it was pulled."""

    def __init__(self, chunks: list[bytes]) -> None:
        self._chunks = list(chunks)
        self.pulls = 0

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self

    async def __anext__(self) -> bytes:
        self.pulls += 1
        await asyncio.sleep(0)
        if not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)


async def read_all(branch: BodyBranch) -> bytes:
    return b"".join([chunk async for chunk in branch])


def buffered(body: BroadcastBody) -> int:
    return sum(len(chunk) for chunk in body._chunks)


class TestBroadcastBody:
    @pytest.mark.asyncio
    async def test_each_branch_reads_full_body(self) -> None:
        source = CountingSource([b"hello ", b"wor", b"ld"])
        body = BroadcastBody(source, readers=3)

        results = [await read_all(body.branch()) for _ in range(3)]

        assert results == [b"hello world"] * 3

    @pytest.mark.asyncio
    async def test_source_is_consumed_once(self) -> None:
        """Later branches replay from the buffer instead of the source."""
        source = CountingSource([b"a", b"b"])
        body = BroadcastBody(source, readers=4)

        for _ in range(4):
            await read_all(body.branch())

        # Two chunks plus the final StopAsyncIteration.
        assert source.pulls == 3

    @pytest.mark.asyncio
    async def test_concurrent_readers_share_pulls(self) -> None:
        source = CountingSource([b"x" * 10, b"y" * 10, b"z"])
        body = BroadcastBody(source, readers=2)
        first, second = body.branch(), body.branch()

        results = await asyncio.gather(read_all(first), read_all(second))

        assert results == [b"x" * 10 + b"y" * 10 + b"z"] * 2
        assert source.pulls == 4

    @pytest.mark.asyncio
    async def test_empty_chunks_are_skipped(self) -> None:
        source = CountingSource([b"", b"data", b""])
        body = BroadcastBody(source, readers=1)

        chunks = [chunk async for chunk in body.branch()]

        assert chunks == [b"data"]

    @pytest.mark.asyncio
    async def test_no_source_yields_nothing(self) -> None:
        body = BroadcastBody(None, readers=2)

        assert await read_all(body.branch()) == b""
        assert await read_all(body.branch()) == b""

    def test_at_least_one_reader_required(self) -> None:
        with pytest.raises(ValueError):
            BroadcastBody(None, readers=0)

    def test_branches_are_handed_out_once(self) -> None:
        body = BroadcastBody(None, readers=2)
        body.branch()
        body.branch()

        with pytest.raises(IndexError):
            body.branch()


class TestBufferTrimming:
    @pytest.mark.asyncio
    async def test_unhanded_branches_pin_the_buffer(self) -> None:
        """Chunks stay buffered while a later attempt may still need them."""
        body = BroadcastBody(CountingSource([b"abc", b"def"]), readers=2)

        first = body.branch()
        await read_all(first)
        first.close()

        assert buffered(body) == 6

    @pytest.mark.asyncio
    async def test_last_reader_finishing_releases_buffer(self) -> None:
        body = BroadcastBody(CountingSource([b"abc", b"def"]), readers=2)

        for _ in range(2):
            branch = body.branch()
            await read_all(branch)
            branch.close()

        assert buffered(body) == 0

    @pytest.mark.asyncio
    async def test_discard_drops_buffer_and_stops_readers(self) -> None:
        """Once a response is chosen the remaining branches are abandoned."""
        body = BroadcastBody(CountingSource([b"abc", b"def"]), readers=3)
        first = body.branch()
        await read_all(first)

        body.discard()

        assert buffered(body) == 0
        assert await read_all(body.branch()) == b""

    @pytest.mark.asyncio
    async def test_partially_read_branch_leaves_full_body_for_next(self) -> None:
        """An attempt abandoned mid-upload does not shorten the next one."""
        body = BroadcastBody(CountingSource([b"aa", b"bb", b"cc"]), readers=2)
        first = body.branch()
        async for _ in first:
            break
        first.close()

        assert await read_all(body.branch()) == b"aabbcc"
