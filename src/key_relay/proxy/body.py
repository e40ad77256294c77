"""Multi-reader broadcast buffer for replaying a request body.

A relayed request may be sent upstream once per active credential, and each
attempt needs an unconsumed copy of the inbound body.  :class:`BroadcastBody`
reads the inbound stream at most once and fans every chunk out to a fixed
number of branches.  Branches are handed out one at a time, in attempt order,
with :meth:`BroadcastBody.branch`.

Chunks are kept only while some open branch still has to read them: once a
branch is closed (its attempt finished) or discarded (an earlier credential
already succeeded), it no longer pins the buffer.  Branches that were never
handed out pin everything from the start, so at most one full buffering of
the body is held regardless of how many credentials are tried.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional


class BodyBranch:
    """One independent reader over a :class:`BroadcastBody`.

    Iterate it with ``async for``; pass it as ``content=`` to an httpx request
    to stream it upstream.
    """

    def __init__(self, owner: BroadcastBody, number: int) -> None:
        self._owner = owner
        self.number = number
        self.position = 0
        self.closed = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        while not self.closed:
            chunk = await self._owner._chunk_for(self)
            if chunk is None:
                return
            yield chunk

    def close(self) -> None:
        """Release this branch's hold on the buffer."""
        if not self.closed:
            self.closed = True
            self._owner._trim()


class BroadcastBody:
    """Fan one byte stream out to ``readers`` independent branches.

    Args:
        source: Inbound byte stream, or ``None`` for a request without body.
        readers: Number of branches that will be handed out.
    """

    def __init__(self, source: Optional[AsyncIterator[bytes]], readers: int) -> None:
        if readers < 1:
            raise ValueError("BroadcastBody needs at least one reader")
        self._source = source
        self._exhausted = source is None
        self._chunks: list[bytes] = []
        # Absolute index of self._chunks[0]; earlier chunks have been trimmed.
        self._offset = 0
        self._branches = [BodyBranch(self, number) for number in range(readers)]
        self._handed_out = 0
        self._pull_lock = asyncio.Lock()

    def branch(self) -> BodyBranch:
        """Hand out the next branch.

        Raises:
            IndexError: If every branch has already been handed out.
        """
        if self._handed_out >= len(self._branches):
            raise IndexError("All body branches have been handed out")
        branch = self._branches[self._handed_out]
        self._handed_out += 1
        return branch

    def discard(self) -> None:
        """Close every branch, handed out or not, and drop the buffer."""
        for branch in self._branches:
            branch.closed = True
        self._trim()

    async def _chunk_for(self, branch: BodyBranch) -> Optional[bytes]:
        while True:
            index = branch.position - self._offset
            if index < len(self._chunks):
                chunk = self._chunks[index]
                branch.position += 1
                self._trim()
                return chunk
            if self._exhausted:
                return None
            async with self._pull_lock:
                # Another branch may have pulled while this one waited.
                if branch.position - self._offset < len(self._chunks) or self._exhausted:
                    continue
                await self._pull()

    async def _pull(self) -> None:
        assert self._source is not None
        try:
            chunk = await self._source.__anext__()
        except StopAsyncIteration:
            self._exhausted = True
            return
        if chunk:
            self._chunks.append(chunk)

    def _trim(self) -> None:
        open_positions = [b.position for b in self._branches if not b.closed]
        if not open_positions:
            self._offset += len(self._chunks)
            self._chunks.clear()
            return
        drop = min(open_positions) - self._offset
        if drop > 0:
            del self._chunks[:drop]
            self._offset += drop
