"""Single-producer, single-consumer chunk channel."""

import asyncio

from agentloop_core.chunks import Chunk

_CLOSED = object()


class ChunkChannel:
    """Async queue of chunks with an explicit close.

    The step loop pushes chunks with ``send``; the consumer iterates with
    ``async for``. Iteration ends once the channel is closed and drained.
    Sending on a closed channel is a no-op.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, chunk: Chunk) -> None:
        if self._closed:
            return
        await self._queue.put(chunk)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "ChunkChannel":
        return self

    async def __anext__(self) -> Chunk:
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the sentinel so repeated iteration also stops.
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item  # type: ignore[return-value]
