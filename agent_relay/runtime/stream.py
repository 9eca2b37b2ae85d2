from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

from agent_relay.runtime.chunks import Chunk, RunError

logger = logging.getLogger("agent_relay.agent")

_END = object()


class ChunkStream:
    """
    Runs a chunk producer (usually `AgentLoop.run(...)`) in its own task and hands the
    chunks to exactly one consumer through a bounded queue.

    The producer waits when the consumer lags; nothing is dropped. `cancel()` stops the
    producer and guarantees the consumer sees no further chunks.
    """

    def __init__(self, source: AsyncIterator[Chunk], *, maxsize: int = 64):
        self._source = source
        self._queue: "asyncio.Queue[object]" = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        try:
            async for chunk in self._source:
                await self._queue.put(chunk)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Chunk producer failed")
            await self._queue.put(RunError(str(e)))
        finally:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    logger.debug("Error closing chunk producer", exc_info=True)
            if not self._cancelled:
                await self._queue.put(_END)

    async def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        # Wake a consumer blocked on get().
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_END)

    def __aiter__(self) -> AsyncIterator[Chunk]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[Chunk]:
        self.start()
        while True:
            item = await self._queue.get()
            if item is _END or self._cancelled:
                return
            yield item  # type: ignore[misc]
