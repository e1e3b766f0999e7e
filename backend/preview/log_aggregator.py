"""
Log Aggregator

Accumulates the streamed output of one spawned process and reports the
cumulative buffer after every chunk.
"""

from __future__ import annotations
import asyncio
import logging
from typing import AsyncIterator, Callable, Optional

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]


class LogAggregator:
    """
    Per-process output buffer.

    Every chunk is appended in arrival order and on_chunk is called
    synchronously with the cumulative buffer, even for empty chunks.
    There is no backpressure and nothing is dropped.
    """

    def __init__(self, name: str = "process", on_chunk: Optional[ChunkCallback] = None):
        self.name = name
        self.on_chunk = on_chunk
        self.chunk_count = 0
        self._buffer = ""
        self._task: Optional[asyncio.Task] = None

    @property
    def buffer(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> str:
        """Append one chunk, notify, and return the cumulative buffer"""
        self._buffer += chunk
        self.chunk_count += 1
        logger.debug(f"[{self.name}] {chunk!r}")

        if self.on_chunk:
            self.on_chunk(self._buffer)

        return self._buffer

    async def consume(self, stream: AsyncIterator[str]):
        """Read the stream to its end"""
        try:
            async for chunk in stream:
                self.feed(chunk)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error reading {self.name} output: {e}")

    def attach(self, stream: AsyncIterator[str], on_chunk: Optional[ChunkCallback] = None) -> asyncio.Task:
        """Start pumping the stream in the background

        Returns the pump task; it finishes when the stream ends.
        """
        if on_chunk is not None:
            self.on_chunk = on_chunk
        self._task = asyncio.ensure_future(self.consume(stream))
        return self._task

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    async def stop(self):
        """Stop pumping; chunks already fed stay in the buffer"""
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

