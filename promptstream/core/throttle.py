"""
Time-windowed batching of a chunk stream.

The token generator can produce hundreds of chunks per second while the
front end only needs a few updates per second. `throttle` sits between them:

1. A pump task drains the source into a buffer as fast as it produces
2. Every `interval` seconds the buffered chunks are folded into one batch
3. Windows with nothing buffered emit nothing
4. When the source ends, whatever is still buffered goes out as a last batch

The producer is never blocked by a slow consumer.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import AsyncIterable, AsyncIterator, Callable, TypeVar

from ..inference.base import Chunk

logger = logging.getLogger(__name__)

C = TypeVar("C")
B = TypeVar("B")

Reducer = Callable[[B | None, C], B]


@dataclass
class Batch:
    """Chunks collected within one throttle window, in arrival order."""

    chunks: list[Chunk] = field(default_factory=list)

    @property
    def text(self) -> str:
        """Concatenated text delta of the window."""
        return "".join(chunk.text for chunk in self.chunks if chunk.text)

    @property
    def stats(self) -> float | None:
        """Most recent tokens/sec value in the window (last write wins)."""
        for chunk in reversed(self.chunks):
            if chunk.tokens_per_second is not None:
                return chunk.tokens_per_second
        return None

    def __len__(self) -> int:
        return len(self.chunks)


def collect(batch: Batch | None, chunk: Chunk) -> Batch:
    """Stock reducer: append the chunk to the window's batch."""
    if batch is None:
        batch = Batch()
    batch.chunks.append(chunk)
    return batch


async def _drain(source: AsyncIterable[C], buffer: list[C]) -> None:
    """Pull everything from the source into the shared buffer."""
    async for item in source:
        buffer.append(item)


def _fold(buffer: list[C], reducing: Reducer) -> B:
    batch = None
    for item in buffer:
        batch = reducing(batch, item)
    buffer.clear()
    return batch


async def throttle(
    source: AsyncIterable[C],
    interval: float,
    reducing: Reducer = collect,
) -> AsyncIterator[B]:
    """
    Coalesce a stream into at most one batch per `interval` seconds.

    Args:
        source: Async iterable producing chunks
        interval: Window length in seconds
        reducing: Fold function `(batch | None, chunk) -> batch`

    Yields:
        One reduced batch per non-empty window, then a final batch with
        whatever was buffered when the source ended

    Raises:
        ValueError: If interval is not positive
        Exception: Whatever the source raised, after the final flush
    """
    if interval <= 0:
        raise ValueError(f"throttle interval must be positive, got {interval}")

    loop = asyncio.get_running_loop()
    buffer: list[C] = []
    pump = asyncio.create_task(_drain(source, buffer))
    deadline = loop.time() + interval

    try:
        while not pump.done():
            remaining = deadline - loop.time()
            if remaining > 0:
                await asyncio.wait({pump}, timeout=remaining)
                continue

            # Window closed; schedule the next one without bursting to catch up
            now = loop.time()
            deadline += interval
            if deadline <= now:
                deadline = now + interval

            if buffer:
                yield _fold(buffer, reducing)
    finally:
        if not pump.done():
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump

    if buffer:
        yield _fold(buffer, reducing)

    error = pump.exception()
    if error is not None:
        logger.debug(f"Throttled source failed after final flush: {error!r}")
        raise error
