"""
Per-turn chunk streaming.

The generation engine produces chunks on its own schedule; the transport
consumes them on another. A bounded asyncio queue sits between the two with a
single forwarder task draining it, so chunk order is preserved and a slow
transport applies backpressure to the producer instead of growing memory.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional

from assistant_core.utils.logging import get_logger

logger = get_logger(__name__)

ChunkSink = Callable[[str, int], Awaitable[None]]

_CLOSE = object()


def split_into_chunks(text: str, words_per_chunk: int = 3) -> List[str]:
    """
    Re-chunk a complete answer into groups of words for replay.

    Every chunk but the last carries a trailing space, so joining the chunks
    gives the words separated by single spaces.
    """
    words = text.split()
    size = max(1, words_per_chunk)
    chunks = []
    for i in range(0, len(words), size):
        chunk = " ".join(words[i:i + size])
        if i + size < len(words):
            chunk += " "
        chunks.append(chunk)
    return chunks


class ChunkChannel:
    """
    Bounded single-producer channel with one forwarding consumer.

    Args:
        sink: Coroutine receiving (chunk, sequence) for each forwarded chunk
        maxsize: Queue capacity; producers wait when it is full
        cancel_event: Once set, nothing more is forwarded
    """

    def __init__(
        self,
        sink: ChunkSink,
        maxsize: int = 256,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.sink = sink
        self.cancel_event = cancel_event or asyncio.Event()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.produced: List[str] = []
        self.forwarded = 0
        self._closed = False
        self._sink_failed = False
        self._task: Optional[asyncio.Task] = None

    @property
    def text(self) -> str:
        """Everything produced so far, forwarded or not."""
        return "".join(self.produced)

    @property
    def has_output(self) -> bool:
        return bool(self.produced)

    def start(self) -> "ChunkChannel":
        if self._task is None:
            self._task = asyncio.create_task(self._forward())
        return self

    async def put(self, chunk: str) -> None:
        """Queue a chunk; ignored after close or cancellation."""
        if not chunk or self._closed or self.cancel_event.is_set():
            return
        self.produced.append(chunk)
        await self.queue.put(chunk)

    async def _forward(self) -> None:
        while True:
            chunk = await self.queue.get()
            if chunk is _CLOSE:
                return
            if self.cancel_event.is_set() or self._sink_failed:
                continue
            try:
                await self.sink(chunk, self.forwarded)
                self.forwarded += 1
            except Exception as e:
                # Transport failures end delivery but not the turn
                self._sink_failed = True
                logger.warning("Chunk delivery failed", error=str(e))

    async def close(self) -> None:
        """Drain what is queued, then stop the forwarder."""
        if self._closed:
            return
        self._closed = True
        if self._task is None:
            return
        await self.queue.put(_CLOSE)
        await self._task

    async def abort(self) -> None:
        """Stop forwarding immediately and drop anything still queued."""
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass


async def replay_chunks(
    channel: ChunkChannel,
    text: str,
    words_per_chunk: int,
    delay_ms: int,
) -> None:
    """Feed a cached answer through the channel with a pause between chunks."""
    for chunk in split_into_chunks(text, words_per_chunk):
        if channel.cancel_event.is_set():
            return
        await channel.put(chunk)
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)
