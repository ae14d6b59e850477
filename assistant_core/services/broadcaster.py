"""
In-process conversation-scoped event broadcaster.

Each SSE connection subscribes to one conversation and receives every event
broadcast for it. Subscriber queues are bounded; a subscriber that falls too
far behind loses its oldest events rather than blocking the turn.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Set

from assistant_core.services.interfaces import StreamEvent
from assistant_core.utils.logging import get_logger

logger = get_logger(__name__)


class ConversationBroadcaster:
    """Fan-out of stream events to the subscribers of a conversation."""

    def __init__(self, queue_size: int = 1024):
        self.queue_size = queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def subscriber_count(self, conversation_id: str) -> int:
        return len(self._subscribers.get(conversation_id, ()))

    @asynccontextmanager
    async def subscribe(self, conversation_id: str) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(conversation_id, set()).add(queue)
        logger.debug("Subscriber attached", conversation_id=conversation_id)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(conversation_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[conversation_id]
            logger.debug("Subscriber detached", conversation_id=conversation_id)

    async def broadcast(self, conversation_id: str, event: StreamEvent) -> None:
        for queue in list(self._subscribers.get(conversation_id, ())):
            if queue.full():
                queue.get_nowait()
                logger.warning(
                    "Subscriber lagging, dropped oldest event",
                    conversation_id=conversation_id,
                )
            queue.put_nowait(event)
