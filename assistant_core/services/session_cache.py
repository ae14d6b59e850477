"""
Write-through cache of active conversation state.

Sessions (metadata + messages) are cached per user and conversation for a
fixed lifetime after their last write. The store interface is a Protocol so
the in-memory backend can be swapped for Redis without touching callers.
Mutators are read-modify-write with last-writer-wins semantics; the durable
store stays the source of truth and a later read repairs anything lost.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

from cachetools import TTLCache

from assistant_core.models import ConversationSession, Message, ReportInfo
from assistant_core.utils.logging import get_logger

logger = get_logger(__name__)

SessionLoader = Callable[[], Awaitable[Optional[ConversationSession]]]
SessionMutation = Callable[[ConversationSession], bool]


class SessionStore(Protocol):
    """Key-value backend for cached sessions."""

    async def get(self, key: str) -> Optional[ConversationSession]: ...

    async def set(self, key: str, value: ConversationSession, *, ttl_s: float) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, prefix: str) -> List[str]: ...


@dataclass
class SessionEntry:
    """Cached session with its absolute expiry."""

    value: ConversationSession
    cached_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class MemorySessionStore:
    """
    In-memory session store with per-entry absolute TTL.

    TTLCache bounds the size (LRU eviction) and applies a global ceiling; the
    per-entry expiry implements the write-based lifetime. Values are deep
    copied on the way in and out so callers never share mutable state with
    the cache.
    """

    def __init__(
        self,
        maxsize: int = 5000,
        max_ttl_s: float = 24 * 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.clock = clock
        self.store: TTLCache = TTLCache(maxsize=maxsize, ttl=max_ttl_s, timer=clock)
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[ConversationSession]:
        async with self._lock:
            entry: Optional[SessionEntry] = self.store.get(key)
            if entry is None:
                return None
            if entry.is_expired(self.clock()):
                del self.store[key]
                return None
            return entry.value.model_copy(deep=True)

    async def set(self, key: str, value: ConversationSession, *, ttl_s: float) -> None:
        async with self._lock:
            now = self.clock()
            self.store[key] = SessionEntry(
                value=value.model_copy(deep=True),
                cached_at=now,
                expires_at=now + ttl_s,
            )

    async def delete(self, key: str) -> None:
        async with self._lock:
            self.store.pop(key, None)

    async def keys(self, prefix: str) -> List[str]:
        async with self._lock:
            now = self.clock()
            return [
                key
                for key, entry in list(self.store.items())
                if key.startswith(prefix) and not entry.is_expired(now)
            ]


class SessionCache:
    """
    Session-state cache fronting the durable conversation store.

    Cache failures are logged and degrade to a miss (reads) or a skipped
    write; they never surface to callers.
    """

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        ttl_s: float = 2 * 3600,
        timeout_s: float = 2.0,
    ):
        """
        Initialize the session cache.

        Args:
            store: Backend store (defaults to an in-memory store)
            ttl_s: Lifetime of an entry after its last write
            timeout_s: Deadline for a single backend operation
        """
        self.store: SessionStore = store or MemorySessionStore()
        self.ttl_s = ttl_s
        self.timeout_s = timeout_s
        self._stats: Dict[str, int] = {"hits": 0, "misses": 0, "writes": 0, "errors": 0}

    @staticmethod
    def make_key(user_id: str, conversation_id: str) -> str:
        return f"chat:{user_id}:{conversation_id}"

    async def get(
        self, user_id: str, conversation_id: str
    ) -> Optional[ConversationSession]:
        """Return the cached session, or None on miss or backend failure."""
        key = self.make_key(user_id, conversation_id)
        try:
            session = await asyncio.wait_for(self.store.get(key), self.timeout_s)
        except Exception as e:
            self._stats["errors"] += 1
            logger.warning("Session cache read failed", key=key, error=str(e))
            return None

        if session is None:
            self._stats["misses"] += 1
            return None

        self._stats["hits"] += 1
        return session

    async def put(
        self,
        user_id: str,
        conversation_id: str,
        session: ConversationSession,
        ttl_s: Optional[float] = None,
    ) -> None:
        """Store the full session, replacing any existing entry."""
        key = self.make_key(user_id, conversation_id)
        try:
            await asyncio.wait_for(
                self.store.set(key, session, ttl_s=ttl_s or self.ttl_s),
                self.timeout_s,
            )
            self._stats["writes"] += 1
        except Exception as e:
            self._stats["errors"] += 1
            logger.warning("Session cache write failed", key=key, error=str(e))

    async def delete(self, user_id: str, conversation_id: str) -> None:
        key = self.make_key(user_id, conversation_id)
        try:
            await asyncio.wait_for(self.store.delete(key), self.timeout_s)
        except Exception as e:
            self._stats["errors"] += 1
            logger.warning("Session cache delete failed", key=key, error=str(e))

    async def get_or_load(
        self, user_id: str, conversation_id: str, loader: SessionLoader
    ) -> Optional[ConversationSession]:
        """
        Return the cached session or load it from durable storage.

        A loader failure propagates and nothing is cached. A loader result of
        None (unknown conversation, or not owned by the user) is not cached.
        """
        session = await self.get(user_id, conversation_id)
        if session is not None:
            return session

        session = await loader()
        if session is None:
            return None

        await self.put(user_id, conversation_id, session)
        logger.debug(
            "Session cache repopulated",
            conversation_id=conversation_id,
            message_count=len(session.messages),
        )
        return session

    async def _mutate(
        self,
        user_id: str,
        conversation_id: str,
        mutation: SessionMutation,
        operation: str,
    ) -> bool:
        """
        Read-modify-write one entry.

        Missing entries are left alone. The whole entry is written back, which
        also restarts its lifetime.
        """
        session = await self.get(user_id, conversation_id)
        if session is None:
            logger.debug(
                "Session not cached, skipping mutation",
                conversation_id=conversation_id,
                operation=operation,
            )
            return False

        if not mutation(session):
            return False

        await self.put(user_id, conversation_id, session)
        return True

    async def append_message(
        self, user_id: str, conversation_id: str, message: Message
    ) -> bool:
        """Append a message and advance message_count / last_message_at."""

        def apply(session: ConversationSession) -> bool:
            if session.find_message(message.id) is not None:
                return False
            session.messages.append(message)
            session.metadata.message_count += 1
            session.metadata.last_message_at = message.created_at
            return True

        return await self._mutate(user_id, conversation_id, apply, "append_message")

    async def rename_title(
        self, user_id: str, conversation_id: str, title: str
    ) -> bool:
        def apply(session: ConversationSession) -> bool:
            session.metadata.title = title
            return True

        return await self._mutate(user_id, conversation_id, apply, "rename_title")

    async def set_context_full(self, user_id: str, conversation_id: str) -> bool:
        def apply(session: ConversationSession) -> bool:
            if session.metadata.is_context_full:
                return False
            session.metadata.is_context_full = True
            return True

        return await self._mutate(user_id, conversation_id, apply, "set_context_full")

    async def toggle_star(
        self, user_id: str, conversation_id: str, message_id: str
    ) -> bool:
        def apply(session: ConversationSession) -> bool:
            message = session.find_message(message_id)
            if message is None:
                return False
            message.starred = not message.starred
            return True

        return await self._mutate(user_id, conversation_id, apply, "toggle_star")

    async def mark_reported(
        self,
        user_id: str,
        conversation_id: str,
        message_id: str,
        reason: str,
    ) -> bool:
        def apply(session: ConversationSession) -> bool:
            message = session.find_message(message_id)
            if message is None:
                return False
            message.reported = ReportInfo(reason=reason)
            return True

        return await self._mutate(user_id, conversation_id, apply, "mark_reported")

    async def starred_messages(self, user_id: str) -> List[Message]:
        """Starred messages across all of a user's cached sessions."""
        prefix = f"chat:{user_id}:"
        try:
            keys = await asyncio.wait_for(self.store.keys(prefix), self.timeout_s)
        except Exception as e:
            self._stats["errors"] += 1
            logger.warning("Session cache scan failed", user_id=user_id, error=str(e))
            return []

        starred: List[Message] = []
        for key in keys:
            conversation_id = key[len(prefix):]
            session = await self.get(user_id, conversation_id)
            if session is not None:
                starred.extend(m for m in session.messages if m.starred)

        starred.sort(key=lambda m: m.created_at)
        return starred

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)
