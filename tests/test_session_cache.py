"""
Tests for the write-through session cache.

Covers lifetime after last write, read-through repopulation, in-place
mutators and degradation when the backend fails.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from assistant_core.models import ConversationMetadata, ConversationSession
from assistant_core.services.session_cache import MemorySessionStore, SessionCache
from tests.fakes import FakeClock, assistant_message, user_message


def make_session(user_id: str = "user-1") -> ConversationSession:
    metadata = ConversationMetadata(user_id=user_id)
    session = ConversationSession(metadata=metadata)
    session.messages.append(user_message(metadata.id, "hello"))
    session.messages.append(assistant_message(metadata.id, "hi there"))
    session.metadata.message_count = 2
    return session


class TestMemorySessionStore:
    """Tests for the in-memory backend."""

    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self):
        clock = FakeClock()
        backend = MemorySessionStore(clock=clock)
        session = make_session()

        await backend.set("chat:u:c", session, ttl_s=7200)
        clock.advance(7199)
        assert await backend.get("chat:u:c") is not None

        clock.advance(1)
        assert await backend.get("chat:u:c") is None

    @pytest.mark.asyncio
    async def test_values_are_copied(self):
        backend = MemorySessionStore()
        session = make_session()
        await backend.set("k", session, ttl_s=60)

        session.metadata.title = "changed outside"
        cached = await backend.get("k")
        assert cached.metadata.title == "New chat"

        cached.messages.clear()
        assert len((await backend.get("k")).messages) == 2

    @pytest.mark.asyncio
    async def test_keys_filters_prefix_and_expired(self):
        clock = FakeClock()
        backend = MemorySessionStore(clock=clock)
        await backend.set("chat:a:1", make_session("a"), ttl_s=10)
        await backend.set("chat:a:2", make_session("a"), ttl_s=100)
        await backend.set("chat:b:1", make_session("b"), ttl_s=100)

        clock.advance(50)
        assert await backend.keys("chat:a:") == ["chat:a:2"]


class TestSessionCache:
    """Tests for SessionCache behaviour on top of a backend."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cache(self, clock):
        return SessionCache(MemorySessionStore(clock=clock), ttl_s=7200)

    @pytest.mark.asyncio
    async def test_get_or_load_populates_on_miss(self, cache):
        session = make_session()
        loader = AsyncMock(return_value=session)

        first = await cache.get_or_load("user-1", session.id, loader)
        second = await cache.get_or_load("user-1", session.id, loader)

        assert first.id == session.id
        assert second.id == session.id
        loader.assert_awaited_once()
        assert cache.stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_get_or_load_does_not_cache_unknown(self, cache):
        loader = AsyncMock(return_value=None)

        assert await cache.get_or_load("user-1", "missing", loader) is None
        assert await cache.get_or_load("user-1", "missing", loader) is None
        assert loader.await_count == 2

    @pytest.mark.asyncio
    async def test_loader_failure_propagates(self, cache):
        loader = AsyncMock(side_effect=RuntimeError("db down"))

        with pytest.raises(RuntimeError, match="db down"):
            await cache.get_or_load("user-1", "conv", loader)
        assert await cache.get("user-1", "conv") is None

    @pytest.mark.asyncio
    async def test_write_restarts_lifetime(self, cache, clock):
        session = make_session()
        await cache.put("user-1", session.id, session)

        clock.advance(7000)
        await cache.append_message("user-1", session.id, user_message(session.id, "again"))

        clock.advance(7000)
        cached = await cache.get("user-1", session.id)
        assert cached is not None
        assert cached.metadata.message_count == 3

    @pytest.mark.asyncio
    async def test_sessions_are_scoped_by_user(self, cache):
        session = make_session("owner")
        await cache.put("owner", session.id, session)

        assert await cache.get("someone-else", session.id) is None

    @pytest.mark.asyncio
    async def test_append_message_is_idempotent_per_message_id(self, cache):
        session = make_session()
        await cache.put("user-1", session.id, session)
        message = user_message(session.id, "follow up")

        assert await cache.append_message("user-1", session.id, message) is True
        assert await cache.append_message("user-1", session.id, message) is False

        cached = await cache.get("user-1", session.id)
        assert [m.content for m in cached.messages][-1] == "follow up"
        assert cached.metadata.message_count == 3
        assert cached.metadata.last_message_at == message.created_at

    @pytest.mark.asyncio
    async def test_mutators_skip_missing_sessions(self, cache):
        assert await cache.rename_title("user-1", "nope", "Title") is False
        assert await cache.toggle_star("user-1", "nope", "m") is False

    @pytest.mark.asyncio
    async def test_rename_star_report_and_context_full(self, cache):
        session = make_session()
        await cache.put("user-1", session.id, session)
        message_id = session.messages[1].id

        await cache.rename_title("user-1", session.id, "Renamed")
        await cache.toggle_star("user-1", session.id, message_id)
        await cache.mark_reported("user-1", session.id, message_id, "wrong answer")
        assert await cache.set_context_full("user-1", session.id) is True
        assert await cache.set_context_full("user-1", session.id) is False

        cached = await cache.get("user-1", session.id)
        assert cached.metadata.title == "Renamed"
        assert cached.metadata.is_context_full is True
        flagged = cached.find_message(message_id)
        assert flagged.starred is True
        assert flagged.reported.reason == "wrong answer"

    @pytest.mark.asyncio
    async def test_toggle_star_unknown_message(self, cache):
        session = make_session()
        await cache.put("user-1", session.id, session)

        assert await cache.toggle_star("user-1", session.id, "unknown") is False

    @pytest.mark.asyncio
    async def test_starred_messages_across_sessions(self, cache):
        first, second = make_session(), make_session()
        first.messages[0].starred = True
        second.messages[1].starred = True
        await cache.put("user-1", first.id, first)
        await cache.put("user-1", second.id, second)

        starred = await cache.starred_messages("user-1")

        assert {m.id for m in starred} == {first.messages[0].id, second.messages[1].id}
        assert await cache.starred_messages("user-2") == []

    @pytest.mark.asyncio
    async def test_backend_failures_degrade(self):
        backend = AsyncMock()
        backend.get.side_effect = ConnectionError("redis down")
        backend.set.side_effect = ConnectionError("redis down")
        cache = SessionCache(backend)
        session = make_session()

        assert await cache.get("user-1", session.id) is None
        await cache.put("user-1", session.id, session)
        assert cache.stats()["errors"] == 2

    @pytest.mark.asyncio
    async def test_slow_backend_times_out_as_miss(self):
        async def slow_get(key):
            await asyncio.sleep(1)

        backend = AsyncMock()
        backend.get.side_effect = slow_get
        cache = SessionCache(backend, timeout_s=0.01)

        assert await cache.get("user-1", "conv") is None
        assert cache.stats()["errors"] == 1
