"""
Tests for the exact / semantic / resource response cache.
"""

import asyncio

import pytest

from assistant_core.services.response_cache import (
    EXACT_CACHE_PREFIX,
    SECONDS_PER_DAY,
    ResponseCache,
    TopicExtractor,
    build_context_string,
    compute_ttl_days,
)
from tests.fakes import (
    FakeClock,
    ScriptedEngine,
    assistant_message,
    make_context,
    make_settings,
    unit_vector,
    user_message,
)

# Integer vectors whose cosine against unit_vector(0) is exactly 17/20 and 21/25
AT_THRESHOLD = [17.0, 10.0, 3.0, 1.0, 1.0, 0.0, 0.0, 0.0]
BELOW_THRESHOLD = [21.0, 13.0, 3.0, 2.0, 1.0, 1.0, 0.0, 0.0]


class TestTtlDecay:
    """Tests for the decay law."""

    def test_first_message_gets_base_lifetime(self):
        assert compute_ttl_days(1, 21, 0.7) == 21

    def test_decays_with_depth(self):
        assert compute_ttl_days(2, 21, 0.7) == 14
        assert compute_ttl_days(5, 21, 0.7) == 5

    def test_never_below_one_day(self):
        assert compute_ttl_days(40, 21, 0.7) == 1

    def test_monotonic_over_depths(self, settings):
        cache = ResponseCache(settings, embedder=ScriptedEngine().embed)

        assert (
            cache.ttl_days_for_depth(1)
            > cache.ttl_days_for_depth(4)
            > cache.ttl_days_for_depth(8)
        )
        assert cache.ttl_days_for_depth(0) == 21


class TestContextString:
    def test_role_prefixed_lines_in_order(self):
        context = [user_message("c", "hi"), assistant_message("c", "hello")]

        rendered = build_context_string(context, "how are you?")

        assert rendered == "User: hi\nAssistant: hello\nUser: how are you?\n"

    def test_order_changes_the_string(self):
        a, b = user_message("c", "one"), assistant_message("c", "two")
        assert build_context_string([a, b], "x") != build_context_string([b, a], "x")


class TestTopicExtractor:
    def test_extracts_known_terms_once(self):
        topics = TopicExtractor().extract("Using Redis with .NET and redis streams")
        assert topics == ["redis", "dotnet"]

    def test_custom_terms(self):
        assert TopicExtractor({"kafka": "kafka"}).extract("Kafka rocks") == ["kafka"]


class TestExactTier:
    """Tests for verbatim lookups over a short context window."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def engine(self):
        return ScriptedEngine()

    @pytest.fixture
    def cache(self, settings, engine, clock):
        return ResponseCache(settings, embedder=engine.embed, clock=clock)

    @pytest.mark.asyncio
    async def test_round_trip_for_shallow_contexts(self, cache):
        for depth in range(3):
            context = make_context("c", depth)
            written = await cache.store(context, f"message at {depth}", f"answer {depth}")

            assert "exact" in written
            assert await cache.get_exact(context, f"message at {depth}") == f"answer {depth}"

    @pytest.mark.asyncio
    async def test_lookup_returns_exact_hit(self, cache):
        await cache.store([], "hi", "Hello!")

        hit = await cache.lookup([], "hi")

        assert hit.tier == "exact"
        assert hit.response == "Hello!"

    @pytest.mark.asyncio
    async def test_different_context_misses(self, cache):
        await cache.store([user_message("c", "a")], "hi", "Hello!")

        assert await cache.get_exact([user_message("c", "b")], "hi") is None

    @pytest.mark.asyncio
    async def test_first_message_ttl_is_21_days(self, cache):
        await cache.store([], "hi", "Hello!")

        key = cache.exact_key([], "hi")
        entry = await cache.backend.get(EXACT_CACHE_PREFIX + key)
        assert entry["_cache_ttl_remaining_s"] == 21 * SECONDS_PER_DAY

    @pytest.mark.asyncio
    async def test_entry_expires(self, cache, clock):
        await cache.store([], "hi", "Hello!")

        clock.advance(21 * SECONDS_PER_DAY)

        assert await cache.lookup([], "hi") is None

    @pytest.mark.asyncio
    async def test_deep_context_not_written_to_exact_tier(self, cache):
        await cache.initialize()
        written = await cache.store(make_context("c", 3), "hi", "Hello!")

        assert written == ["semantic"]


class TestSemanticTier:
    """Tests for depth-scoped similarity lookups."""

    @pytest.fixture
    def engine(self):
        return ScriptedEngine()

    @pytest.fixture
    async def cache(self, settings, engine):
        cache = ResponseCache(settings, embedder=engine.embed)
        await cache.initialize()
        return cache

    @pytest.mark.asyncio
    async def test_hit_at_threshold(self, cache, engine):
        context = make_context("c", 4)
        engine.vectors["How do I deploy?"] = unit_vector(0)
        engine.vectors["What is the way to deploy?"] = AT_THRESHOLD
        await cache.store(context, "How do I deploy?", "Use the CLI.")

        hit = await cache.lookup(context, "What is the way to deploy?")

        assert hit is not None
        assert hit.tier == "semantic"
        assert hit.response == "Use the CLI."
        assert hit.score == pytest.approx(0.85)

    @pytest.mark.asyncio
    async def test_miss_below_threshold(self, cache, engine):
        context = make_context("c", 4)
        engine.vectors["How do I deploy?"] = unit_vector(0)
        engine.vectors["Tell me about deploys"] = BELOW_THRESHOLD
        await cache.store(context, "How do I deploy?", "Use the CLI.")

        assert await cache.search_semantic(context, "Tell me about deploys", 4) is None
        assert await cache.lookup(context, "Tell me about deploys") is None

    @pytest.mark.asyncio
    async def test_depth_buckets_never_mix(self, cache, engine):
        engine.vectors["How do I deploy?"] = unit_vector(0)
        await cache.store(make_context("c", 4), "How do I deploy?", "Use the CLI.")

        assert await cache.search_semantic(make_context("c", 5), "How do I deploy?", 5) is None

    @pytest.mark.asyncio
    async def test_search_skipped_outside_semantic_range(self, cache, engine):
        assert await cache.search_semantic(make_context("c", 2), "hi", 2) is None
        assert await cache.search_semantic(make_context("c", 9), "hi", 9) is None
        assert engine.embed_calls == []

    @pytest.mark.asyncio
    async def test_deep_conversation_bypasses_both_tiers(self, cache, engine):
        context = make_context("c", 9)

        assert await cache.store(context, "hi", "Hello!") == []
        assert await cache.lookup(context, "hi") is None
        assert engine.embed_calls == []

    @pytest.mark.asyncio
    async def test_embedding_failure_degrades_to_miss(self, cache, engine):
        context = make_context("c", 4)
        await cache.store(context, "How do I deploy?", "Use the CLI.")
        engine.fail_embeddings = True

        assert await cache.lookup(context, "How do I deploy?") is None
        stats = await cache.stats()
        assert stats["errors"] == 1

    @pytest.mark.asyncio
    async def test_embedding_failure_skips_semantic_write(self, cache, engine):
        engine.fail_embeddings = True

        assert await cache.store([], "hi", "Hello!") == ["exact"]

    @pytest.mark.asyncio
    async def test_reads_during_rebuild_are_misses(self, cache, engine):
        context = make_context("c", 4)
        await cache.store(context, "How do I deploy?", "Use the CLI.")
        await cache.store([], "hi", "Hello!")

        cache._rebuilding = True
        assert await cache.lookup(context, "How do I deploy?") is None
        assert await cache.lookup([], "hi") is None
        assert (await cache.stats())["errors"] == 0

    @pytest.mark.asyncio
    async def test_slow_index_times_out_as_miss(self, settings, engine):
        class SlowIndex:
            async def search(self, vector, depth):
                await asyncio.sleep(5)

        cache = ResponseCache(
            make_settings(cache_timeout_seconds=0.01, embedding_timeout_seconds=0.01),
            embedder=engine.embed,
            index=SlowIndex(),
        )

        assert await cache.search_semantic(make_context("c", 4), "hi", 4) is None


class TestResourceTier:
    @pytest.mark.asyncio
    async def test_resource_round_trip_and_lifetime(self, settings):
        clock = FakeClock()
        cache = ResponseCache(settings, embedder=ScriptedEngine().embed, clock=clock)

        assert await cache.get_resource("https://example.com/a") is None
        await cache.store_resource("https://example.com/a", "Summary A")
        assert await cache.get_resource("https://example.com/a") == "Summary A"

        clock.advance(15 * SECONDS_PER_DAY)
        assert await cache.get_resource("https://example.com/a") is None

    @pytest.mark.asyncio
    async def test_resource_entries_survive_clear(self, settings):
        cache = ResponseCache(settings, embedder=ScriptedEngine().embed)
        await cache.initialize()
        await cache.store_resource("https://example.com/a", "Summary A")
        await cache.store([], "hi", "Hello!")

        assert await cache.clear_all() == 2
        assert await cache.get_resource("https://example.com/a") == "Summary A"
        assert await cache.lookup([], "hi") is None


class TestAdministration:
    """Tests for index refresh, recreate and invalidation."""

    @pytest.fixture
    def engine(self):
        return ScriptedEngine()

    @pytest.fixture
    async def cache(self, settings, engine):
        cache = ResponseCache(settings, embedder=engine.embed)
        await cache.initialize()
        return cache

    @pytest.mark.asyncio
    async def test_refresh_keeps_entries(self, cache, engine):
        context = make_context("c", 3)
        await cache.store(context, "Question", "Answer")

        assert await cache.refresh_index() is True
        assert await cache.lookup(context, "Question") is not None

    @pytest.mark.asyncio
    async def test_recreate_drops_semantic_entries(self, cache):
        context = make_context("c", 3)
        await cache.store(context, "Question", "Answer")

        assert await cache.recreate_index() is True

        assert await cache.lookup(context, "Question") is None
        stats = await cache.stats()
        assert stats["indexed_vectors"] == 0
        assert stats["rebuilding"] is False

    @pytest.mark.asyncio
    async def test_invalidate_topics(self, cache):
        context = make_context("c", 3)
        await cache.store(context, "Is Redis fast?", "Yes.")
        await cache.store(context, "Is Python slow?", "Sometimes.")

        assert await cache.invalidate_topics("redis") == 1

        assert await cache.lookup(context, "Is Redis fast?") is None
        assert await cache.lookup(context, "Is Python slow?") is not None

    @pytest.mark.asyncio
    async def test_writes_fail_without_index(self, settings, engine):
        cache = ResponseCache(settings, embedder=engine.embed)

        # No schema yet: semantic write degrades, exact write still lands
        assert await cache.store([], "hi", "Hello!") == ["exact"]
        assert len(engine.embed_calls) == 1
