"""
Tests for the multi-provider tool router.

Covers provider bring-up (credentials, failures), registration collisions,
catalog selection, invocation routing and shutdown.
"""

import pytest

from assistant_core.errors import ToolInvocationFailed, ToolNotFound
from assistant_core.models import ToolSpec
from assistant_core.services.tool_router import ToolRegistry, ToolRouter
from assistant_core.services.tool_selection import ToolMode
from tests.fakes import FakeToolProvider, make_settings


class TestToolRegistry:
    def test_prefixed_always_bare_first_wins(self):
        registry = ToolRegistry()
        registry.register("github", ToolSpec(name="search"))
        registry.register("docs", ToolSpec(name="search"))

        assert registry.resolve("github_search").provider == "github"
        assert registry.resolve("docs_search").provider == "docs"
        assert registry.resolve("search").provider == "github"
        assert registry.owner_of("search") == "github"
        assert len(registry) == 2

    def test_unknown_name(self):
        assert ToolRegistry().resolve("nothing") is None


class TestToolRouter:
    """Tests for ToolRouter lifecycle and dispatch."""

    @pytest.fixture
    def settings(self):
        return make_settings(
            tool_trigger_keywords=["repository", "github"],
            essential_tools=["docs_search", "tavily-search"],
        )

    @pytest.fixture
    def providers(self):
        return [
            FakeToolProvider("github", ["search", "create_issue"]),
            FakeToolProvider("docs", ["search", "fetch"]),
            FakeToolProvider(
                "tavily", ["tavily-search"], requires_credential=True, credential="tvly-key"
            ),
        ]

    @pytest.fixture
    async def router(self, settings, providers):
        router = ToolRouter(ToolRegistry(), providers, settings)
        await router.initialize()
        return router

    @pytest.mark.asyncio
    async def test_initialize_registers_all_tools(self, router):
        assert router.ready
        assert list(router.active) == ["github", "docs", "tavily"]
        assert len(router.registry) == 5

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, router, providers):
        await router.initialize()

        assert len(router.registry) == 5
        assert all(p.started for p in providers)

    @pytest.mark.asyncio
    async def test_missing_credential_skips_provider(self, settings):
        youtube = FakeToolProvider("youtube", ["search_videos"], requires_credential=True)
        docs = FakeToolProvider("docs", ["fetch"])
        router = ToolRouter(ToolRegistry(), [youtube, docs], settings)

        await router.initialize()

        assert router.skipped == ["youtube"]
        assert not youtube.started
        assert list(router.active) == ["docs"]

    @pytest.mark.asyncio
    async def test_init_failure_is_isolated(self, settings):
        broken = FakeToolProvider("github", ["search"], start_error=RuntimeError("docker missing"))
        docs = FakeToolProvider("docs", ["search"])
        router = ToolRouter(ToolRegistry(), [broken, docs], settings)

        await router.initialize()

        assert router.ready
        assert "github" in router.failed
        assert "docker missing" in router.failed["github"]
        assert broken.close_calls == 1
        # docs now owns the bare name since github never registered
        assert router.registry.owner_of("search") == "docs"

    @pytest.mark.asyncio
    async def test_full_catalog_on_trigger(self, router):
        mode, catalog = router.select_tools("Look at the repository please")

        assert mode is ToolMode.FULL
        assert {t.name for t in catalog} == {
            "github_search",
            "github_create_issue",
            "docs_search",
            "docs_fetch",
            "tavily_tavily-search",
        }

    @pytest.mark.asyncio
    async def test_essential_catalog_without_trigger(self, router):
        mode, catalog = router.select_tools("hi")

        assert mode is ToolMode.ESSENTIAL
        assert {t.name for t in catalog} == {"docs_search", "tavily_tavily-search"}

    @pytest.mark.asyncio
    async def test_invoke_strips_prefix(self, router, providers):
        github, docs, _ = providers

        result = await router.invoke("docs_search", {"query": "asyncio"})

        assert docs.invocations == [("search", {"query": "asyncio"})]
        assert github.invocations == []
        assert result["provider"] == "docs"

    @pytest.mark.asyncio
    async def test_invoke_bare_name_goes_to_first_owner(self, router, providers):
        github = providers[0]

        await router.invoke("search", {"q": "x"})

        assert github.invocations == [("search", {"q": "x"})]

    @pytest.mark.asyncio
    async def test_invoke_unknown_tool(self, router):
        with pytest.raises(ToolNotFound) as exc_info:
            await router.invoke("nonexistent_tool", {})

        assert exc_info.value.code == "TOOL_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_invoke_provider_error(self, router, providers):
        providers[1].invoke_error = RuntimeError("upstream 500")

        with pytest.raises(ToolInvocationFailed) as exc_info:
            await router.invoke("docs_fetch", {})

        assert exc_info.value.provider == "docs"
        assert "upstream 500" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_invoke_timeout(self, router, providers):
        providers[1].invoke_delay_s = 5

        with pytest.raises(ToolInvocationFailed, match="timed out"):
            await router.invoke("docs_fetch", {})

    @pytest.mark.asyncio
    async def test_connected_providers_probes_live(self, router, providers):
        providers[0].probe_error = ConnectionError("container died")

        connected = await router.connected_providers()

        assert connected == ["docs", "tavily"]
        assert router.status()["active"] == ["github", "docs", "tavily"]

    @pytest.mark.asyncio
    async def test_shutdown_closes_and_is_idempotent(self, router, providers):
        await router.shutdown()
        await router.shutdown()

        assert all(p.close_calls == 1 for p in providers)
        assert not router.ready
        assert len(router.registry) == 0
        with pytest.raises(ToolNotFound):
            await router.invoke("docs_search", {})

    @pytest.mark.asyncio
    async def test_reinitialize_after_shutdown_starts_clean(self, settings):
        youtube = FakeToolProvider("youtube", ["search_videos"], requires_credential=True)
        broken = FakeToolProvider("github", ["search"], start_error=RuntimeError("docker missing"))
        docs = FakeToolProvider("docs", ["fetch"])
        router = ToolRouter(ToolRegistry(), [youtube, broken, docs], settings)
        await router.initialize()

        await router.shutdown()

        assert router.status()["failed"] == {}
        assert router.status()["skipped"] == []

        await router.initialize()

        assert router.skipped == ["youtube"]
        assert list(router.failed) == ["github"]
        assert list(router.active) == ["docs"]
