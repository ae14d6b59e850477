"""
Service wiring for the application.

Builds the caches, tool router, generation engine and pipeline from settings
and owns their lifecycle. Tests assemble a container from fakes instead.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from assistant_core.config import Settings
from assistant_core.services.broadcaster import ConversationBroadcaster
from assistant_core.services.pipeline import ConversationPipeline
from assistant_core.services.response_cache import ResponseCache
from assistant_core.services.session_cache import MemorySessionStore, SessionCache
from assistant_core.services.tool_router import ToolRegistry, ToolRouter
from assistant_core.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AppServices:
    """Everything request handlers need, plus shutdown hooks."""

    settings: Settings
    pipeline: ConversationPipeline
    tool_router: ToolRouter
    response_cache: ResponseCache
    session_cache: SessionCache
    broadcaster: ConversationBroadcaster
    store: Any
    active_turns: Dict[str, asyncio.Event] = field(default_factory=dict)
    closers: List[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def startup(self) -> None:
        await self.response_cache.initialize()
        await self.tool_router.initialize()

    async def shutdown(self) -> None:
        for event in self.active_turns.values():
            event.set()
        await self.tool_router.shutdown()
        for close in self.closers:
            try:
                await close()
            except Exception as e:
                logger.error("Error during shutdown", error=str(e))


def assemble(
    settings: Settings,
    store: Any,
    engine: Any,
    providers: List[Any],
    broadcaster: Optional[ConversationBroadcaster] = None,
) -> AppServices:
    """Wire the pipeline from its collaborators."""
    broadcaster = broadcaster or ConversationBroadcaster()
    session_cache = SessionCache(
        MemorySessionStore(maxsize=settings.session_cache_maxsize),
        ttl_s=settings.session_ttl_seconds,
        timeout_s=settings.cache_timeout_seconds,
    )
    response_cache = ResponseCache(settings, embedder=engine.embed)
    tool_router = ToolRouter(ToolRegistry(), providers, settings)
    pipeline = ConversationPipeline(
        settings,
        store=store,
        session_cache=session_cache,
        response_cache=response_cache,
        tool_router=tool_router,
        engine=engine,
        transport=broadcaster,
    )
    return AppServices(
        settings=settings,
        pipeline=pipeline,
        tool_router=tool_router,
        response_cache=response_cache,
        session_cache=session_cache,
        broadcaster=broadcaster,
        store=store,
    )


def build_services(settings: Settings) -> AppServices:
    """Production wiring: SQL store, Pydantic AI engine, MCP providers."""
    from assistant_core.clients.generation import PydanticAIEngine
    from assistant_core.clients.mcp_providers import build_providers
    from assistant_core.db import ConversationRepository, get_session_factory, on_shutdown

    engine = PydanticAIEngine(settings)
    services = assemble(
        settings,
        store=ConversationRepository(get_session_factory(settings)),
        engine=engine,
        providers=build_providers(settings),
    )
    services.closers.extend([engine.close, on_shutdown])
    return services
