"""
Tool router over multiple external tool providers.

This module brings up the configured providers, registers their tools in a
shared registry, selects the tool set offered to the model for a turn, and
dispatches tool calls to the provider that owns them.

Registration keys:
- `{provider}_{tool}` is always registered
- bare `{tool}` is registered only if no earlier provider claimed it
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from assistant_core.config import Settings
from assistant_core.errors import (
    ProviderInitFailed,
    ToolInvocationFailed,
    ToolNotFound,
)
from assistant_core.models import CatalogTool, ToolSpec
from assistant_core.services.interfaces import ToolProvider
from assistant_core.services.tool_selection import (
    ToolMode,
    TriggerMatcher,
    is_essential,
    select_mode,
)
from assistant_core.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RegistryEntry:
    """Where a registered tool name resolves to."""

    key: str
    provider: str
    original_name: str
    spec: ToolSpec


class ToolRegistry:
    """
    Name → owning provider mapping.

    Built once during router initialization and read-only afterwards, apart
    from `clear()` at shutdown.
    """

    def __init__(self) -> None:
        self._prefixed: Dict[str, RegistryEntry] = {}
        self._bare: Dict[str, RegistryEntry] = {}

    @staticmethod
    def prefixed_key(provider: str, tool_name: str) -> str:
        return f"{provider}_{tool_name}"

    def register(self, provider: str, spec: ToolSpec) -> RegistryEntry:
        key = self.prefixed_key(provider, spec.name)
        entry = RegistryEntry(key=key, provider=provider, original_name=spec.name, spec=spec)
        self._prefixed[key] = entry

        owner = self._bare.get(spec.name)
        if owner is None:
            self._bare[spec.name] = entry
        elif owner.provider != provider:
            logger.info(
                "Bare tool name already claimed",
                tool=spec.name,
                owner=owner.provider,
                provider=provider,
            )
        return entry

    def resolve(self, tool_name: str) -> Optional[RegistryEntry]:
        """Exact prefixed key first, then the bare mapping."""
        return self._prefixed.get(tool_name) or self._bare.get(tool_name)

    def owner_of(self, bare_name: str) -> Optional[str]:
        entry = self._bare.get(bare_name)
        return entry.provider if entry else None

    def entries(self) -> List[RegistryEntry]:
        return list(self._prefixed.values())

    def clear(self) -> None:
        self._prefixed.clear()
        self._bare.clear()

    def __len__(self) -> int:
        return len(self._prefixed)


class ToolRouter:
    """
    Multi-provider tool router.

    Args:
        registry: Registry populated at initialization
        providers: Providers in registration order (earlier wins bare names)
        settings: Trigger vocabulary, essential tools and deadlines
    """

    def __init__(
        self,
        registry: ToolRegistry,
        providers: Sequence[ToolProvider],
        settings: Settings,
    ):
        self.registry = registry
        self.providers = list(providers)
        self.settings = settings
        self.matcher = TriggerMatcher(settings.tool_trigger_keywords)
        self.essential = list(settings.essential_tools)

        # Providers that came up successfully: name -> provider
        self.active: Dict[str, ToolProvider] = {}
        self.failed: Dict[str, str] = {}
        self.skipped: List[str] = []

        self._ready = False
        self._init_lock = asyncio.Lock()

    @property
    def ready(self) -> bool:
        return self._ready

    # ===== Lifecycle =====

    async def _bring_up(self, provider: ToolProvider) -> List[ToolSpec]:
        try:
            await asyncio.wait_for(
                provider.start(), self.settings.provider_start_timeout_seconds
            )
            return await asyncio.wait_for(
                provider.list_tools(), self.settings.provider_start_timeout_seconds
            )
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            try:
                await provider.close()
            except Exception as close_error:
                logger.debug(
                    "Error closing provider after failed start",
                    provider=provider.name,
                    error=str(close_error),
                )
            raise ProviderInitFailed(provider.name, reason) from e

    async def initialize(self) -> None:
        """
        Bring up every configured provider and register its tools.

        Providers start concurrently; a failure in one never prevents the
        others. Tools are registered in provider order so bare-name ownership
        is deterministic. Calling this on a ready router does nothing.
        """
        async with self._init_lock:
            if self._ready:
                logger.info("Tool router already initialized")
                return

            candidates: List[ToolProvider] = []
            for provider in self.providers:
                if provider.requires_credential and not provider.has_credential:
                    logger.warning(
                        "Skipping tool provider without credentials",
                        provider=provider.name,
                    )
                    self.skipped.append(provider.name)
                    continue
                candidates.append(provider)

            logger.info(
                "Initializing tool router",
                providers=[p.name for p in candidates],
                skipped=self.skipped,
            )

            results = await asyncio.gather(
                *(self._bring_up(p) for p in candidates), return_exceptions=True
            )

            for provider, result in zip(candidates, results):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    self.failed[provider.name] = str(result)
                    logger.error(
                        "Tool provider failed to initialize",
                        provider=provider.name,
                        error=str(result),
                        error_type=type(result).__name__,
                    )
                    continue

                self.active[provider.name] = provider
                for spec in result:
                    self.registry.register(provider.name, spec)
                logger.info(
                    "Tool provider connected",
                    provider=provider.name,
                    tool_count=len(result),
                    tool_names=[t.name for t in result],
                )

            self._ready = True
            logger.info(
                "Tool router ready",
                active=list(self.active),
                failed=list(self.failed),
                registered_tools=len(self.registry),
            )

    async def shutdown(self) -> None:
        """Close every provider concurrently and clear the registry. Idempotent."""
        if not self._ready and not self.active:
            return

        providers = list(self.active.values())
        results = await asyncio.gather(
            *(p.close() for p in providers), return_exceptions=True
        )
        for provider, result in zip(providers, results):
            if isinstance(result, Exception):
                logger.error(
                    "Error closing tool provider",
                    provider=provider.name,
                    error=str(result),
                )

        self.active.clear()
        self.failed.clear()
        self.skipped.clear()
        self.registry.clear()
        self._ready = False
        logger.info("Tool router shut down", closed=len(providers))

    # ===== Catalogs =====

    @staticmethod
    def _catalog_tool(entry: RegistryEntry) -> CatalogTool:
        return CatalogTool(
            name=entry.key,
            provider=entry.provider,
            original_name=entry.original_name,
            description=entry.spec.description,
            input_schema=entry.spec.input_schema,
        )

    def full_catalog(self) -> List[CatalogTool]:
        return [self._catalog_tool(e) for e in self.registry.entries()]

    def essential_catalog(self) -> List[CatalogTool]:
        return [
            self._catalog_tool(e)
            for e in self.registry.entries()
            if is_essential(e.key, e.provider, self.essential)
            or e.original_name.lower() in self.essential
        ]

    def select_tools(self, message: str) -> Tuple[ToolMode, List[CatalogTool]]:
        """Full catalog when the message mentions a trigger, essential subset otherwise."""
        mode, trigger = select_mode(self.matcher, message)
        catalog = self.full_catalog() if mode is ToolMode.FULL else self.essential_catalog()
        logger.debug(
            "Tool set selected",
            mode=mode.value,
            trigger=trigger,
            tool_count=len(catalog),
        )
        return mode, catalog

    # ===== Invocation =====

    async def invoke(self, tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """
        Run a tool on its owning provider.

        Raises:
            ToolNotFound: No registered key or bare name matches
            ToolInvocationFailed: The provider raised or missed its deadline
        """
        entry = self.registry.resolve(tool_name)
        if entry is None or entry.provider not in self.active:
            raise ToolNotFound(tool_name)

        provider = self.active[entry.provider]
        logger.info(
            "Invoking tool",
            tool=tool_name,
            provider=entry.provider,
            original_name=entry.original_name,
        )

        try:
            return await asyncio.wait_for(
                provider.invoke(entry.original_name, arguments or {}),
                self.settings.tool_call_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.warning("Tool call timed out", tool=tool_name, provider=entry.provider)
            raise ToolInvocationFailed(
                tool_name,
                entry.provider,
                f"timed out after {self.settings.tool_call_timeout_seconds}s",
            ) from e
        except Exception as e:
            logger.warning(
                "Tool call failed",
                tool=tool_name,
                provider=entry.provider,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ToolInvocationFailed(tool_name, entry.provider, str(e)) from e

    # ===== Health =====

    async def _probe(self, provider: ToolProvider) -> bool:
        try:
            await asyncio.wait_for(
                provider.list_tools(), self.settings.provider_probe_timeout_seconds
            )
            return True
        except Exception as e:
            logger.warning(
                "Tool provider probe failed", provider=provider.name, error=str(e)
            )
            return False

    async def connected_providers(self) -> List[str]:
        """Names of providers answering a live probe right now."""
        providers = list(self.active.values())
        alive = await asyncio.gather(*(self._probe(p) for p in providers))
        return [p.name for p, ok in zip(providers, alive) if ok]

    def status(self) -> Dict[str, Any]:
        return {
            "ready": self._ready,
            "active": list(self.active),
            "failed": dict(self.failed),
            "skipped": list(self.skipped),
            "registered_tools": len(self.registry),
        }
