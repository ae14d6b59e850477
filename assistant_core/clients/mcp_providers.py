"""
MCP-backed tool providers.

Each provider wraps one Pydantic AI MCP server (Streamable HTTP or stdio) and
adapts it to the router's provider interface: start, list_tools, invoke,
close. HTTP providers own their own httpx client so lifecycles never overlap.
"""

from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional

import httpx
from pydantic_ai.mcp import MCPServer, MCPServerStdio, MCPServerStreamableHTTP

from assistant_core.config import Settings
from assistant_core.models import ToolSpec
from assistant_core.utils.logging import get_logger

logger = get_logger(__name__)


class MCPToolProvider:
    """
    Tool provider backed by a Pydantic AI MCP server.

    Args:
        name: Provider name, also the registry prefix
        server: Unstarted MCP server instance
        credential: Secret the server needs, if any
        requires_credential: Skip this provider when credential is missing
    """

    def __init__(
        self,
        name: str,
        server: MCPServer,
        credential: Optional[str] = None,
        requires_credential: bool = False,
    ):
        self.name = name
        self.server = server
        self._credential = credential
        self._requires_credential = requires_credential
        self._exit_stack: Optional[AsyncExitStack] = None

    @property
    def requires_credential(self) -> bool:
        return self._requires_credential

    @property
    def has_credential(self) -> bool:
        return bool(self._credential)

    async def start(self) -> None:
        """Open the MCP session; Pydantic AI runs the protocol handshake."""
        self._exit_stack = AsyncExitStack()
        await self._exit_stack.enter_async_context(self.server)
        logger.info("MCP server connected", provider=self.name)

    async def list_tools(self) -> List[ToolSpec]:
        tools = await self.server.list_tools()
        return [
            ToolSpec(
                name=tool.name,
                description=getattr(tool, "description", None),
                input_schema=getattr(tool, "inputSchema", None)
                or {"type": "object", "properties": {}},
            )
            for tool in tools
        ]

    async def invoke(self, tool_name: str, arguments: Dict[str, Any]) -> Any:
        return await self.server.direct_call_tool(tool_name, arguments)

    async def close(self) -> None:
        if self._exit_stack is None:
            return
        stack, self._exit_stack = self._exit_stack, None
        await stack.aclose()
        logger.info("MCP server disconnected", provider=self.name)


def _create_http_client(
    settings: Settings, headers: Optional[Dict[str, str]] = None
) -> httpx.AsyncClient:
    """One client per server so each MCP session owns its connection pool."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.tool_call_timeout_seconds * 2),
        follow_redirects=True,
        headers={
            "User-Agent": f"assistant-core/{settings.app_version}",
            **(headers or {}),
        },
    )


def github_provider(settings: Settings) -> MCPToolProvider:
    """GitHub MCP server launched in a container over stdio."""
    token = settings.mcp_github_token
    server = MCPServerStdio(
        "docker",
        args=[
            "run",
            "-i",
            "--rm",
            "-e",
            "GITHUB_PERSONAL_ACCESS_TOKEN",
            settings.mcp_github_image,
        ],
        env={"GITHUB_PERSONAL_ACCESS_TOKEN": token or ""},
        timeout=settings.provider_start_timeout_seconds,
    )
    return MCPToolProvider("github", server, credential=token, requires_credential=True)


def docs_provider(settings: Settings) -> Optional[MCPToolProvider]:
    """Microsoft Learn docs server; public, no credential."""
    if settings.mcp_docs_server_url is None:
        return None
    server = MCPServerStreamableHTTP(
        url=str(settings.mcp_docs_server_url),
        http_client=_create_http_client(settings),
    )
    return MCPToolProvider("docs", server)


def youtube_provider(settings: Settings) -> MCPToolProvider:
    """YouTube Data API server, remote when a URL is configured, else via npx."""
    token = settings.mcp_youtube_token
    if settings.mcp_youtube_server_url is not None:
        server: MCPServer = MCPServerStreamableHTTP(
            url=str(settings.mcp_youtube_server_url),
            http_client=_create_http_client(
                settings, {"X-YouTube-Api-Key": token or ""}
            ),
        )
    else:
        server = MCPServerStdio(
            "npx",
            args=["-y", "youtube-data-mcp-server"],
            env={"YOUTUBE_API_KEY": token or ""},
            timeout=settings.provider_start_timeout_seconds,
        )
    return MCPToolProvider("youtube", server, credential=token, requires_credential=True)


def tavily_provider(settings: Settings) -> MCPToolProvider:
    """Tavily web search over Streamable HTTP."""
    token = settings.mcp_tavily_token
    server = MCPServerStreamableHTTP(
        url=str(settings.mcp_tavily_server_url),
        http_client=_create_http_client(
            settings, {"Authorization": f"Bearer {token or ''}"}
        ),
    )
    return MCPToolProvider("tavily", server, credential=token, requires_credential=True)


def build_providers(settings: Settings) -> List[MCPToolProvider]:
    """
    Providers in registration order.

    Earlier providers win bare tool names, so the order here decides which
    provider answers an unprefixed call.
    """
    providers = [
        github_provider(settings),
        docs_provider(settings),
        youtube_provider(settings),
        tavily_provider(settings),
    ]
    return [p for p in providers if p is not None]
