"""
Generation engine backed by Pydantic AI and an OpenAI-compatible API.

Answers are streamed with `Agent.run_stream`; the tool catalog selected for a
turn is exposed to the model as a FunctionToolset whose tools call back into
the tool router. Embeddings for the semantic cache come from the
`/embeddings` endpoint of the same API.
"""

import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from pydantic_ai import Agent, Tool
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    TextPart,
    UserPromptPart,
)
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider
from pydantic_ai.toolsets import FunctionToolset
from pydantic_ai.usage import UsageLimits

from assistant_core.config import Settings
from assistant_core.errors import CacheUnavailable
from assistant_core.models import BoundResource, CatalogTool, Message, Role
from assistant_core.services.interfaces import ChunkCallback, ToolInvoker
from assistant_core.utils.logging import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = """You are a helpful assistant for software developers.

Answer clearly and concisely. Use the available tools when a question needs
current information, documentation or repository data, and say so when a tool
returned an error instead of guessing."""

RESOURCE_PROMPT = """Summarize the following resource for the user and answer
their message about it.

Source: {url}

{content}"""

TITLE_PROMPT = """Write a short title, at most six words, for a conversation that starts
with the user's message below. Reply with the title only, without quotes or
trailing punctuation."""


def to_model_history(context: Sequence[Message]) -> List[ModelMessage]:
    """Convert stored messages into Pydantic AI message history."""
    history: List[ModelMessage] = []
    for message in context:
        if message.role == Role.USER:
            history.append(ModelRequest(parts=[UserPromptPart(content=message.content)]))
        else:
            history.append(ModelResponse(parts=[TextPart(content=message.content)]))
    return history


def build_prompt(new_message: str, resource: Optional[BoundResource] = None) -> str:
    if resource is None or not resource.content:
        return new_message
    return (
        RESOURCE_PROMPT.format(url=resource.url, content=resource.content)
        + f"\n\nUser message: {new_message}"
    )


def build_toolset(catalog: Sequence[CatalogTool], invoke_tool: ToolInvoker) -> FunctionToolset:
    """Expose catalog tools to the model; each call is routed through invoke_tool."""

    def make_tool(entry: CatalogTool) -> Tool:
        async def call(**kwargs: Any) -> Any:
            return await invoke_tool(entry.name, kwargs)

        return Tool.from_schema(
            call,
            name=entry.name,
            description=entry.description or entry.original_name,
            json_schema=entry.input_schema or {"type": "object", "properties": {}},
        )

    return FunctionToolset([make_tool(entry) for entry in catalog])


class PydanticAIEngine:
    """
    Streaming generation, conversation titles and embeddings.

    Args:
        settings: Model, endpoint and limit configuration
        http_client: Client for the embeddings endpoint (created if omitted)
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.base_url = str(settings.openai_base_url).rstrip("/")
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.embedding_timeout_seconds),
            headers={"Authorization": f"Bearer {settings.openai_api_key or ''}"},
        )
        self._agent: Optional[Agent] = None
        self._title_agent: Optional[Agent] = None

    @property
    def agent(self) -> Agent:
        """Agent built on first use so a missing key only fails generation."""
        if self._agent is None:
            model_name = self.settings.chat_model.split(":", 1)[-1]
            self._agent = Agent(
                model=self._build_model(),
                system_prompt=SYSTEM_PROMPT,
                model_settings={"max_tokens": self.settings.max_output_tokens},
            )
            logger.info("Initialized generation agent", model=model_name)
        return self._agent

    @property
    def title_agent(self) -> Agent:
        if self._title_agent is None:
            self._title_agent = Agent(
                model=self._build_model(),
                system_prompt=TITLE_PROMPT,
                model_settings={"max_tokens": 20},
            )
        return self._title_agent

    def _build_model(self) -> OpenAIChatModel:
        return OpenAIChatModel(
            self.settings.chat_model.split(":", 1)[-1],
            provider=OpenAIProvider(base_url=self.base_url, api_key=self.settings.openai_api_key),
        )

    async def generate_streaming(
        self,
        context: Sequence[Message],
        new_message: str,
        tool_catalog: Sequence[CatalogTool],
        on_chunk: ChunkCallback,
        invoke_tool: ToolInvoker,
        resource: Optional[BoundResource] = None,
    ) -> Tuple[str, int]:
        start_time = time.time()
        toolsets = [build_toolset(tool_catalog, invoke_tool)] if tool_catalog else []
        parts: List[str] = []

        async with self.agent.run_stream(
            build_prompt(new_message, resource),
            message_history=to_model_history(context),
            toolsets=toolsets,
            usage_limits=UsageLimits(request_limit=10),
        ) as result:
            async for delta in result.stream_text(delta=True):
                if delta:
                    parts.append(delta)
                    await on_chunk(delta)
            usage = result.usage()

        logger.info(
            "Generation completed",
            duration_ms=int((time.time() - start_time) * 1000),
            total_tokens=usage.total_tokens,
            tools_offered=len(tool_catalog),
        )
        return "".join(parts), usage.total_tokens or 0

    async def generate_title(self, first_message: str) -> str:
        result = await self.title_agent.run(first_message)
        return str(result.output).strip()

    async def embed(self, text: str) -> List[float]:
        payload: Dict[str, Any] = {
            "model": self.settings.embedding_model,
            "input": text,
            "dimensions": self.settings.embedding_dimensions,
        }
        response = await self.http_client.post(f"{self.base_url}/embeddings", json=payload)
        if response.status_code != 200:
            raise CacheUnavailable(
                f"Embedding request failed with status {response.status_code}"
            )
        data = response.json().get("data") or []
        if not data:
            raise CacheUnavailable("Embedding response contained no vectors")
        return [float(x) for x in data[0]["embedding"]]

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()
