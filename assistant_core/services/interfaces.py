"""
Contracts of the collaborators the pipeline consumes but does not implement.

Each collaborator is a typing.Protocol so production adapters (SQLAlchemy,
pydantic-ai, MCP, SSE) and in-memory test doubles are interchangeable.
"""

import time
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

from pydantic import BaseModel, Field

from assistant_core.models import (
    BoundResource,
    CatalogTool,
    ConversationMetadata,
    Message,
    ToolSpec,
)

ChunkCallback = Callable[[str], Awaitable[None]]
ToolInvoker = Callable[[str, Dict[str, Any]], Awaitable[Any]]


class StreamEvent(BaseModel):
    """Event pushed to the transport for one conversation."""

    type: str = Field(..., description="Event type: chunk, final_message, error")
    data: Any = Field(None, description="Event data")
    timestamp: float = Field(default_factory=time.time, description="Event timestamp")
    request_id: Optional[str] = Field(None, description="Turn tracking ID")
    sequence: int = Field(0, description="Position of the event within its turn")


class DurableStore(Protocol):
    """Source of truth for conversations and messages."""

    async def get_conversation(
        self, conversation_id: str, user_id: str
    ) -> Optional[ConversationMetadata]:
        """Return the conversation if it exists and belongs to the user."""
        ...

    async def create_conversation(
        self,
        user_id: str,
        title: str,
        resource: Optional[BoundResource] = None,
    ) -> ConversationMetadata: ...

    async def list_conversations(self, user_id: str) -> List[ConversationMetadata]:
        """The user's conversations, most recently active first."""
        ...

    async def list_messages(self, conversation_id: str) -> List[Message]: ...

    async def list_starred_messages(self, user_id: str) -> List[Message]:
        """Starred messages across all of the user's conversations, oldest first."""
        ...

    async def append_message(
        self, conversation_id: str, message: Message
    ) -> ConversationMetadata:
        """
        Append one message atomically and advance message_count / last_message_at.

        Either the whole message is stored or nothing is.
        """
        ...

    async def update_metadata(
        self, conversation_id: str, patch: Dict[str, Any]
    ) -> None: ...

    async def update_message_flags(
        self, conversation_id: str, message_id: str, patch: Dict[str, Any]
    ) -> Optional[Message]: ...

    async def delete_conversation(self, conversation_id: str) -> None: ...


class GenerationEngine(Protocol):
    """Model-side collaborator: streaming generation, titles and embeddings."""

    async def generate_streaming(
        self,
        context: Sequence[Message],
        new_message: str,
        tool_catalog: Sequence[CatalogTool],
        on_chunk: ChunkCallback,
        invoke_tool: ToolInvoker,
        resource: Optional[BoundResource] = None,
    ) -> Tuple[str, int]:
        """Stream an answer through on_chunk; return (full text, token count)."""
        ...

    async def embed(self, text: str) -> List[float]: ...

    async def generate_title(self, first_message: str) -> str:
        """Short conversation title for a first message."""
        ...


class Transport(Protocol):
    """Conversation-scoped broadcast primitive."""

    async def broadcast(self, conversation_id: str, event: StreamEvent) -> None: ...


class ToolProvider(Protocol):
    """One external capability surface exposing named tools."""

    name: str

    @property
    def requires_credential(self) -> bool: ...

    @property
    def has_credential(self) -> bool: ...

    async def start(self) -> None: ...

    async def list_tools(self) -> List[ToolSpec]: ...

    async def invoke(self, tool_name: str, arguments: Dict[str, Any]) -> Any: ...

    async def close(self) -> None: ...
