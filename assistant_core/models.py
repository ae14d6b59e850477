"""
Domain models shared by the caches, the pipeline and the adapters.

Conversations and messages reference each other by id only; a session is the
cached pairing of one conversation's metadata with its message list.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

DEFAULT_TITLE = "New chat"
MAX_TITLE_LENGTH = 255


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Role(str, Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"


class ReportInfo(BaseModel):
    """Why and when a message was reported."""

    reason: str
    at: datetime = Field(default_factory=utcnow)


class Message(BaseModel):
    """One turn's content. Content is immutable once created."""

    id: str = Field(default_factory=new_id)
    conversation_id: str
    role: Role
    content: str
    created_at: datetime = Field(default_factory=utcnow)
    token_count: int = 0
    starred: bool = False
    reported: Optional[ReportInfo] = None
    truncated: bool = Field(
        default=False, description="Set when generation stopped before completing"
    )


class BoundResource(BaseModel):
    """External resource (article, repo, video) a conversation summarizes."""

    url: str
    content: Optional[str] = None


class ConversationMetadata(BaseModel):
    """Durable conversation attributes, without messages."""

    id: str = Field(default_factory=new_id)
    user_id: str
    title: str = DEFAULT_TITLE
    created_at: datetime = Field(default_factory=utcnow)
    last_message_at: datetime = Field(default_factory=utcnow)
    message_count: int = 0
    is_context_full: bool = False
    resource: Optional[BoundResource] = None


class ConversationSession(BaseModel):
    """Live state of one chat: metadata plus its ordered messages."""

    metadata: ConversationMetadata
    messages: List[Message] = Field(default_factory=list)

    @property
    def id(self) -> str:
        return self.metadata.id

    @property
    def user_id(self) -> str:
        return self.metadata.user_id

    def find_message(self, message_id: str) -> Optional[Message]:
        return next((m for m in self.messages if m.id == message_id), None)


class ToolSpec(BaseModel):
    """A tool as advertised by a provider."""

    name: str
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class CatalogTool(BaseModel):
    """A tool as exposed to the generation engine, under its registry key."""

    name: str
    provider: str
    original_name: str
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(default_factory=dict)


class TurnStatus(str, Enum):
    """Terminal state of a processed turn."""

    CACHED = "cached"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TurnResult(BaseModel):
    """What the pipeline returns for a finished turn."""

    status: TurnStatus
    user_message: Message
    assistant_message: Optional[Message] = None
    cache_tier: Optional[str] = None
    tool_mode: Optional[str] = None
    token_count: int = 0
