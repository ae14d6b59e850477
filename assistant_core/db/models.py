"""
Database models for Assistant Core.

Two tables, joined by id only:
- conversations: one row per chat with its metadata and optional bound resource
- messages: append-only message content with mutable starred/reported flags
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class ConversationRecord(Base):
    """
    Conversation metadata.

    Attributes:
        id: Conversation identifier (UUID string)
        user_id: Owner; every lookup filters on it
        message_count: Number of stored messages
        is_context_full: Set once the conversation hit a context ceiling
        resource_url / resource_content: Optional bound resource
    """

    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="New chat")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    last_message_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_context_full: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resource_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resource_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_conversations_user_last_message", "user_id", "last_message_at"),
    )

    def __repr__(self) -> str:
        return f"<ConversationRecord(id={self.id}, user_id={self.user_id})>"


class MessageRecord(Base):
    """
    One message. Content never changes after insert; flags do.

    `seq` orders messages within a conversation independent of clock skew.
    """

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    starred: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reported: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    truncated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_messages_conversation_seq", "conversation_id", "seq", unique=True),
    )

    def __repr__(self) -> str:
        return f"<MessageRecord(id={self.id}, conversation_id={self.conversation_id})>"
