"""
Repository layer for conversation storage.

ConversationRepository is the durable store behind the pipeline: every
operation runs in its own unit of work, and appending a message updates the
conversation counters in the same transaction.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import (
    BoundResource,
    ConversationMetadata,
    Message,
    ReportInfo,
    Role,
    new_id,
)
from ..utils.logging import get_logger
from .database import with_unit_of_work
from .models import ConversationRecord, MessageRecord

logger = get_logger(__name__)

CONVERSATION_FIELDS = {"title", "is_context_full", "last_message_at"}
MESSAGE_FLAGS = {"starred", "reported"}


class RepositoryError(Exception):
    """Base exception for repository operations."""

    pass


class ConversationNotFoundError(RepositoryError):
    """Raised when a conversation is not found."""

    pass


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def to_metadata(record: ConversationRecord) -> ConversationMetadata:
    resource = None
    if record.resource_url:
        resource = BoundResource(url=record.resource_url, content=record.resource_content)
    return ConversationMetadata(
        id=record.id,
        user_id=record.user_id,
        title=record.title,
        created_at=_as_utc(record.created_at),
        last_message_at=_as_utc(record.last_message_at),
        message_count=record.message_count,
        is_context_full=record.is_context_full,
        resource=resource,
    )


def to_message(record: MessageRecord) -> Message:
    return Message(
        id=record.id,
        conversation_id=record.conversation_id,
        role=Role(record.role),
        content=record.content,
        created_at=_as_utc(record.created_at),
        token_count=record.token_count,
        starred=record.starred,
        reported=ReportInfo.model_validate(record.reported) if record.reported else None,
        truncated=record.truncated,
    )


class ConversationRepository:
    """
    Durable store for conversations and messages.

    Args:
        session_factory: Session factory; defaults to the process-wide one
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory

    async def get_conversation(
        self, conversation_id: str, user_id: str
    ) -> Optional[ConversationMetadata]:
        async with with_unit_of_work(self.session_factory) as session:
            result = await session.execute(
                select(ConversationRecord).where(
                    ConversationRecord.id == conversation_id,
                    ConversationRecord.user_id == user_id,
                )
            )
            record = result.scalar_one_or_none()
            return to_metadata(record) if record else None

    async def create_conversation(
        self,
        user_id: str,
        title: str,
        resource: Optional[BoundResource] = None,
    ) -> ConversationMetadata:
        now = datetime.now(timezone.utc)
        record = ConversationRecord(
            id=new_id(),
            user_id=user_id,
            title=title,
            created_at=now,
            last_message_at=now,
            message_count=0,
            is_context_full=False,
            resource_url=resource.url if resource else None,
            resource_content=resource.content if resource else None,
        )
        try:
            async with with_unit_of_work(self.session_factory) as session:
                session.add(record)
                await session.flush()
                return to_metadata(record)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to create conversation: {e}") from e

    async def list_conversations(self, user_id: str) -> List[ConversationMetadata]:
        async with with_unit_of_work(self.session_factory) as session:
            result = await session.execute(
                select(ConversationRecord)
                .where(ConversationRecord.user_id == user_id)
                .order_by(ConversationRecord.last_message_at.desc())
            )
            return [to_metadata(r) for r in result.scalars().all()]

    async def list_messages(self, conversation_id: str) -> List[Message]:
        async with with_unit_of_work(self.session_factory) as session:
            result = await session.execute(
                select(MessageRecord)
                .where(MessageRecord.conversation_id == conversation_id)
                .order_by(MessageRecord.seq)
            )
            return [to_message(r) for r in result.scalars().all()]

    async def list_starred_messages(self, user_id: str) -> List[Message]:
        async with with_unit_of_work(self.session_factory) as session:
            result = await session.execute(
                select(MessageRecord)
                .join(
                    ConversationRecord,
                    ConversationRecord.id == MessageRecord.conversation_id,
                )
                .where(
                    ConversationRecord.user_id == user_id,
                    MessageRecord.starred.is_(True),
                )
                .order_by(MessageRecord.created_at, MessageRecord.seq)
            )
            return [to_message(r) for r in result.scalars().all()]

    async def append_message(
        self, conversation_id: str, message: Message
    ) -> ConversationMetadata:
        """
        Insert a message and advance message_count / last_message_at atomically.

        Raises:
            ConversationNotFoundError: The conversation does not exist
        """
        try:
            async with with_unit_of_work(self.session_factory) as session:
                conversation = await session.get(
                    ConversationRecord, conversation_id, with_for_update=True
                )
                if conversation is None:
                    raise ConversationNotFoundError(
                        f"Conversation {conversation_id} not found"
                    )

                next_seq = await session.scalar(
                    select(func.coalesce(func.max(MessageRecord.seq), 0)).where(
                        MessageRecord.conversation_id == conversation_id
                    )
                )
                session.add(
                    MessageRecord(
                        id=message.id,
                        conversation_id=conversation_id,
                        seq=(next_seq or 0) + 1,
                        role=message.role.value,
                        content=message.content,
                        created_at=message.created_at,
                        token_count=message.token_count,
                        starred=message.starred,
                        reported=message.reported.model_dump(mode="json")
                        if message.reported
                        else None,
                        truncated=message.truncated,
                    )
                )
                conversation.message_count += 1
                conversation.last_message_at = message.created_at
                await session.flush()
                return to_metadata(conversation)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to append message: {e}") from e

    async def update_metadata(self, conversation_id: str, patch: Dict[str, Any]) -> None:
        unknown = set(patch) - CONVERSATION_FIELDS
        if unknown:
            raise RepositoryError(f"Unsupported conversation fields: {sorted(unknown)}")
        async with with_unit_of_work(self.session_factory) as session:
            await session.execute(
                update(ConversationRecord)
                .where(ConversationRecord.id == conversation_id)
                .values(**patch)
            )

    async def update_message_flags(
        self, conversation_id: str, message_id: str, patch: Dict[str, Any]
    ) -> Optional[Message]:
        unknown = set(patch) - MESSAGE_FLAGS
        if unknown:
            raise RepositoryError(f"Only message flags can change, got {sorted(unknown)}")

        async with with_unit_of_work(self.session_factory) as session:
            result = await session.execute(
                select(MessageRecord).where(
                    MessageRecord.id == message_id,
                    MessageRecord.conversation_id == conversation_id,
                )
            )
            record = result.scalar_one_or_none()
            if record is None:
                return None

            if "starred" in patch:
                record.starred = bool(patch["starred"])
            if "reported" in patch:
                reported = patch["reported"]
                if isinstance(reported, ReportInfo):
                    reported = reported.model_dump(mode="json")
                record.reported = reported
            await session.flush()
            return to_message(record)

    async def delete_conversation(self, conversation_id: str) -> None:
        async with with_unit_of_work(self.session_factory) as session:
            await session.execute(
                delete(MessageRecord).where(MessageRecord.conversation_id == conversation_id)
            )
            await session.execute(
                delete(ConversationRecord).where(ConversationRecord.id == conversation_id)
            )
        logger.info("Conversation removed from store", conversation_id=conversation_id)
