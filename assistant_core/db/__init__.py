"""
Database module for Assistant Core.

Single import point for database functionality.
"""

from .database import (
    create_engine_for,
    create_tables,
    drop_tables,
    get_engine,
    get_session_factory,
    on_shutdown,
    ping,
    with_unit_of_work,
)
from .models import Base, ConversationRecord, MessageRecord
from .repositories import (
    ConversationNotFoundError,
    ConversationRepository,
    RepositoryError,
)

__all__ = [
    "create_engine_for",
    "create_tables",
    "drop_tables",
    "get_engine",
    "get_session_factory",
    "on_shutdown",
    "ping",
    "with_unit_of_work",
    "Base",
    "ConversationRecord",
    "MessageRecord",
    "ConversationNotFoundError",
    "ConversationRepository",
    "RepositoryError",
]
