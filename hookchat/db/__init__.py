"""Database module for HookChat persistence."""

from hookchat.db.connection import (
    async_init_db,
    close_async_db,
    create_engine_for_url,
    create_session_factory,
    get_async_database_url,
    get_async_db_context,
    get_database_url,
)
from hookchat.db.models import (
    Agent,
    Attachment,
    Base,
    Conversation,
    Message,
    MessageStatus,
    MessageType,
)

__all__ = [
    # Models
    "Base",
    "Agent",
    "Conversation",
    "Message",
    "Attachment",
    # Enums
    "MessageStatus",
    "MessageType",
    # Connection
    "create_engine_for_url",
    "create_session_factory",
    "get_async_db_context",
    "get_database_url",
    "get_async_database_url",
    "async_init_db",
    "close_async_db",
]
