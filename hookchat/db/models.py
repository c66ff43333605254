"""SQLAlchemy ORM models for the HookChat local database.

Four tables form a strict ownership tree:
Agent -> Conversation -> Message -> Attachment. Children hold a foreign key
back to their parent for lookups; deletion cascades are declared on the
parent side only. Uses SQLAlchemy 2.0 style with Mapped and mapped_column.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format.

    Always carries microseconds so stored values sort lexicographically.
    """
    return datetime.now(UTC).isoformat(timespec="microseconds")


def to_iso(value: datetime) -> str:
    """Normalize a datetime to the stored ISO8601 representation."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


DEFAULT_AGENT_ICON = "person.circle.fill"
DEFAULT_CONVERSATION_TITLE = "New Conversation"


class MessageType(str, Enum):
    """Kind of content carried by a message."""

    text = "text"
    voice = "voice"
    image = "image"
    file = "file"


class MessageStatus(str, Enum):
    """Delivery status of a message.

    Lifecycle (user messages): pending -> delivered/failed
    Agent responses are persisted directly as delivered.
    """

    pending = "pending"
    delivered = "delivered"
    failed = "failed"


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Models


class Agent(Base):
    """Remote agent reachable through a webhook.

    Attributes:
        id: UUID primary key
        name: Display name
        webhook_url: Absolute http(s) URL messages are POSTed to
        description: Optional free-text description
        icon_name: Icon identifier for list rendering
        is_voice_enabled: Whether voice input is offered for this agent
        voice_settings: JSON blob with speech settings (language, rate, ...)
        created_at: ISO8601 creation timestamp
        updated_at: ISO8601 last-update timestamp
    """

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    webhook_url: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    icon_name: Mapped[str] = mapped_column(
        String(100), nullable=False, default=DEFAULT_AGENT_ICON
    )
    is_voice_enabled: Mapped[bool] = mapped_column(nullable=False, default=True)
    voice_settings: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    conversations: Mapped[list["Conversation"]] = relationship(
        "Conversation",
        back_populates="agent",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_agents_created_at", "created_at"),)

    def __repr__(self) -> str:
        return f"<Agent(id={self.id!r}, name={self.name!r})>"


class Conversation(Base):
    """Conversation thread with a single agent.

    Attributes:
        id: UUID primary key
        agent_id: FK to the owning Agent (immutable after creation)
        title: Optional display title
        created_at: ISO8601 creation timestamp
        last_message_at: ISO8601 timestamp of the newest message, never older
            than any message in the conversation
        is_archived: Archived conversations are hidden from default listings
    """

    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    agent_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    last_message_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    is_archived: Mapped[bool] = mapped_column(nullable=False, default=False)

    agent: Mapped["Agent"] = relationship("Agent", back_populates="conversations")
    messages: Mapped[list["Message"]] = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.timestamp",
    )

    __table_args__ = (
        Index("idx_conversations_agent_id", "agent_id"),
        Index("idx_conversations_archived_last", "is_archived", "last_message_at"),
    )

    def __repr__(self) -> str:
        return f"<Conversation(id={self.id!r}, agent_id={self.agent_id!r})>"


class Message(Base):
    """Single chat message.

    Attributes:
        id: UUID primary key
        conversation_id: FK to the owning Conversation (immutable)
        content: Message text
        is_from_user: True for user-authored messages, False for responses
        message_type: text, voice, image or file
        status: pending, delivered or failed
        timestamp: ISO8601 creation timestamp, non-decreasing per conversation
        seq: Insertion counter used as a tie-breaker for equal timestamps
        metadata_json: Optional JSON with response time, error details, etc.
    """

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    conversation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_from_user: Mapped[bool] = mapped_column(nullable=False)
    message_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MessageType.text.value
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MessageStatus.pending.value
    )
    timestamp: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    conversation: Mapped["Conversation"] = relationship(
        "Conversation", back_populates="messages"
    )
    attachments: Mapped[list["Attachment"]] = relationship(
        "Attachment",
        back_populates="message",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Attachment.uploaded_at",
    )

    __table_args__ = (
        Index("idx_messages_conversation_ts", "conversation_id", "timestamp"),
        Index("idx_messages_timestamp", "timestamp"),
        Index("idx_messages_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Message(id={self.id!r}, from_user={self.is_from_user!r}, "
            f"status={self.status!r})>"
        )


class Attachment(Base):
    """File attached to a message.

    Exactly one of local_path or remote_url is set.
    """

    __tablename__ = "attachments"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    message_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    file_type: Mapped[str] = mapped_column(String(100), nullable=False)
    local_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    remote_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    uploaded_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    message: Mapped["Message"] = relationship("Message", back_populates="attachments")

    __table_args__ = (Index("idx_attachments_message_id", "message_id"),)

    def __repr__(self) -> str:
        return f"<Attachment(id={self.id!r}, file_name={self.file_name!r})>"
