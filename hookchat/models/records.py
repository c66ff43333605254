"""Immutable read models returned by the store and the exchange engine.

ORM rows never leave the persistence layer; callers get these frozen
snapshots instead, built with ``Model.from_row(row)``.
"""

import json
import logging
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field

from hookchat.db.models import (
    DEFAULT_CONVERSATION_TITLE,
    Agent,
    Attachment,
    Conversation,
    Message,
    MessageStatus,
    MessageType,
)

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp", "heic"})
AUDIO_EXTENSIONS = frozenset({"mp3", "m4a", "wav", "aac"})


def _load_json(raw: str | None, owner: str, owner_id: str) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Corrupted JSON in %s %s", owner, owner_id)
        return None


class VoiceSettings(BaseModel):
    """Speech settings for voice-enabled agents."""

    language: str = "en-US"
    rate: float = 0.5
    pitch: float = 1.0
    volume: float = 1.0
    voice_identifier: str | None = None


class MessageMetadata(BaseModel):
    """Structured metadata stored with a message.

    Attributes:
        response_time: Seconds the webhook took to answer.
        voice_duration: Seconds of recorded audio for voice messages.
        error_message: Human-readable description of the last failure.
        error_code: E-XXXX code of the last failure.
        error_tag: Short tag of the last failure (e.g. ``http_status``).
        retry_count: How many times this content has been re-sent.
        remote_timestamp: Timestamp reported by the agent in its response.
        custom_data: Free-form string key/values returned by the agent.
    """

    response_time: float | None = None
    voice_duration: float | None = None
    error_message: str | None = None
    error_code: str | None = None
    error_tag: str | None = None
    retry_count: int | None = None
    remote_timestamp: str | None = None
    custom_data: dict[str, str] | None = None

    def to_json(self) -> str | None:
        data = self.model_dump(exclude_none=True)
        return json.dumps(data) if data else None


class AgentRecord(BaseModel):
    """Snapshot of an Agent row."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    webhook_url: str
    description: str | None = None
    icon_name: str
    is_voice_enabled: bool
    voice_settings: VoiceSettings | None = None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: Agent) -> "AgentRecord":
        settings = _load_json(row.voice_settings, "agent", row.id)
        return cls(
            id=row.id,
            name=row.name,
            webhook_url=row.webhook_url,
            description=row.description,
            icon_name=row.icon_name,
            is_voice_enabled=row.is_voice_enabled,
            voice_settings=VoiceSettings(**settings) if settings else None,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class ConversationRecord(BaseModel):
    """Snapshot of a Conversation row.

    ``first_message`` is filled by listings so ``display_title`` can fall
    back to the opening line of the conversation.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    agent_id: str
    title: str | None = None
    created_at: str
    last_message_at: str
    is_archived: bool
    message_count: int = 0
    first_message: str | None = None

    @property
    def display_title(self) -> str:
        if self.title:
            return self.title
        if self.first_message:
            return self.first_message[:50]
        return DEFAULT_CONVERSATION_TITLE

    @classmethod
    def from_row(
        cls,
        row: Conversation,
        message_count: int = 0,
        first_message: str | None = None,
    ) -> "ConversationRecord":
        return cls(
            id=row.id,
            agent_id=row.agent_id,
            title=row.title,
            created_at=row.created_at,
            last_message_at=row.last_message_at,
            is_archived=row.is_archived,
            message_count=message_count,
            first_message=first_message,
        )


class AttachmentRecord(BaseModel):
    """Snapshot of an Attachment row."""

    model_config = ConfigDict(frozen=True)

    id: str
    message_id: str
    file_name: str
    file_size: int
    file_type: str
    local_path: str | None = None
    remote_url: str | None = None
    uploaded_at: str

    @property
    def file_extension(self) -> str:
        name = self.file_name
        if "://" in name:
            name = urlparse(name).path
        return PurePosixPath(name).suffix.lstrip(".")

    @property
    def is_image(self) -> bool:
        return self.file_extension.lower() in IMAGE_EXTENSIONS

    @property
    def is_audio(self) -> bool:
        return self.file_extension.lower() in AUDIO_EXTENSIONS

    @property
    def formatted_file_size(self) -> str:
        return format_byte_count(self.file_size)

    @classmethod
    def from_row(cls, row: Attachment) -> "AttachmentRecord":
        return cls(
            id=row.id,
            message_id=row.message_id,
            file_name=row.file_name,
            file_size=row.file_size,
            file_type=row.file_type,
            local_path=row.local_path,
            remote_url=row.remote_url,
            uploaded_at=row.uploaded_at,
        )


class MessageRecord(BaseModel):
    """Snapshot of a Message row with its attachments."""

    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    content: str
    is_from_user: bool
    message_type: MessageType
    status: MessageStatus
    timestamp: str
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
    attachments: tuple[AttachmentRecord, ...] = ()

    @property
    def is_failed(self) -> bool:
        return self.status == MessageStatus.failed

    @property
    def is_retryable(self) -> bool:
        return self.is_from_user and self.is_failed

    @classmethod
    def from_row(
        cls, row: Message, attachments: list[Attachment] | None = None
    ) -> "MessageRecord":
        metadata = _load_json(row.metadata_json, "message", row.id) or {}
        return cls(
            id=row.id,
            conversation_id=row.conversation_id,
            content=row.content,
            is_from_user=row.is_from_user,
            message_type=MessageType(row.message_type),
            status=MessageStatus(row.status),
            timestamp=row.timestamp,
            metadata=MessageMetadata(**metadata),
            attachments=tuple(
                AttachmentRecord.from_row(a) for a in (attachments or [])
            ),
        )


def format_byte_count(size: int) -> str:
    """Format a byte count for display, e.g. ``1.5 MB``."""
    value = float(size)
    for unit in ("bytes", "KB", "MB", "GB"):
        if value < 1000 or unit == "GB":
            if unit == "bytes":
                return f"{int(value)} bytes"
            return f"{value:.1f} {unit}"
        value /= 1000
    return f"{size} bytes"
