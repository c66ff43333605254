"""Persistence service for agents, conversations, messages and attachments.

Thin layer between the exchange engine and the SQLAlchemy models. All
history reads and writes go through this service; each public method is a
single transaction committed before it returns, so every value handed back
is durable.

Invariant kept here: a conversation's ``last_message_at`` is never older
than any of its messages. Appends advance it in the same transaction;
deletions recompute it from what remains.
"""

import json
import logging
from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from hookchat.db.connection import get_async_db_context
from hookchat.db.models import (
    DEFAULT_AGENT_ICON,
    Agent,
    Attachment,
    Conversation,
    Message,
    MessageStatus,
    MessageType,
    generate_uuid,
    to_iso,
    utc_now_iso,
)
from hookchat.errors import NotFoundError, ValidationError
from hookchat.models.records import (
    AgentRecord,
    AttachmentRecord,
    ConversationRecord,
    MessageMetadata,
    MessageRecord,
    VoiceSettings,
)
from hookchat.models.webhook import WebhookAttachment
from hookchat.services.webhook_dispatcher import validate_webhook

logger = logging.getLogger(__name__)

_UNSET = object()


def _require_valid_url(url: str) -> str:
    url = (url or "").strip()
    if not validate_webhook(url).is_valid:
        raise ValidationError.from_code("E-2002", url=url)
    return url


def _require_text(value: str | None, field: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError.from_code("E-2004", field=field)
    return value


class ChatStore:
    """CRUD and query operations over the local chat database.

    Args:
        session_factory: Async session factory bound to the chat database.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    def _transaction(self):
        return get_async_db_context(self._session_factory)

    # === Agents ===

    async def create_agent(
        self,
        name: str,
        webhook_url: str,
        description: str | None = None,
        icon_name: str = DEFAULT_AGENT_ICON,
        is_voice_enabled: bool = True,
        voice_settings: VoiceSettings | None = None,
    ) -> AgentRecord:
        """Create an agent after validating its webhook URL.

        Raises:
            ValidationError: Empty name or malformed webhook URL.
        """
        name = _require_text(name, "Agent name")
        webhook_url = _require_valid_url(webhook_url)
        async with self._transaction() as db:
            agent = Agent(
                name=name,
                webhook_url=webhook_url,
                description=description,
                icon_name=icon_name,
                is_voice_enabled=is_voice_enabled,
                voice_settings=voice_settings.model_dump_json() if voice_settings else None,
            )
            db.add(agent)
            await db.flush()
            record = AgentRecord.from_row(agent)
        logger.info("Created agent %s (%s)", record.id, record.name)
        return record

    async def get_agent(self, agent_id: str) -> AgentRecord:
        async with self._transaction() as db:
            agent = await db.get(Agent, agent_id)
            if agent is None:
                raise NotFoundError("Agent", agent_id)
            return AgentRecord.from_row(agent)

    async def list_agents(self) -> list[AgentRecord]:
        """List agents, newest first."""
        async with self._transaction() as db:
            result = await db.execute(
                select(Agent).order_by(Agent.created_at.desc())
            )
            return [AgentRecord.from_row(a) for a in result.scalars().all()]

    async def update_agent(
        self,
        agent_id: str,
        *,
        name: str | None = None,
        webhook_url: str | None = None,
        description: object = _UNSET,
        icon_name: str | None = None,
        is_voice_enabled: bool | None = None,
        voice_settings: object = _UNSET,
    ) -> AgentRecord:
        """Update selected agent fields. Omitted fields are left unchanged.

        Raises:
            NotFoundError: Unknown agent.
            ValidationError: Empty name or malformed webhook URL.
        """
        if name is not None:
            name = _require_text(name, "Agent name")
        if webhook_url is not None:
            webhook_url = _require_valid_url(webhook_url)
        async with self._transaction() as db:
            agent = await db.get(Agent, agent_id)
            if agent is None:
                raise NotFoundError("Agent", agent_id)
            if name is not None:
                agent.name = name
            if webhook_url is not None:
                agent.webhook_url = webhook_url
            if description is not _UNSET:
                agent.description = description
            if icon_name is not None:
                agent.icon_name = icon_name
            if is_voice_enabled is not None:
                agent.is_voice_enabled = is_voice_enabled
            if voice_settings is not _UNSET:
                agent.voice_settings = (
                    voice_settings.model_dump_json() if voice_settings else None
                )
            agent.updated_at = utc_now_iso()
            await db.flush()
            return AgentRecord.from_row(agent)

    async def delete_agent(self, agent_id: str) -> bool:
        """Delete an agent and, by cascade, its whole conversation tree.

        Returns:
            True if the agent existed.
        """
        async with self._transaction() as db:
            agent = await db.get(Agent, agent_id)
            if agent is None:
                return False
            await db.delete(agent)
        logger.info("Deleted agent %s", agent_id)
        return True

    # === Conversations ===

    async def create_conversation(
        self, agent_id: str, title: str | None = None
    ) -> ConversationRecord:
        """Start a conversation with an agent.

        Raises:
            NotFoundError: Unknown agent.
        """
        async with self._transaction() as db:
            if await db.get(Agent, agent_id) is None:
                raise NotFoundError("Agent", agent_id)
            now = utc_now_iso()
            conversation = Conversation(
                agent_id=agent_id,
                title=title,
                created_at=now,
                last_message_at=now,
            )
            db.add(conversation)
            await db.flush()
            return ConversationRecord.from_row(conversation)

    def _conversation_summary_query(self):
        message_count = (
            select(func.count(Message.id))
            .where(Message.conversation_id == Conversation.id)
            .correlate(Conversation)
            .scalar_subquery()
        )
        first_message = (
            select(Message.content)
            .where(Message.conversation_id == Conversation.id)
            .order_by(Message.timestamp, Message.seq)
            .limit(1)
            .correlate(Conversation)
            .scalar_subquery()
        )
        return select(Conversation, message_count, first_message)

    async def get_conversation(self, conversation_id: str) -> ConversationRecord:
        async with self._transaction() as db:
            result = await db.execute(
                self._conversation_summary_query().where(
                    Conversation.id == conversation_id
                )
            )
            row = result.first()
            if row is None:
                raise NotFoundError("Conversation", conversation_id)
            conversation, count, first = row
            return ConversationRecord.from_row(conversation, count or 0, first)

    async def list_conversations(
        self,
        agent_id: str | None = None,
        include_archived: bool = False,
    ) -> list[ConversationRecord]:
        """List conversations, most recently active first.

        Args:
            agent_id: Restrict to one agent's conversations.
            include_archived: Include archived conversations.
        """
        query = self._conversation_summary_query()
        if agent_id is not None:
            query = query.where(Conversation.agent_id == agent_id)
        if not include_archived:
            query = query.where(Conversation.is_archived.is_(False))
        query = query.order_by(Conversation.last_message_at.desc())

        async with self._transaction() as db:
            result = await db.execute(query)
            return [
                ConversationRecord.from_row(conversation, count or 0, first)
                for conversation, count, first in result.all()
            ]

    async def rename_conversation(
        self, conversation_id: str, title: str | None
    ) -> ConversationRecord:
        """Set or clear (empty title) a conversation's title.

        Raises:
            NotFoundError: Unknown conversation.
        """
        async with self._transaction() as db:
            conversation = await db.get(Conversation, conversation_id)
            if conversation is None:
                raise NotFoundError("Conversation", conversation_id)
            conversation.title = title.strip() if title and title.strip() else None
        return await self.get_conversation(conversation_id)

    async def archive_conversation(
        self, conversation_id: str, archived: bool = True
    ) -> ConversationRecord:
        async with self._transaction() as db:
            conversation = await db.get(Conversation, conversation_id)
            if conversation is None:
                raise NotFoundError("Conversation", conversation_id)
            conversation.is_archived = archived
        return await self.get_conversation(conversation_id)

    async def delete_conversation(self, conversation_id: str) -> bool:
        async with self._transaction() as db:
            conversation = await db.get(Conversation, conversation_id)
            if conversation is None:
                return False
            await db.delete(conversation)
        logger.info("Deleted conversation %s", conversation_id)
        return True

    # === Messages ===

    async def _add_message(
        self,
        db: AsyncSession,
        conversation: Conversation,
        content: str,
        is_from_user: bool,
        message_type: MessageType,
        status: MessageStatus,
        metadata: MessageMetadata | None,
        message_id: str | None = None,
    ) -> Message:
        """Insert a message and advance last_message_at in the same transaction."""
        timestamp = max(utc_now_iso(), conversation.last_message_at)
        max_seq = await db.scalar(
            select(func.max(Message.seq)).where(
                Message.conversation_id == conversation.id
            )
        )
        message = Message(
            id=message_id or generate_uuid(),
            conversation_id=conversation.id,
            content=content,
            is_from_user=is_from_user,
            message_type=message_type.value,
            status=status.value,
            timestamp=timestamp,
            seq=(max_seq or 0) + 1,
            metadata_json=metadata.to_json() if metadata else None,
        )
        db.add(message)
        conversation.last_message_at = timestamp
        await db.flush()
        return message

    async def _recompute_last_message_at(
        self, db: AsyncSession, conversation: Conversation
    ) -> None:
        latest = await db.scalar(
            select(func.max(Message.timestamp)).where(
                Message.conversation_id == conversation.id
            )
        )
        conversation.last_message_at = latest or conversation.created_at

    async def append_message(
        self,
        conversation_id: str,
        content: str,
        *,
        is_from_user: bool,
        message_type: MessageType = MessageType.text,
        status: MessageStatus | None = None,
        metadata: MessageMetadata | None = None,
        message_id: str | None = None,
    ) -> MessageRecord:
        """Append a message to a conversation.

        User messages default to pending, agent messages to delivered.
        ``message_id`` lets the caller know the id before the commit.

        Raises:
            NotFoundError: Unknown conversation.
        """
        if status is None:
            status = MessageStatus.pending if is_from_user else MessageStatus.delivered
        async with self._transaction() as db:
            conversation = await db.get(Conversation, conversation_id)
            if conversation is None:
                raise NotFoundError("Conversation", conversation_id)
            message = await self._add_message(
                db, conversation, content, is_from_user, message_type, status,
                metadata, message_id,
            )
            return MessageRecord.from_row(message, [])

    async def get_message(self, message_id: str) -> MessageRecord:
        async with self._transaction() as db:
            message = await self._load_with_attachments(db, message_id)
            if message is None:
                raise NotFoundError("Message", message_id)
            return MessageRecord.from_row(message, message.attachments)

    async def list_messages(self, conversation_id: str) -> list[MessageRecord]:
        """All messages of a conversation, oldest first."""
        async with self._transaction() as db:
            result = await db.execute(
                select(Message)
                .options(selectinload(Message.attachments))
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.timestamp, Message.seq)
            )
            return [
                MessageRecord.from_row(m, m.attachments)
                for m in result.scalars().all()
            ]

    async def list_recent_messages(self, limit: int = 100) -> list[MessageRecord]:
        """Most recent messages across all conversations, newest first."""
        async with self._transaction() as db:
            result = await db.execute(
                select(Message)
                .options(selectinload(Message.attachments))
                .order_by(Message.timestamp.desc(), Message.seq.desc())
                .limit(limit)
            )
            return [
                MessageRecord.from_row(m, m.attachments)
                for m in result.scalars().all()
            ]

    async def record_delivery(
        self,
        user_message_id: str,
        response_text: str,
        metadata: MessageMetadata | None = None,
        attachments: list[WebhookAttachment] | None = None,
    ) -> tuple[MessageRecord, MessageRecord]:
        """Persist an agent response and mark the user message delivered.

        Both writes share one transaction.

        Returns:
            (delivered user message, response message)

        Raises:
            NotFoundError: The user message no longer exists.
        """
        async with self._transaction() as db:
            user_message = await db.get(Message, user_message_id)
            if user_message is None:
                raise NotFoundError("Message", user_message_id)
            conversation = await db.get(Conversation, user_message.conversation_id)
            user_message.status = MessageStatus.delivered.value

            response = await self._add_message(
                db,
                conversation,
                response_text,
                is_from_user=False,
                message_type=MessageType.text,
                status=MessageStatus.delivered,
                metadata=metadata,
            )
            stored: list[Attachment] = []
            for item in attachments or []:
                attachment = Attachment(
                    message_id=response.id,
                    file_name=item.name or item.url.rsplit("/", 1)[-1] or item.url,
                    file_size=item.size or 0,
                    file_type=item.type,
                    remote_url=item.url,
                    uploaded_at=response.timestamp,
                )
                db.add(attachment)
                stored.append(attachment)
            await db.flush()

            user_attachments = (
                await db.execute(
                    select(Attachment)
                    .where(Attachment.message_id == user_message.id)
                    .order_by(Attachment.uploaded_at)
                )
            ).scalars().all()
            return (
                MessageRecord.from_row(user_message, list(user_attachments)),
                MessageRecord.from_row(response, stored),
            )

    async def _load_with_attachments(
        self, db: AsyncSession, message_id: str
    ) -> Message | None:
        result = await db.execute(
            select(Message)
            .options(selectinload(Message.attachments))
            .where(Message.id == message_id)
        )
        return result.scalar_one_or_none()

    def _apply_failure(self, message: Message, metadata: MessageMetadata) -> None:
        existing = json.loads(message.metadata_json) if message.metadata_json else {}
        merged = MessageMetadata(**{**existing, **metadata.model_dump(exclude_none=True)})
        message.status = MessageStatus.failed.value
        message.metadata_json = merged.to_json()

    async def mark_failed(
        self, message_id: str, metadata: MessageMetadata
    ) -> MessageRecord:
        """Mark a user message failed, merging in error metadata.

        Raises:
            NotFoundError: Unknown message.
        """
        async with self._transaction() as db:
            message = await self._load_with_attachments(db, message_id)
            if message is None:
                raise NotFoundError("Message", message_id)
            self._apply_failure(message, metadata)
            await db.flush()
            return MessageRecord.from_row(message, message.attachments)

    async def fail_if_pending(
        self, message_id: str, metadata: MessageMetadata
    ) -> MessageRecord | None:
        """Mark a message failed only while it is still pending.

        Returns:
            The failed message, or None when the message is gone or has
            already reached delivered/failed.
        """
        async with self._transaction() as db:
            message = await self._load_with_attachments(db, message_id)
            if message is None or message.status != MessageStatus.pending.value:
                return None
            self._apply_failure(message, metadata)
            await db.flush()
            return MessageRecord.from_row(message, message.attachments)

    async def delete_message(self, message_id: str) -> bool:
        """Delete a message and recompute its conversation's last_message_at.

        Returns:
            True if the message existed.
        """
        async with self._transaction() as db:
            message = await db.get(Message, message_id)
            if message is None:
                return False
            conversation = await db.get(Conversation, message.conversation_id)
            await db.delete(message)
            await db.flush()
            await self._recompute_last_message_at(db, conversation)
        logger.debug("Deleted message %s", message_id)
        return True

    async def replace_message(
        self,
        message_id: str,
        content: str,
        metadata: MessageMetadata | None = None,
        new_message_id: str | None = None,
    ) -> MessageRecord:
        """Delete a user message and append a pending copy in one transaction.

        Both writes commit together or not at all, so the content is never
        lost between the delete and the append.

        Returns:
            The new pending message.

        Raises:
            NotFoundError: Unknown message.
        """
        async with self._transaction() as db:
            old = await db.get(Message, message_id)
            if old is None:
                raise NotFoundError("Message", message_id)
            conversation = await db.get(Conversation, old.conversation_id)
            await db.delete(old)
            await db.flush()
            await self._recompute_last_message_at(db, conversation)
            message = await self._add_message(
                db,
                conversation,
                content,
                is_from_user=True,
                message_type=MessageType.text,
                status=MessageStatus.pending,
                metadata=metadata,
                message_id=new_message_id,
            )
            record = MessageRecord.from_row(message, [])
        logger.debug("Replaced message %s with %s", message_id, record.id)
        return record

    async def delete_messages_older_than(self, cutoff: datetime) -> int:
        """Batch-delete messages (and their attachments) older than ``cutoff``.

        Affected conversations get last_message_at recomputed.

        Returns:
            Number of messages deleted.
        """
        cutoff_iso = to_iso(cutoff)
        async with self._transaction() as db:
            stale = select(Message.id).where(Message.timestamp < cutoff_iso)
            affected = (
                await db.execute(
                    select(Message.conversation_id)
                    .where(Message.timestamp < cutoff_iso)
                    .distinct()
                )
            ).scalars().all()

            await db.execute(
                delete(Attachment)
                .where(Attachment.message_id.in_(stale))
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(
                delete(Message)
                .where(Message.timestamp < cutoff_iso)
                .execution_options(synchronize_session=False)
            )
            deleted = result.rowcount or 0

            for conversation_id in affected:
                conversation = await db.get(Conversation, conversation_id)
                if conversation is not None:
                    await self._recompute_last_message_at(db, conversation)
        logger.info("Deleted %d messages older than %s", deleted, cutoff_iso)
        return deleted

    # === Attachments ===

    async def add_attachment(
        self,
        message_id: str,
        file_name: str,
        file_size: int,
        file_type: str,
        local_path: str | None = None,
        remote_url: str | None = None,
    ) -> AttachmentRecord:
        """Attach a file to a message.

        Raises:
            ValidationError: Not exactly one of local_path/remote_url given.
            NotFoundError: Unknown message.
        """
        if (local_path is None) == (remote_url is None):
            raise ValidationError.from_code(
                "E-2003",
                reason="Attachment needs exactly one of local_path or remote_url",
            )
        file_name = _require_text(file_name, "File name")
        async with self._transaction() as db:
            if await db.get(Message, message_id) is None:
                raise NotFoundError("Message", message_id)
            attachment = Attachment(
                message_id=message_id,
                file_name=file_name,
                file_size=file_size,
                file_type=file_type,
                local_path=local_path,
                remote_url=remote_url,
            )
            db.add(attachment)
            await db.flush()
            return AttachmentRecord.from_row(attachment)

    async def list_attachments(self, message_id: str) -> list[AttachmentRecord]:
        async with self._transaction() as db:
            result = await db.execute(
                select(Attachment)
                .where(Attachment.message_id == message_id)
                .order_by(Attachment.uploaded_at)
            )
            return [AttachmentRecord.from_row(a) for a in result.scalars().all()]
