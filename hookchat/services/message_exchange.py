"""Message exchange engine: send, receive and retry for one user message.

State machine per user message:

    pending -> delivered   agent answered, response persisted
    pending -> failed      dispatch failed or was cancelled
    failed  -> (retry)     failed row replaced by a new pending row in one commit

Each transition is committed by ChatStore before the matching event is
emitted, so observers always see ``pending`` before the terminal event.
A write and its event run as one settled step: cancelling the caller lets
the step finish, then the message is resolved before CancelledError
propagates. A cancelled send therefore ends failed (E-3005) unless its
delivery had already committed.

Sends and retries on the same conversation are serialized by a
per-conversation asyncio.Lock covering the whole pending -> terminal
sequence. Different conversations proceed concurrently.

Example:
    engine = MessageExchangeEngine(store, dispatcher, load_device_info())
    message_id = await engine.send(conversation.id, "Hello")
    history = await engine.refresh(conversation.id)
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TypeVar

from hookchat.db.models import generate_uuid
from hookchat.errors import (
    CancelledSendError,
    DispatchError,
    HookChatError,
    NotFoundError,
    NotRetryableError,
    ValidationError,
)
from hookchat.models.records import (
    AgentRecord,
    MessageMetadata,
    MessageRecord,
)
from hookchat.models.webhook import WebhookResponse
from hookchat.services.chat_store import ChatStore
from hookchat.services.events import MessageEventEmitter
from hookchat.services.retry_policy import RetryPolicyConfig, execute_with_retry
from hookchat.services.webhook_dispatcher import (
    Dispatcher,
    build_payload,
    validate_webhook,
)
from hookchat.utils.device import DeviceInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _ConversationLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class MessageExchangeEngine:
    """Coordinates ChatStore and a Dispatcher for user-initiated exchanges.

    Dispatch failures never escape ``send`` or ``retry``; they become a
    persisted failed state plus error metadata. PersistenceError and
    validation errors propagate to the caller.

    Args:
        store: Persistence service.
        dispatcher: Webhook dispatcher (real or fake).
        device: Device identity sent with every payload.
        emitter: Event emitter; a private one is created when omitted.
        retry_config: Backoff policy for connection checks. User messages
            are never retried automatically.
    """

    def __init__(
        self,
        store: ChatStore,
        dispatcher: Dispatcher,
        device: DeviceInfo,
        emitter: MessageEventEmitter | None = None,
        retry_config: RetryPolicyConfig | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._device = device
        self.emitter = emitter or MessageEventEmitter()
        self._retry_config = retry_config or RetryPolicyConfig()
        self._locks: dict[str, _ConversationLock] = {}

    @asynccontextmanager
    async def _serialized(self, conversation_id: str) -> AsyncIterator[None]:
        """Hold the conversation's lock; the entry is dropped once unused."""
        entry = self._locks.get(conversation_id)
        if entry is None:
            entry = self._locks[conversation_id] = _ConversationLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[conversation_id]

    def is_sending(self, conversation_id: str) -> bool:
        """Whether an exchange is in flight for the conversation."""
        entry = self._locks.get(conversation_id)
        return entry is not None and entry.lock.locked()

    async def _settle(self, step: Awaitable[T]) -> T:
        """Run a write-and-notify step to completion even if cancelled.

        On cancellation the step still finishes before CancelledError is
        re-raised, so no commit is interrupted halfway.
        """
        task = asyncio.ensure_future(step)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            await asyncio.wait([task])
            if not task.cancelled() and task.exception() is not None:
                logger.error("Step failed after cancellation: %s", task.exception())
            raise

    async def _agent_for_conversation(self, conversation_id: str) -> AgentRecord:
        conversation = await self._store.get_conversation(conversation_id)
        agent = await self._store.get_agent(conversation.agent_id)
        if not validate_webhook(agent.webhook_url).is_valid:
            raise ValidationError.from_code("E-2002", url=agent.webhook_url)
        return agent

    async def send(self, conversation_id: str, text: str) -> str:
        """Send a user message and wait for the agent's answer.

        Args:
            conversation_id: Target conversation.
            text: Message text; surrounding whitespace is trimmed.

        Returns:
            Id of the persisted user message, delivered or failed.

        Raises:
            ValidationError: Empty text or invalid agent webhook URL.
            NotFoundError: Unknown conversation.
            PersistenceError: A store write failed.
        """
        content = (text or "").strip()
        if not content:
            raise ValidationError.from_code("E-2001")
        agent = await self._agent_for_conversation(conversation_id)

        async with self._serialized(conversation_id):
            return await self._exchange(conversation_id, agent, content)

    async def retry(self, message_id: str) -> str:
        """Re-send a failed user message.

        The failed row is replaced, in the same commit, by a new pending
        message with the same content and a ``retry_count`` one higher.

        Returns:
            Id of the new user message.

        Raises:
            NotFoundError: Unknown message.
            NotRetryableError: Message is not a failed user message. Nothing
                is changed.
            PersistenceError: A store write failed; the failed row is kept.
        """
        message = await self._store.get_message(message_id)
        self._ensure_retryable(message)
        agent = await self._agent_for_conversation(message.conversation_id)

        async with self._serialized(message.conversation_id):
            # Re-read under the lock; a concurrent retry may have won.
            message = await self._store.get_message(message_id)
            self._ensure_retryable(message)

            retry_count = (message.metadata.retry_count or 0) + 1
            logger.info(
                "Retrying message %s (attempt %d)", message.id, retry_count,
            )
            return await self._exchange(
                message.conversation_id,
                agent,
                message.content,
                retry_count=retry_count,
                replaces=message.id,
            )

    def _ensure_retryable(self, message: MessageRecord) -> None:
        if not message.is_from_user:
            raise NotRetryableError(message.id, "not a user message")
        if not message.is_failed:
            raise NotRetryableError(message.id, f"status is {message.status.value}")

    async def _exchange(
        self,
        conversation_id: str,
        agent: AgentRecord,
        content: str,
        retry_count: int | None = None,
        replaces: str | None = None,
    ) -> str:
        """Pending write, dispatch, terminal write. Caller holds the lock."""
        message_id = generate_uuid()
        metadata = MessageMetadata(retry_count=retry_count) if retry_count else None
        try:
            message = await self._settle(
                self._open(conversation_id, message_id, content, metadata, replaces)
            )
            return await self._deliver(message, agent)
        except asyncio.CancelledError:
            logger.info("Send of message %s cancelled", message_id)
            await self._settle(self._cancel(message_id))
            raise

    async def _open(
        self,
        conversation_id: str,
        message_id: str,
        content: str,
        metadata: MessageMetadata | None,
        replaces: str | None,
    ) -> MessageRecord:
        if replaces is None:
            message = await self._store.append_message(
                conversation_id, content,
                is_from_user=True, metadata=metadata, message_id=message_id,
            )
        else:
            message = await self._store.replace_message(
                replaces, content, metadata=metadata, new_message_id=message_id,
            )
            await self.emitter.emit_deleted(conversation_id, replaces)
        await self.emitter.emit_pending(message)
        return message

    async def _deliver(self, message: MessageRecord, agent: AgentRecord) -> str:
        payload = build_payload(message.content, agent, self._device)
        started = time.monotonic()
        try:
            response = await self._dispatcher.dispatch(agent.webhook_url, payload)
        except DispatchError as e:
            await self._settle(self._fail(message, e))
            return message.id

        elapsed = time.monotonic() - started
        await self._settle(self._complete(message, response, elapsed))
        return message.id

    async def _complete(
        self, message: MessageRecord, response: WebhookResponse, elapsed: float
    ) -> None:
        response_metadata = MessageMetadata(
            response_time=round(elapsed, 3),
            remote_timestamp=response.timestamp.isoformat(),
            custom_data=response.metadata or None,
        )
        delivered, reply = await self._store.record_delivery(
            message.id,
            response.response,
            metadata=response_metadata,
            attachments=response.attachments,
        )
        logger.info(
            "Message %s delivered in %.2fs (%d attachment(s))",
            message.id, elapsed, len(reply.attachments),
        )
        await self.emitter.emit_delivered(delivered, reply)

    async def _fail(self, message: MessageRecord, error: HookChatError) -> None:
        logger.warning("Message %s failed: %s", message.id, error)
        failed = await self._store.mark_failed(message.id, _error_metadata(error))
        await self.emitter.emit_failed(failed, error.code, error.message)

    async def _cancel(self, message_id: str) -> None:
        error = CancelledSendError()
        failed = await self._store.fail_if_pending(message_id, _error_metadata(error))
        if failed is not None:
            await self.emitter.emit_failed(failed, error.code, error.message)

    async def delete_message(self, message_id: str) -> bool:
        """Delete a message on user request and notify observers.

        Returns:
            True if the message existed.
        """
        try:
            message = await self._store.get_message(message_id)
        except NotFoundError:
            return False
        async with self._serialized(message.conversation_id):
            deleted = await self._store.delete_message(message_id)
        if deleted:
            await self.emitter.emit_deleted(message.conversation_id, message_id)
        return deleted

    async def refresh(self, conversation_id: str) -> list[MessageRecord]:
        """Current history of a conversation, oldest first.

        Raises:
            NotFoundError: Unknown conversation.
        """
        await self._store.get_conversation(conversation_id)
        return await self._store.list_messages(conversation_id)

    async def check_connection(self, agent_id: str) -> bool:
        """Probe an agent's webhook, retrying transient failures.

        Returns:
            True on a 2xx answer; False on a non-2xx answer, an invalid
            endpoint, or once the retry policy gives up.

        Raises:
            NotFoundError: Unknown agent.
            RetryCancelledError: Cancelled during an attempt or backoff.
        """
        agent = await self._store.get_agent(agent_id)
        try:
            return await execute_with_retry(
                lambda: self._dispatcher.test_connection(agent.webhook_url, agent.id),
                self._retry_config,
            )
        except DispatchError as e:
            logger.warning("Connection test for agent %s failed: %s", agent.id, e)
            return False


def _error_metadata(error: HookChatError) -> MessageMetadata:
    return MessageMetadata(
        error_message=error.message,
        error_code=error.code,
        error_tag=error.tag,
    )
