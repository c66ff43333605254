"""Observer pattern for message state changes.

The exchange engine emits an event after every committed write, so an
observer for a given user message always sees ``pending`` before
``delivered`` or ``failed``.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from hookchat.models.records import MessageRecord

logger = logging.getLogger(__name__)


class MessageEventObserver(Protocol):
    """Observer protocol for message lifecycle events."""

    async def on_message_pending(self, message: MessageRecord) -> None:
        """Called after a user message is persisted as pending.

        Args:
            message: The pending user message.
        """
        ...

    async def on_message_delivered(
        self, message: MessageRecord, response: MessageRecord
    ) -> None:
        """Called after the agent's response is persisted.

        Args:
            message: The user message, now delivered.
            response: The agent's response message.
        """
        ...

    async def on_message_failed(
        self, message: MessageRecord, error_code: str, error_message: str
    ) -> None:
        """Called after a user message is marked failed.

        Args:
            message: The failed user message.
            error_code: E-XXXX code of the failure.
            error_message: Human-readable description.
        """
        ...

    async def on_message_deleted(self, conversation_id: str, message_id: str) -> None:
        """Called after a message row is removed (retry or user delete)."""
        ...


class MessageEventEmitter:
    """Emits message lifecycle events to registered observers.

    Exceptions from individual observers are caught and logged so one
    broken observer cannot stop delivery to the others or fail a send.
    """

    def __init__(self) -> None:
        self._observers: list[MessageEventObserver] = []

    def add_observer(self, observer: MessageEventObserver) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: MessageEventObserver) -> None:
        self._observers.remove(observer)

    async def _notify(self, method: str, *args: Any) -> None:
        for observer in list(self._observers):
            try:
                await getattr(observer, method)(*args)
            except Exception as e:
                logger.error(
                    "Observer %s failed %s: %s",
                    type(observer).__name__,
                    method,
                    e,
                )

    async def emit_pending(self, message: MessageRecord) -> None:
        await self._notify("on_message_pending", message)

    async def emit_delivered(
        self, message: MessageRecord, response: MessageRecord
    ) -> None:
        await self._notify("on_message_delivered", message, response)

    async def emit_failed(
        self, message: MessageRecord, error_code: str, error_message: str
    ) -> None:
        await self._notify("on_message_failed", message, error_code, error_message)

    async def emit_deleted(self, conversation_id: str, message_id: str) -> None:
        await self._notify("on_message_deleted", conversation_id, message_id)


@dataclass(frozen=True)
class MessageEvent:
    """Queue item delivered to conversation subscribers."""

    event: str
    conversation_id: str
    message_id: str
    data: dict[str, Any]


class ConversationQueueObserver:
    """Observer that fans events out to per-conversation asyncio queues.

    A view subscribes to the conversation it displays and re-renders on
    every item; several views may share one conversation's queue.
    """

    def __init__(self) -> None:
        self._queues: dict[str, asyncio.Queue[MessageEvent]] = {}

    def subscribe(self, conversation_id: str) -> asyncio.Queue[MessageEvent]:
        if conversation_id not in self._queues:
            self._queues[conversation_id] = asyncio.Queue()
            logger.debug("Created subscription for conversation %s", conversation_id)
        return self._queues[conversation_id]

    def unsubscribe(self, conversation_id: str) -> None:
        if self._queues.pop(conversation_id, None) is not None:
            logger.debug("Removed subscription for conversation %s", conversation_id)

    def has_subscribers(self, conversation_id: str) -> bool:
        return conversation_id in self._queues

    async def _emit(self, conversation_id: str, event: MessageEvent) -> None:
        if queue := self._queues.get(conversation_id):
            await queue.put(event)

    # MessageEventObserver protocol implementation

    async def on_message_pending(self, message: MessageRecord) -> None:
        await self._emit(message.conversation_id, MessageEvent(
            event="pending",
            conversation_id=message.conversation_id,
            message_id=message.id,
            data={"message": message},
        ))

    async def on_message_delivered(
        self, message: MessageRecord, response: MessageRecord
    ) -> None:
        await self._emit(message.conversation_id, MessageEvent(
            event="delivered",
            conversation_id=message.conversation_id,
            message_id=message.id,
            data={"message": message, "response": response},
        ))

    async def on_message_failed(
        self, message: MessageRecord, error_code: str, error_message: str
    ) -> None:
        await self._emit(message.conversation_id, MessageEvent(
            event="failed",
            conversation_id=message.conversation_id,
            message_id=message.id,
            data={
                "message": message,
                "error_code": error_code,
                "error_message": error_message,
            },
        ))

    async def on_message_deleted(self, conversation_id: str, message_id: str) -> None:
        await self._emit(conversation_id, MessageEvent(
            event="deleted",
            conversation_id=conversation_id,
            message_id=message_id,
            data={},
        ))
