"""Tests for message event emission and the queue observer."""

import pytest

from hookchat.db.models import MessageStatus, MessageType
from hookchat.models.records import MessageRecord
from hookchat.services.events import ConversationQueueObserver, MessageEventEmitter
from tests.helpers import RecordingObserver


def _message(message_id="m1", conversation_id="c1", status=MessageStatus.pending):
    return MessageRecord(
        id=message_id,
        conversation_id=conversation_id,
        content="Hello",
        is_from_user=True,
        message_type=MessageType.text,
        status=status,
        timestamp="2025-01-01T00:00:00.000000+00:00",
    )


class TestMessageEventEmitter:
    @pytest.mark.asyncio
    async def test_notifies_all_observers_in_order(self):
        emitter = MessageEventEmitter()
        first, second = RecordingObserver(), RecordingObserver()
        emitter.add_observer(first)
        emitter.add_observer(second)

        await emitter.emit_pending(_message())
        await emitter.emit_failed(_message(status=MessageStatus.failed), "E-3003", "HTTP error: 500")

        assert first.names() == ["pending", "failed"]
        assert second.names() == ["pending", "failed"]

    @pytest.mark.asyncio
    async def test_failing_observer_isolated(self):
        class Broken:
            async def on_message_deleted(self, conversation_id, message_id):
                raise RuntimeError("boom")

        emitter = MessageEventEmitter()
        healthy = RecordingObserver()
        emitter.add_observer(Broken())
        emitter.add_observer(healthy)

        await emitter.emit_deleted("c1", "m1")

        assert healthy.events == [("deleted", "m1")]

    @pytest.mark.asyncio
    async def test_removed_observer_not_notified(self):
        emitter = MessageEventEmitter()
        observer = RecordingObserver()
        emitter.add_observer(observer)
        emitter.remove_observer(observer)

        await emitter.emit_pending(_message())

        assert observer.events == []


class TestConversationQueueObserver:
    @pytest.mark.asyncio
    async def test_routes_to_conversation_queue(self):
        observer = ConversationQueueObserver()
        queue = observer.subscribe("c1")

        await observer.on_message_pending(_message(conversation_id="c1"))
        await observer.on_message_pending(_message(conversation_id="c2"))

        assert queue.qsize() == 1
        event = queue.get_nowait()
        assert event.event == "pending"
        assert event.message_id == "m1"
        assert event.data["message"].status == MessageStatus.pending

    @pytest.mark.asyncio
    async def test_delivered_and_failed_payloads(self):
        observer = ConversationQueueObserver()
        queue = observer.subscribe("c1")
        reply = _message(message_id="r1", status=MessageStatus.delivered)

        await observer.on_message_delivered(_message(status=MessageStatus.delivered), reply)
        await observer.on_message_failed(_message(status=MessageStatus.failed), "E-3002", "Network error: refused")

        delivered = queue.get_nowait()
        failed = queue.get_nowait()
        assert delivered.data["response"].id == "r1"
        assert failed.data == {
            "message": _message(status=MessageStatus.failed),
            "error_code": "E-3002",
            "error_message": "Network error: refused",
        }

    @pytest.mark.asyncio
    async def test_unsubscribe_drops_events(self):
        observer = ConversationQueueObserver()
        observer.subscribe("c1")
        assert observer.has_subscribers("c1")

        observer.unsubscribe("c1")
        await observer.on_message_deleted("c1", "m1")

        assert not observer.has_subscribers("c1")

    def test_subscribe_returns_same_queue(self):
        observer = ConversationQueueObserver()
        assert observer.subscribe("c1") is observer.subscribe("c1")
