"""Tests for the message exchange engine state machine."""

import asyncio

import pytest

from hookchat.db.models import Agent, MessageStatus
from hookchat.errors import (
    DecodeError,
    HttpStatusError,
    InvalidEndpointError,
    NotFoundError,
    NotRetryableError,
    PersistenceError,
    TransportError,
    ValidationError,
)
from hookchat.models.webhook import WebhookAttachment
from hookchat.services.events import MessageEventEmitter
from hookchat.services.message_exchange import MessageExchangeEngine
from hookchat.services.retry_policy import RetryPolicyConfig
from tests.helpers import (
    FakeDispatcher,
    RecordingObserver,
    make_response,
    seed_conversation,
)

FAST_RETRY = RetryPolicyConfig(max_attempts=3, initial_delay=0.0, max_delay=0.0)


def _engine(store, device, outcomes=None):
    dispatcher = FakeDispatcher(outcomes)
    observer = RecordingObserver()
    emitter = MessageEventEmitter()
    emitter.add_observer(observer)
    engine = MessageExchangeEngine(
        store, dispatcher, device, emitter=emitter, retry_config=FAST_RETRY,
    )
    return engine, dispatcher, observer


class TestSend:
    @pytest.mark.asyncio
    async def test_hello_hi_exchange(self, store, device):
        _, conversation = await seed_conversation(store)
        engine, dispatcher, observer = _engine(store, device, [
            make_response("Hi!", metadata={"intent": "greeting"}),
        ])

        message_id = await engine.send(conversation.id, "  Hello  ")

        history = await engine.refresh(conversation.id)
        assert [(m.content, m.is_from_user, m.status) for m in history] == [
            ("Hello", True, MessageStatus.delivered),
            ("Hi!", False, MessageStatus.delivered),
        ]
        assert history[0].id == message_id
        reply = history[1]
        assert reply.metadata.custom_data == {"intent": "greeting"}
        assert reply.metadata.response_time is not None
        assert reply.metadata.remote_timestamp.startswith("2025-01-01T12:00:00")

        loaded = await store.get_conversation(conversation.id)
        assert loaded.last_message_at == reply.timestamp

        assert observer.names() == ["pending", "delivered"]
        assert observer.events[0][2] == "pending"
        endpoint, payload = dispatcher.calls[0]
        assert payload.message == "Hello"
        assert payload.user_id == "device-123"

    @pytest.mark.asyncio
    async def test_http_500_marks_failed(self, store, device):
        _, conversation = await seed_conversation(store)
        engine, _, observer = _engine(store, device, [HttpStatusError(500)])

        message_id = await engine.send(conversation.id, "Hello")

        history = await engine.refresh(conversation.id)
        assert len(history) == 1
        failed = history[0]
        assert failed.id == message_id
        assert failed.status == MessageStatus.failed
        assert failed.metadata.error_code == "E-3003"
        assert failed.metadata.error_tag == "http_status"
        assert "500" in failed.metadata.error_message
        assert observer.names() == ["pending", "failed"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error, code, tag", [
        (TransportError("refused"), "E-3002", "transport"),
        (DecodeError("response: Field required"), "E-3004", "decode"),
        (InvalidEndpointError("x"), "E-3001", "invalid_endpoint"),
    ])
    async def test_dispatch_errors_persisted(self, store, device, error, code, tag):
        _, conversation = await seed_conversation(store)
        engine, _, _ = _engine(store, device, [error])

        message_id = await engine.send(conversation.id, "Hello")

        message = await store.get_message(message_id)
        assert message.is_failed
        assert message.metadata.error_code == code
        assert message.metadata.error_tag == tag

    @pytest.mark.asyncio
    async def test_response_attachments_stored(self, store, device):
        _, conversation = await seed_conversation(store)
        engine, _, _ = _engine(store, device, [
            make_response("Here", attachments=[
                WebhookAttachment(type="file", url="https://cdn.example.com/r.pdf", name="report.pdf", size=10),
            ]),
        ])

        await engine.send(conversation.id, "report please")

        reply = (await engine.refresh(conversation.id))[1]
        assert [a.file_name for a in reply.attachments] == ["report.pdf"]
        assert reply.attachments[0].remote_url == "https://cdn.example.com/r.pdf"

    @pytest.mark.asyncio
    async def test_empty_text_rejected_before_io(self, store, device):
        _, conversation = await seed_conversation(store)
        engine, dispatcher, observer = _engine(store, device)

        with pytest.raises(ValidationError) as exc_info:
            await engine.send(conversation.id, "   ")

        assert exc_info.value.code == "E-2001"
        assert await engine.refresh(conversation.id) == []
        assert dispatcher.calls == []
        assert observer.events == []

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, store, device):
        engine, _, _ = _engine(store, device)
        with pytest.raises(NotFoundError):
            await engine.send("missing", "Hello")

    @pytest.mark.asyncio
    async def test_invalid_agent_endpoint_rejected(self, store, session_factory, device):
        agent, conversation = await seed_conversation(store)
        async with session_factory() as session:
            row = await session.get(Agent, agent.id)
            row.webhook_url = "not a url"
            await session.commit()
        engine, dispatcher, _ = _engine(store, device)

        with pytest.raises(ValidationError) as exc_info:
            await engine.send(conversation.id, "Hello")

        assert exc_info.value.code == "E-2002"
        assert await engine.refresh(conversation.id) == []
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_broken_observer_does_not_fail_send(self, store, device):
        class Broken(RecordingObserver):
            async def on_message_pending(self, message):
                raise RuntimeError("view crashed")

        _, conversation = await seed_conversation(store)
        engine, _, observer = _engine(store, device, [make_response("Hi!")])
        engine.emitter.add_observer(Broken())

        await engine.send(conversation.id, "Hello")

        assert observer.names() == ["pending", "delivered"]
        assert len(await engine.refresh(conversation.id)) == 2

    @pytest.mark.asyncio
    async def test_concurrent_sends_do_not_interleave(self, store, device):
        _, conversation = await seed_conversation(store)

        async def slow_echo(payload):
            await asyncio.sleep(0.05)
            return make_response(f"re: {payload.message}")

        engine, _, _ = _engine(store, device, [slow_echo, slow_echo])

        await asyncio.gather(
            engine.send(conversation.id, "one"),
            engine.send(conversation.id, "two"),
        )

        contents = [m.content for m in await engine.refresh(conversation.id)]
        assert len(contents) == 4
        first, second = contents[0], contents[2]
        assert {first, second} == {"one", "two"}
        assert contents == [first, f"re: {first}", second, f"re: {second}"]
        assert conversation.id not in engine._locks

    @pytest.mark.asyncio
    async def test_other_conversations_proceed_concurrently(self, store, device):
        agent, first = await seed_conversation(store)
        second = await store.create_conversation(agent.id)
        started = asyncio.Event()
        release = asyncio.Event()

        async def blocked(payload):
            started.set()
            await release.wait()
            return make_response("late")

        engine, _, _ = _engine(store, device, [blocked, make_response("quick")])

        slow_task = asyncio.create_task(engine.send(first.id, "slow"))
        await started.wait()
        assert engine.is_sending(first.id)

        await asyncio.wait_for(engine.send(second.id, "fast"), timeout=2)
        assert not engine.is_sending(second.id)

        release.set()
        await slow_task
        assert [m.content for m in await engine.refresh(first.id)] == ["slow", "late"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stage, final_status, events", [
        ("pending_event", MessageStatus.failed, ["pending", "failed"]),
        ("dispatch", MessageStatus.failed, ["pending", "failed"]),
        ("delivery_commit", MessageStatus.delivered, ["pending", "delivered"]),
    ])
    async def test_cancellation_never_leaves_pending(
        self, store, device, monkeypatch, stage, final_status, events
    ):
        _, conversation = await seed_conversation(store)
        reached = asyncio.Event()

        async def pause():
            reached.set()
            await asyncio.sleep(0.1)

        async def hang(payload):
            reached.set()
            await asyncio.sleep(30)

        outcomes = [hang] if stage == "dispatch" else [make_response("Hi!")]
        engine, _, observer = _engine(store, device, outcomes)

        if stage == "pending_event":
            class SlowView(RecordingObserver):
                async def on_message_pending(self, message):
                    await pause()

            engine.emitter.add_observer(SlowView())
        elif stage == "delivery_commit":
            record_delivery = store.record_delivery

            async def slow_record_delivery(*args, **kwargs):
                await pause()
                return await record_delivery(*args, **kwargs)

            monkeypatch.setattr(store, "record_delivery", slow_record_delivery)

        task = asyncio.create_task(engine.send(conversation.id, "Hello"))
        await reached.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        history = await engine.refresh(conversation.id)
        assert all(m.status != MessageStatus.pending for m in history)
        user_message = history[0]
        assert user_message.content == "Hello"
        assert user_message.status == final_status
        if final_status == MessageStatus.failed:
            assert len(history) == 1
            assert user_message.metadata.error_code == "E-3005"
            assert user_message.metadata.error_tag == "cancelled"
        else:
            assert [m.content for m in history] == ["Hello", "Hi!"]
        assert observer.names() == events
        assert not engine.is_sending(conversation.id)

    @pytest.mark.asyncio
    async def test_append_persistence_error_propagates(self, store, device, monkeypatch):
        _, conversation = await seed_conversation(store)
        engine, dispatcher, observer = _engine(store, device, [make_response("Hi!")])

        async def broken_append(*args, **kwargs):
            raise PersistenceError.from_code("E-4001", reason="disk full")

        monkeypatch.setattr(store, "append_message", broken_append)

        with pytest.raises(PersistenceError):
            await engine.send(conversation.id, "Hello")

        assert observer.events == []
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_delivery_persistence_error_propagates(self, store, device, monkeypatch):
        _, conversation = await seed_conversation(store)
        engine, _, observer = _engine(store, device, [make_response("Hi!")])

        async def broken_delivery(*args, **kwargs):
            raise PersistenceError.from_code("E-4001", reason="disk full")

        monkeypatch.setattr(store, "record_delivery", broken_delivery)

        with pytest.raises(PersistenceError):
            await engine.send(conversation.id, "Hello")

        assert observer.names() == ["pending"]
        history = await engine.refresh(conversation.id)
        assert [m.status for m in history] == [MessageStatus.pending]


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_after_500(self, store, device):
        _, conversation = await seed_conversation(store)
        engine, dispatcher, observer = _engine(store, device, [
            HttpStatusError(500),
            make_response("Hi!"),
        ])
        failed_id = await engine.send(conversation.id, "Hello")

        new_id = await engine.retry(failed_id)

        assert new_id != failed_id
        with pytest.raises(NotFoundError):
            await store.get_message(failed_id)
        history = await engine.refresh(conversation.id)
        assert [(m.content, m.status) for m in history] == [
            ("Hello", MessageStatus.delivered),
            ("Hi!", MessageStatus.delivered),
        ]
        assert history[0].id == new_id
        assert history[0].metadata.retry_count == 1
        assert [p.message for _, p in dispatcher.calls] == ["Hello", "Hello"]
        assert observer.names() == [
            "pending", "failed", "deleted", "pending", "delivered",
        ]
        loaded = await store.get_conversation(conversation.id)
        assert loaded.last_message_at == history[-1].timestamp

    @pytest.mark.asyncio
    async def test_retry_count_accumulates(self, store, device):
        _, conversation = await seed_conversation(store)
        engine, _, _ = _engine(store, device, [
            TransportError("down"),
            TransportError("down"),
            make_response("finally"),
        ])
        first = await engine.send(conversation.id, "Hello")
        second = await engine.retry(first)
        assert (await store.get_message(second)).metadata.retry_count == 1
        assert (await store.get_message(second)).is_failed

        third = await engine.retry(second)
        message = await store.get_message(third)
        assert message.metadata.retry_count == 2
        assert message.status == MessageStatus.delivered

    @pytest.mark.asyncio
    async def test_retry_delivered_is_rejected_without_mutation(self, store, device):
        _, conversation = await seed_conversation(store)
        engine, dispatcher, observer = _engine(store, device, [make_response("Hi!")])
        message_id = await engine.send(conversation.id, "Hello")
        before = await engine.refresh(conversation.id)

        with pytest.raises(NotRetryableError) as exc_info:
            await engine.retry(message_id)

        assert exc_info.value.code == "E-4002"
        assert await engine.refresh(conversation.id) == before
        assert len(dispatcher.calls) == 1

    @pytest.mark.asyncio
    async def test_retry_agent_message_is_rejected(self, store, device):
        _, conversation = await seed_conversation(store)
        engine, _, _ = _engine(store, device, [make_response("Hi!")])
        await engine.send(conversation.id, "Hello")
        reply = (await engine.refresh(conversation.id))[1]

        with pytest.raises(NotRetryableError):
            await engine.retry(reply.id)

    @pytest.mark.asyncio
    async def test_retry_unknown_message(self, store, device):
        engine, _, _ = _engine(store, device)
        with pytest.raises(NotFoundError):
            await engine.retry("missing")

    @pytest.mark.asyncio
    async def test_cancelled_retry_keeps_content(self, store, device):
        _, conversation = await seed_conversation(store)
        engine, dispatcher, observer = _engine(store, device, [HttpStatusError(500)])
        failed_id = await engine.send(conversation.id, "Hello")
        reached = asyncio.Event()

        class SlowView(RecordingObserver):
            async def on_message_deleted(self, conversation_id, message_id):
                reached.set()
                await asyncio.sleep(0.1)

        engine.emitter.add_observer(SlowView())
        task = asyncio.create_task(engine.retry(failed_id))
        await reached.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        history = await engine.refresh(conversation.id)
        assert len(history) == 1
        replacement = history[0]
        assert replacement.id != failed_id
        assert replacement.content == "Hello"
        assert replacement.is_failed
        assert replacement.metadata.error_tag == "cancelled"
        assert replacement.metadata.retry_count == 1
        assert len(dispatcher.calls) == 1
        assert observer.names() == [
            "pending", "failed", "deleted", "pending", "failed",
        ]

    @pytest.mark.asyncio
    async def test_retry_persistence_error_keeps_failed_row(
        self, store, device, monkeypatch
    ):
        _, conversation = await seed_conversation(store)
        engine, dispatcher, observer = _engine(store, device, [HttpStatusError(500)])
        failed_id = await engine.send(conversation.id, "Hello")

        async def broken_add(*args, **kwargs):
            raise PersistenceError.from_code("E-4001", reason="disk full")

        monkeypatch.setattr(store, "_add_message", broken_add)

        with pytest.raises(PersistenceError):
            await engine.retry(failed_id)

        history = await engine.refresh(conversation.id)
        assert [(m.id, m.status) for m in history] == [
            (failed_id, MessageStatus.failed),
        ]
        assert observer.names() == ["pending", "failed"]
        assert len(dispatcher.calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_retries_resend_once(self, store, device):
        _, conversation = await seed_conversation(store)
        engine, dispatcher, _ = _engine(store, device, [
            HttpStatusError(502),
            make_response("Hi!"),
        ])
        failed_id = await engine.send(conversation.id, "Hello")

        results = await asyncio.gather(
            engine.retry(failed_id),
            engine.retry(failed_id),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, str)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], (NotFoundError, NotRetryableError))
        assert len(dispatcher.calls) == 2
        assert len(await engine.refresh(conversation.id)) == 2


class TestDeleteAndRefresh:
    @pytest.mark.asyncio
    async def test_delete_message_emits_deleted(self, store, device):
        _, conversation = await seed_conversation(store)
        engine, _, observer = _engine(store, device, [make_response("Hi!")])
        message_id = await engine.send(conversation.id, "Hello")

        assert await engine.delete_message(message_id) is True
        assert await engine.delete_message(message_id) is False

        assert observer.names()[-1] == "deleted"
        remaining = await engine.refresh(conversation.id)
        assert [m.content for m in remaining] == ["Hi!"]
        loaded = await store.get_conversation(conversation.id)
        assert loaded.last_message_at == remaining[0].timestamp

    @pytest.mark.asyncio
    async def test_refresh_unknown_conversation(self, store, device):
        engine, _, _ = _engine(store, device)
        with pytest.raises(NotFoundError):
            await engine.refresh("missing")


class TestCheckConnection:
    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, store, device):
        agent, _ = await seed_conversation(store)
        engine, dispatcher, _ = _engine(store, device)
        dispatcher.probe_outcomes = [TransportError("refused"), True]

        assert await engine.check_connection(agent.id) is True
        assert len(dispatcher.probes) == 2

    @pytest.mark.asyncio
    async def test_false_after_give_up(self, store, device):
        agent, _ = await seed_conversation(store)
        engine, dispatcher, _ = _engine(store, device)
        dispatcher.probe_outcomes = [TransportError("refused")] * 3

        assert await engine.check_connection(agent.id) is False
        assert len(dispatcher.probes) == 3

    @pytest.mark.asyncio
    async def test_non_2xx_is_false_without_retry(self, store, device):
        agent, _ = await seed_conversation(store)
        engine, dispatcher, _ = _engine(store, device)
        dispatcher.probe_outcomes = [False]

        assert await engine.check_connection(agent.id) is False
        assert len(dispatcher.probes) == 1

    @pytest.mark.asyncio
    async def test_invalid_endpoint_not_retried(self, store, device):
        agent, _ = await seed_conversation(store)
        engine, dispatcher, _ = _engine(store, device)
        dispatcher.probe_outcomes = [InvalidEndpointError("x")]

        assert await engine.check_connection(agent.id) is False
        assert len(dispatcher.probes) == 1
