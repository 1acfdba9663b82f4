"""Tests for EmbeddingConsumer — ack/nack policy, resilience, and shutdown."""

from __future__ import annotations

import asyncio
import logging

import pytest

from noteindex.events import NoteChangedEvent
from noteindex.ingestion.consumer import EmbeddingConsumer
from noteindex.ingestion.pipeline import IngestionPipeline
from noteindex.messaging import InMemoryPubSub, Message, MessageState, RetryPolicy
from noteindex.search.protocols import TaskType
from noteindex.search.store import EmbeddingStore

from conftest import FakeProvider

# ------------------------------------------------------------------
# Fakes
# ------------------------------------------------------------------


class BlockingProvider(FakeProvider):
    """Blocks inside ``embed`` until released."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.cancelled = False

    async def embed(self, text, *, task_type=TaskType.RETRIEVAL_DOCUMENT):
        self.entered.set()
        try:
            await self.release.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return await super().embed(text, task_type=task_type)


class ScriptedSubscription:
    """Hands out prepared messages, then blocks until closed."""

    def __init__(self, messages: list[Message]) -> None:
        self._messages = list(messages)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def receive(self) -> Message | None:
        if self._messages:
            return self._messages.pop(0)
        await self._closed.wait()
        return None

    async def close(self) -> None:
        self._closed.set()


class ScriptedPubSub:
    """Pub/sub whose single subscription yields the original message objects."""

    def __init__(self, *messages: Message) -> None:
        self.subscription = ScriptedSubscription(list(messages))
        self.subscribed = asyncio.Event()

    async def publish(self, topic: str, *messages: Message) -> None:
        raise NotImplementedError

    async def subscribe(self, topic: str) -> ScriptedSubscription:
        self.subscribed.set()
        return self.subscription

    async def close(self) -> None:
        await self.subscription.close()


def _event(note_id: str) -> Message:
    return NoteChangedEvent(note_id).to_message()


async def _live_count(session_factory, note_id: str) -> int:
    async with session_factory() as session:
        return len(await EmbeddingStore().list_for_note(note_id, session=session))


async def _total_count(session_factory, note_id: str) -> int:
    async with session_factory() as session:
        rows = await EmbeddingStore().list_for_note(
            note_id, include_deleted=True, session=session
        )
    return len(rows)


@pytest.fixture
def pipeline(session_factory, provider) -> IngestionPipeline:
    return IngestionPipeline(session_factory, provider)


# ==================================================================
# handle
# ==================================================================


class TestHandle:
    async def test_success_acks(self, pipeline, make_notebook, make_note):
        note = await make_note(await make_notebook())
        consumer = EmbeddingConsumer(InMemoryPubSub(), pipeline)
        message = _event(note.id)

        assert await consumer.handle(message) is True
        assert message.state is MessageState.ACKED

    async def test_malformed_payload_nacks(self, pipeline, provider, caplog):
        consumer = EmbeddingConsumer(InMemoryPubSub(), pipeline)
        message = Message(b"{not json")

        with caplog.at_level(logging.WARNING, logger="noteindex.ingestion.consumer"):
            assert await consumer.handle(message) is False

        assert message.state is MessageState.NACKED
        assert "malformed" in caplog.text
        assert provider.calls == []

    async def test_decoder_fault_nacks_and_is_logged(self, pipeline, monkeypatch, caplog):
        def explode(payload):
            raise MemoryError("decoder blew up")

        monkeypatch.setattr(NoteChangedEvent, "from_payload", staticmethod(explode))
        consumer = EmbeddingConsumer(InMemoryPubSub(), pipeline)
        message = _event("n1")

        with caplog.at_level(logging.ERROR, logger="noteindex.ingestion.consumer"):
            assert await consumer.handle(message) is False

        assert message.state is MessageState.NACKED
        assert "Unexpected fault while decoding" in caplog.text

    async def test_missing_note_nacks(self, pipeline):
        consumer = EmbeddingConsumer(InMemoryPubSub(), pipeline)
        message = _event("missing")

        assert await consumer.handle(message) is False
        assert message.state is MessageState.NACKED

    async def test_unexpected_fault_nacks_and_is_logged(
        self, pipeline, provider, make_notebook, make_note, caplog
    ):
        note = await make_note(await make_notebook())
        provider.error = RuntimeError("boom")
        consumer = EmbeddingConsumer(InMemoryPubSub(), pipeline)
        message = _event(note.id)

        with caplog.at_level(logging.ERROR, logger="noteindex.ingestion.consumer"):
            assert await consumer.handle(message) is False

        assert message.state is MessageState.NACKED
        assert "Unexpected fault" in caplog.text

    async def test_stop_already_set_nacks_without_processing(self, pipeline, provider):
        consumer = EmbeddingConsumer(InMemoryPubSub(), pipeline)
        stop = asyncio.Event()
        stop.set()
        message = _event("n1")

        assert await consumer.handle(message, stop) is False
        assert message.state is MessageState.NACKED
        assert provider.calls == []


# ==================================================================
# consume loop
# ==================================================================


class TestConsumeLoop:
    async def test_processes_published_events(
        self, session_factory, pipeline, make_notebook, make_note, wait_until
    ):
        note = await make_note(await make_notebook())
        bus = InMemoryPubSub()
        consumer = EmbeddingConsumer(bus, pipeline)
        stop = asyncio.Event()
        task = consumer.start(stop)
        await wait_until(lambda: _subscribed(bus, consumer.topic))

        await bus.publish(consumer.topic, _event(note.id))
        await wait_until(lambda: _has_live(session_factory, note.id))

        stop.set()
        await asyncio.wait_for(task, 1.0)
        assert bus.subscriber_count(consumer.topic) == 0

    async def test_survives_malformed_message(
        self, session_factory, pipeline, make_notebook, make_note, wait_until
    ):
        note = await make_note(await make_notebook())
        bus = InMemoryPubSub(retry_policy=RetryPolicy(max_attempts=1))
        consumer = EmbeddingConsumer(bus, pipeline)
        stop = asyncio.Event()
        task = consumer.start(stop)
        await wait_until(lambda: _subscribed(bus, consumer.topic))

        await bus.publish(consumer.topic, Message(b"garbage"), _event(note.id))
        await wait_until(lambda: _has_live(session_factory, note.id))

        assert not task.done()
        stop.set()
        await asyncio.wait_for(task, 1.0)

    async def test_survives_deeply_nested_payload(
        self, session_factory, pipeline, make_notebook, make_note, wait_until
    ):
        note = await make_note(await make_notebook())
        nested, good = Message(b"[" * 200_000), _event(note.id)
        bus = ScriptedPubSub(nested, good)
        consumer = EmbeddingConsumer(bus, pipeline)
        stop = asyncio.Event()
        task = consumer.start(stop)

        await wait_until(_async(lambda: good.state is MessageState.ACKED))

        assert nested.state is MessageState.NACKED
        assert await _live_count(session_factory, note.id) == 1
        assert not task.done()
        stop.set()
        await asyncio.wait_for(task, 1.0)

    async def test_survives_unexpected_fault(
        self, session_factory, provider, pipeline, make_notebook, make_note, wait_until
    ):
        broken = await make_note(await make_notebook(), "broken")
        healthy = await make_note(await make_notebook(), "healthy")
        bus = InMemoryPubSub(retry_policy=RetryPolicy(max_attempts=1))
        consumer = EmbeddingConsumer(bus, pipeline)
        stop = asyncio.Event()
        task = consumer.start(stop)
        await wait_until(lambda: _subscribed(bus, consumer.topic))

        provider.error = RuntimeError("transient bug")
        await bus.publish(consumer.topic, _event(broken.id))
        await wait_until(_async(lambda: len(provider.calls) == 1))
        provider.error = None
        await bus.publish(consumer.topic, _event(healthy.id))
        await wait_until(lambda: _has_live(session_factory, healthy.id))

        assert await _live_count(session_factory, broken.id) == 0
        assert not task.done()
        stop.set()
        await asyncio.wait_for(task, 1.0)

    async def test_failed_message_is_redelivered_then_dead_lettered(
        self, pipeline, provider, wait_until
    ):
        policy = RetryPolicy(max_attempts=3, dead_letter_topic="embed-note.dead")
        bus = InMemoryPubSub(retry_policy=policy)
        dead = await bus.subscribe("embed-note.dead")
        consumer = EmbeddingConsumer(bus, pipeline)
        stop = asyncio.Event()
        task = consumer.start(stop)
        await wait_until(lambda: _subscribed(bus, consumer.topic))

        await bus.publish(consumer.topic, _event("missing"))
        async with asyncio.timeout(2.0):
            parked = await dead.receive()

        assert parked is not None
        assert parked.metadata["attempts"] == "3"
        assert NoteChangedEvent.from_payload(parked.payload).note_id == "missing"
        stop.set()
        await asyncio.wait_for(task, 1.0)

    async def test_duplicate_delivery_leaves_one_live_row(
        self, session_factory, pipeline, make_notebook, make_note, wait_until
    ):
        note = await make_note(await make_notebook())
        bus = InMemoryPubSub()
        consumer = EmbeddingConsumer(bus, pipeline)
        stop = asyncio.Event()
        task = consumer.start(stop)
        await wait_until(lambda: _subscribed(bus, consumer.topic))

        message = _event(note.id)
        await bus.publish(consumer.topic, message, message.copy())

        async def both_processed() -> bool:
            return await _total_count(session_factory, note.id) == 2

        await wait_until(both_processed)
        assert await _live_count(session_factory, note.id) == 1
        stop.set()
        await asyncio.wait_for(task, 1.0)


# ==================================================================
# Shutdown
# ==================================================================


class TestShutdown:
    async def test_stop_before_receive_exits(self, pipeline):
        bus = ScriptedPubSub()
        consumer = EmbeddingConsumer(bus, pipeline)
        stop = asyncio.Event()
        stop.set()

        await asyncio.wait_for(consumer.consume(stop), 1.0)

        assert bus.subscription.closed

    async def test_stop_while_idle_exits(self, pipeline):
        bus = ScriptedPubSub()
        consumer = EmbeddingConsumer(bus, pipeline)
        stop = asyncio.Event()
        task = consumer.start(stop)
        await bus.subscribed.wait()

        stop.set()
        await asyncio.wait_for(task, 1.0)

        assert bus.subscription.closed

    async def test_stop_during_processing_nacks_in_flight(
        self, session_factory, make_notebook, make_note
    ):
        note = await make_note(await make_notebook())
        provider = BlockingProvider()
        pipeline = IngestionPipeline(session_factory, provider)
        first, second = _event(note.id), _event(note.id)
        bus = ScriptedPubSub(first, second)
        consumer = EmbeddingConsumer(bus, pipeline)
        stop = asyncio.Event()
        task = consumer.start(stop)

        await asyncio.wait_for(provider.entered.wait(), 1.0)
        stop.set()
        await asyncio.wait_for(task, 1.0)

        assert provider.cancelled
        assert first.state is MessageState.NACKED
        assert second.state is MessageState.PENDING
        assert bus.subscription.closed
        assert await _total_count(session_factory, note.id) == 0

    async def test_task_cancellation_nacks_in_flight(
        self, session_factory, make_notebook, make_note
    ):
        note = await make_note(await make_notebook())
        provider = BlockingProvider()
        pipeline = IngestionPipeline(session_factory, provider)
        message = _event(note.id)
        bus = ScriptedPubSub(message)
        consumer = EmbeddingConsumer(bus, pipeline)
        task = consumer.start()

        await asyncio.wait_for(provider.entered.wait(), 1.0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert message.state is MessageState.NACKED
        assert bus.subscription.closed
        assert await _total_count(session_factory, note.id) == 0


# ------------------------------------------------------------------
# Predicates
# ------------------------------------------------------------------


def _async(check):
    async def _predicate() -> bool:
        return check()

    return _predicate


async def _subscribed(bus: InMemoryPubSub, topic: str) -> bool:
    return bus.subscriber_count(topic) > 0


async def _has_live(session_factory, note_id: str) -> bool:
    return await _live_count(session_factory, note_id) > 0
