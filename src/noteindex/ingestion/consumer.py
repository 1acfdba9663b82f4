"""EmbeddingConsumer — drains the note-changed topic through the pipeline."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, TypeVar

from noteindex.events import DEFAULT_TOPIC, NoteChangedEvent
from noteindex.exceptions import DecodeError

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from noteindex.ingestion.pipeline import IngestionPipeline
    from noteindex.messaging import Message, PubSub

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _until_stopped(awaitable: Awaitable[T], stop: asyncio.Event) -> T | None:
    """Await *awaitable* unless *stop* is set first.

    Returns ``None`` when *stop* won the race; the pending work is
    cancelled and waited for.
    """
    work = asyncio.ensure_future(awaitable)
    if stop.is_set() and not work.done():
        work.cancel()
        await asyncio.wait({work})
        return None
    stopper = asyncio.ensure_future(stop.wait())
    try:
        await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        stopper.cancel()
        raise
    stopper.cancel()
    if not work.done():
        work.cancel()
        await asyncio.wait({work})
    if work.cancelled():
        return None
    return work.result()


class EmbeddingConsumer:
    """Subscribes to a topic and refreshes embeddings one message at a time.

    Acknowledge/reject policy:

    - pipeline success → ``ack``
    - malformed payload, failed pipeline result, or any unexpected
      exception → ``nack`` (the bus decides on redelivery)
    - stop requested before or during processing → ``nack`` and the loop
      ends

    No exception other than cancellation escapes :meth:`consume`.
    """

    def __init__(
        self,
        pubsub: PubSub,
        pipeline: IngestionPipeline,
        *,
        topic: str = DEFAULT_TOPIC,
    ) -> None:
        self._pubsub = pubsub
        self._pipeline = pipeline
        self._topic = topic

    @property
    def topic(self) -> str:
        return self._topic

    def start(self, stop: asyncio.Event | None = None) -> asyncio.Task[None]:
        """Run :meth:`consume` in a background task."""
        return asyncio.get_running_loop().create_task(
            self.consume(stop), name=f"noteindex-consumer:{self._topic}"
        )

    async def consume(self, stop: asyncio.Event | None = None) -> None:
        """Receive and handle messages until *stop* is set or the subscription closes."""
        stop = stop if stop is not None else asyncio.Event()
        subscription = await self._pubsub.subscribe(self._topic)
        logger.info("Consuming topic %s", self._topic)
        try:
            while True:
                message = await _until_stopped(subscription.receive(), stop)
                if message is None:
                    break
                if stop.is_set():
                    logger.warning("Stop requested; rejecting message %s", message.uuid)
                    message.nack()
                    break
                await self.handle(message, stop)
                if stop.is_set():
                    break
        finally:
            await subscription.close()
            logger.info("Stopped consuming topic %s", self._topic)

    async def handle(self, message: Message, stop: asyncio.Event | None = None) -> bool:
        """Process one message and settle it. Returns True when acked."""
        if stop is not None and stop.is_set():
            message.nack()
            return False

        try:
            event = NoteChangedEvent.from_payload(message.payload)
        except DecodeError as exc:
            logger.warning("Rejecting malformed message %s: %s", message.uuid, exc)
            message.nack()
            return False
        except Exception:
            logger.exception("Unexpected fault while decoding message %s", message.uuid)
            message.nack()
            return False

        try:
            if stop is None:
                result = await self._pipeline.process(event.note_id)
            else:
                result = await _until_stopped(self._pipeline.process(event.note_id), stop)
        except asyncio.CancelledError:
            message.nack()
            raise
        except Exception:
            logger.exception(
                "Unexpected fault while processing message %s (note %s)",
                message.uuid,
                event.note_id,
            )
            message.nack()
            return False

        if result is None:
            logger.warning(
                "Stop requested while processing note %s; rejecting message %s",
                event.note_id,
                message.uuid,
            )
            message.nack()
            return False

        if not result.success:
            logger.warning(
                "Rejecting message %s (attempt %d): %s",
                message.uuid,
                message.attempt,
                result.message,
            )
            message.nack()
            return False

        message.ack()
        return True
