"""Topic-based messaging with per-message ack/nack and policy-driven redelivery.

The pub/sub handle is constructed explicitly and passed to whoever needs
it; there is no process-wide registry.  :class:`InMemoryPubSub` is the
in-process implementation used by the service and by tests.  Anything
satisfying :class:`PubSub` (a broker-backed client) can replace it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from uuid import uuid4

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

logger = logging.getLogger(__name__)


class MessageState(Enum):
    """Settlement state of a delivered message."""

    PENDING = "pending"
    ACKED = "acked"
    NACKED = "nacked"


class Message:
    """A single delivery of a payload on a topic.

    A message is settled exactly once: the first ``ack()`` or ``nack()``
    wins and later calls return False.  Redeliveries are new ``Message``
    objects that keep the ``uuid`` and carry ``attempt + 1``.
    """

    __slots__ = ("_callbacks", "_state", "attempt", "metadata", "payload", "uuid")

    def __init__(
        self,
        payload: bytes,
        *,
        uuid: str | None = None,
        metadata: dict[str, str] | None = None,
        attempt: int = 1,
    ) -> None:
        self.payload = payload
        self.uuid = uuid or str(uuid4())
        self.metadata: dict[str, str] = dict(metadata or {})
        self.attempt = attempt
        self._state = MessageState.PENDING
        self._callbacks: list[Callable[[Message], None]] = []

    @property
    def state(self) -> MessageState:
        return self._state

    def ack(self) -> bool:
        """Mark the message as processed. Returns False if already settled."""
        return self._settle(MessageState.ACKED)

    def nack(self) -> bool:
        """Reject the message so the bus may redeliver it. Returns False if already settled."""
        return self._settle(MessageState.NACKED)

    def add_settle_callback(self, callback: Callable[[Message], None]) -> None:
        """Call *callback* with this message once it is acked or nacked."""
        self._callbacks.append(callback)

    def copy(self) -> Message:
        """Return an unsettled copy with the same uuid, metadata, and attempt."""
        return Message(self.payload, uuid=self.uuid, metadata=self.metadata, attempt=self.attempt)

    def redelivery(self) -> Message:
        """Return the next delivery attempt of this message."""
        return Message(
            self.payload,
            uuid=self.uuid,
            metadata=self.metadata,
            attempt=self.attempt + 1,
        )

    def _settle(self, state: MessageState) -> bool:
        if self._state is not MessageState.PENDING:
            return False
        self._state = state
        for callback in self._callbacks:
            callback(self)
        return True

    def __repr__(self) -> str:
        return f"Message(uuid={self.uuid!r}, attempt={self.attempt}, state={self._state.value})"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How the bus treats a nacked message.

    Attributes:
        max_attempts: Total deliveries allowed, including the first.
            ``None`` redelivers forever.
        backoff: Delay in seconds before the first redelivery (0 = immediate).
        multiplier: Growth factor of the delay per further attempt.
        max_backoff: Upper bound on a single delay.
        dead_letter_topic: Where exhausted messages are published.  When
            ``None`` they are dropped with a warning.
    """

    max_attempts: int | None = None
    backoff: float = 0.0
    multiplier: float = 2.0
    max_backoff: float = 30.0
    dead_letter_topic: str | None = None

    def __post_init__(self) -> None:
        if self.max_attempts is not None and self.max_attempts < 1:
            msg = f"max_attempts must be >= 1 or None, got {self.max_attempts}"
            raise ValueError(msg)
        if self.backoff < 0 or self.max_backoff < 0:
            msg = "backoff and max_backoff must be >= 0"
            raise ValueError(msg)
        if self.multiplier < 1:
            msg = f"multiplier must be >= 1, got {self.multiplier}"
            raise ValueError(msg)

    def should_retry(self, attempt: int) -> bool:
        """Whether a message that failed on delivery *attempt* gets another one."""
        return self.max_attempts is None or attempt < self.max_attempts

    def delay(self, attempt: int) -> float:
        """Seconds to wait before redelivering a message that failed on *attempt*."""
        if self.backoff <= 0:
            return 0.0
        return min(self.backoff * self.multiplier ** (attempt - 1), self.max_backoff)


@runtime_checkable
class PubSub(Protocol):
    """Publish/subscribe client handle."""

    async def publish(self, topic: str, *messages: Message) -> None:
        """Publish *messages* to *topic*."""
        ...

    async def subscribe(self, topic: str) -> Subscription:
        """Open a subscription to *topic*."""
        ...

    async def close(self) -> None:
        """Close every subscription and refuse further publishes."""
        ...


class Subscription:
    """One subscriber's view of a topic.

    Messages are received one at a time with :meth:`receive` (or ``async
    for``).  A nacked message is handed back to the same subscription
    according to the bus's :class:`RetryPolicy`.
    """

    def __init__(self, pubsub: InMemoryPubSub, topic: str, retry_policy: RetryPolicy) -> None:
        self._pubsub = pubsub
        self._topic = topic
        self._retry_policy = retry_policy
        self._queue: asyncio.Queue[Message | None] = asyncio.Queue()
        self._closed = False
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, message: Message) -> None:
        """Queue *message* for this subscriber."""
        if self._closed:
            return
        message.add_settle_callback(self._on_settled)
        self._queue.put_nowait(message)

    async def receive(self) -> Message | None:
        """Wait for the next message; ``None`` once the subscription is closed."""
        if self._closed:
            return None
        message = await self._queue.get()
        if self._closed:
            return None
        return message

    async def close(self) -> None:
        """Stop receiving.

        Messages still queued for this subscriber, including redeliveries
        of a message nacked just before closing, are discarded with a
        warning.  Other subscribers never see them; a persistent bus
        replays them to the next subscriber of the topic.
        """
        if self._closed:
            return
        self._closed = True
        dropped = len(self._pending)
        for task in list(self._pending):
            task.cancel()
        while not self._queue.empty():
            if self._queue.get_nowait() is not None:
                dropped += 1
        self._queue.put_nowait(None)
        self._pubsub._remove(self)
        if dropped:
            logger.warning(
                "Closed subscription on %s with %d undelivered message(s)", self._topic, dropped
            )

    def __aiter__(self) -> AsyncIterator[Message]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Message]:
        while True:
            message = await self.receive()
            if message is None:
                return
            yield message

    # ------------------------------------------------------------------
    # Redelivery
    # ------------------------------------------------------------------

    def _on_settled(self, message: Message) -> None:
        if message.state is not MessageState.NACKED or self._closed:
            return
        policy = self._retry_policy
        if not policy.should_retry(message.attempt):
            self._pubsub._dead_letter(self._topic, message)
            return

        retry = message.redelivery()
        delay = policy.delay(message.attempt)
        logger.debug(
            "Redelivering message %s on %s (attempt %d) in %.2fs",
            message.uuid,
            self._topic,
            retry.attempt,
            delay,
        )
        if delay <= 0:
            self.deliver(retry)
            return
        task = asyncio.get_running_loop().create_task(self._deliver_later(retry, delay))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver_later(self, message: Message, delay: float) -> None:
        await asyncio.sleep(delay)
        self.deliver(message)


class InMemoryPubSub:
    """In-process :class:`PubSub` with fan-out, redelivery, and dead-lettering.

    Every subscriber of a topic receives its own copy of each published
    message.  Without subscribers a message is dropped, unless the bus is
    *persistent*, in which case all messages of a topic are kept and
    replayed to each new subscriber.

    Persistence is a replay log, not a durable queue: settlement does not
    remove a message from it, so acked messages are replayed as well and
    the log grows until :meth:`close`.  Consumers must be idempotent,
    which the embedding pipeline is.
    """

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        persistent: bool = False,
    ) -> None:
        self._retry_policy = retry_policy or RetryPolicy()
        self._persistent = persistent
        self._subscribers: dict[str, list[Subscription]] = {}
        self._persisted: dict[str, list[Message]] = {}
        self._closed = False

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    @property
    def closed(self) -> bool:
        return self._closed

    async def publish(self, topic: str, *messages: Message) -> None:
        """Publish *messages* to every current subscriber of *topic*."""
        self._publish_nowait(topic, messages)

    async def subscribe(self, topic: str) -> Subscription:
        """Open a new subscription to *topic*."""
        if self._closed:
            msg = "Cannot subscribe: pub/sub is closed"
            raise RuntimeError(msg)
        subscription = Subscription(self, topic, self._retry_policy)
        self._subscribers.setdefault(topic, []).append(subscription)
        for message in self._persisted.get(topic, []):
            subscription.deliver(message.copy())
        return subscription

    async def close(self) -> None:
        """Close every subscription and refuse further publishes."""
        if self._closed:
            return
        self._closed = True
        for subscriptions in list(self._subscribers.values()):
            for subscription in list(subscriptions):
                await subscription.close()
        self._subscribers.clear()
        self._persisted.clear()

    def subscriber_count(self, topic: str) -> int:
        """Number of open subscriptions on *topic*."""
        return len(self._subscribers.get(topic, []))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _publish_nowait(self, topic: str, messages: tuple[Message, ...]) -> None:
        if self._closed:
            msg = "Cannot publish: pub/sub is closed"
            raise RuntimeError(msg)
        if self._persistent:
            self._persisted.setdefault(topic, []).extend(messages)
        subscriptions = self._subscribers.get(topic, [])
        if not subscriptions and not self._persistent:
            logger.debug("No subscribers on %s; dropped %d message(s)", topic, len(messages))
            return
        for subscription in list(subscriptions):
            for message in messages:
                subscription.deliver(message.copy())

    def _dead_letter(self, topic: str, message: Message) -> None:
        target = self._retry_policy.dead_letter_topic
        if target is None or self._closed:
            logger.warning(
                "Dropping message %s on %s after %d attempt(s)",
                message.uuid,
                topic,
                message.attempt,
            )
            return
        dead = Message(
            message.payload,
            uuid=message.uuid,
            metadata={
                **message.metadata,
                "original_topic": topic,
                "dead_letter_reason": "max attempts exceeded",
                "attempts": str(message.attempt),
            },
        )
        logger.warning(
            "Moving message %s from %s to dead-letter topic %s after %d attempt(s)",
            message.uuid,
            topic,
            target,
            message.attempt,
        )
        self._publish_nowait(target, (dead,))

    def _remove(self, subscription: Subscription) -> None:
        subscriptions = self._subscribers.get(subscription.topic)
        if subscriptions is None:
            return
        try:
            subscriptions.remove(subscription)
        except ValueError:
            return
        if not subscriptions:
            del self._subscribers[subscription.topic]
