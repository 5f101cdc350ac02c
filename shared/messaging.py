"""
Durable named queues with explicit acknowledgment.

Guarantees:
  - publish() returns only once the backend has recorded the message;
    transient broker errors are retried with exponential backoff
  - consumers receive Delivery objects and must ack, nack or dead-letter them
  - nacked deliveries are redelivered up to max_deliveries, then routed to
    "<queue>.dlq" so poison messages cannot be reprocessed forever
  - delivery is at-least-once: handlers must be idempotent
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field

from opentelemetry import trace
from opentelemetry.propagate import extract, inject
from prometheus_client import Counter

from shared.errors import MessagingUnavailableError, PoisonMessageError
from shared.events import EventBase, encode_event, parse_event

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

HEADER_MESSAGE_ID = "x-message-id"
HEADER_ATTEMPT = "x-delivery-attempt"
HEADER_TARGET_GROUP = "x-target-group"
HEADER_ORIGINAL_QUEUE = "x-original-queue"
HEADER_CONSUMER_GROUP = "x-consumer-group"
HEADER_DEAD_LETTER_REASON = "x-dead-letter-reason"

MESSAGES_CONSUMED = Counter(
    "messages_consumed_total",
    "Messages consumed from the channel",
    ["queue", "status"],  # processed | redelivered | dlq
)

WORKER_RESTARTS = Counter(
    "worker_restarts_total",
    "Background workers restarted after crashing",
    ["worker"],
)

MESSAGES_PUBLISHED = Counter(
    "messages_published_total",
    "Messages durably published to the channel",
    ["queue"],
)


def dead_letter_queue(queue: str) -> str:
    return f"{queue}.dlq"


class BrokerError(Exception):
    """Transient backend failure while sending or settling a message."""


@dataclass(frozen=True)
class Message:
    queue: str
    body: bytes
    key: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def attempt(self) -> int:
        return int(self.headers.get(HEADER_ATTEMPT, "1"))


class Delivery:
    """A message handed to one consumer group, awaiting settlement."""

    def __init__(self, channel: "MessageChannel", message: Message, group: str) -> None:
        self.channel = channel
        self.message = message
        self.group = group
        self.settled = False

    @property
    def queue(self) -> str:
        return self.message.queue

    @property
    def body(self) -> bytes:
        return self.message.body

    @property
    def headers(self) -> dict[str, str]:
        return self.message.headers

    @property
    def attempt(self) -> int:
        return self.message.attempt

    def _settle(self) -> None:
        if self.settled:
            raise RuntimeError(f"Delivery {self.message.message_id} already settled")
        self.settled = True

    async def ack(self) -> None:
        self._settle()
        await self.channel._commit(self)

    async def nack(self, reason: str) -> None:
        """Hand the message back for redelivery, or dead-letter it when out of attempts."""
        self._settle()
        if self.attempt >= self.channel.max_deliveries:
            await self.channel._dead_letter(self, reason)
        else:
            await self.channel._redeliver(self)

    async def dead_letter(self, reason: str) -> None:
        self._settle()
        await self.channel._dead_letter(self, reason)


class MessageChannel(ABC):
    def __init__(
        self,
        *,
        max_deliveries: int = 5,
        publish_retries: int = 3,
        publish_backoff: float = 0.5,
    ) -> None:
        if max_deliveries < 1:
            raise ValueError("max_deliveries must be at least 1")
        self.max_deliveries = max_deliveries
        self.publish_retries = publish_retries
        self.publish_backoff = publish_backoff

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def publish(
        self,
        queue: str,
        body: bytes,
        *,
        key: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> Message:
        message = Message(queue=queue, body=body, key=key, headers=dict(headers or {}))
        message.headers.setdefault(HEADER_MESSAGE_ID, message.message_id)
        await self._send_with_retry(message)
        return message

    @abstractmethod
    def consume(self, queue: str, group: str) -> AsyncIterator[Delivery]:
        """Yield deliveries for ``queue`` as seen by consumer ``group``."""

    @abstractmethod
    async def _send(self, message: Message) -> None:
        ...

    @abstractmethod
    async def _commit(self, delivery: Delivery) -> None:
        ...

    @abstractmethod
    async def _requeue(self, delivery: Delivery, message: Message) -> None:
        ...

    async def _send_with_retry(self, message: Message) -> None:
        last_error: Exception | None = None
        for attempt in range(1, self.publish_retries + 1):
            try:
                await self._send(message)
            except BrokerError as exc:
                last_error = exc
                logger.warning(
                    "Publish attempt %d/%d failed",
                    attempt,
                    self.publish_retries,
                    extra={"queue": message.queue, "error": str(exc)},
                )
                if attempt < self.publish_retries:
                    await asyncio.sleep(self.publish_backoff * 2 ** (attempt - 1))
                continue
            MESSAGES_PUBLISHED.labels(message.queue).inc()
            return

        logger.error(
            "Giving up publishing after %d attempt(s)",
            self.publish_retries,
            extra={"queue": message.queue, "message_id": message.message_id},
        )
        raise MessagingUnavailableError(
            f"Could not publish to {message.queue}: {last_error}"
        ) from last_error

    async def _redeliver(self, delivery: Delivery) -> None:
        headers = {
            **delivery.headers,
            HEADER_ATTEMPT: str(delivery.attempt + 1),
            HEADER_TARGET_GROUP: delivery.group,
        }
        retry = Message(
            queue=delivery.queue,
            body=delivery.body,
            key=delivery.message.key,
            headers=headers,
            message_id=delivery.message.message_id,
        )
        await self._requeue(delivery, retry)
        await self._commit(delivery)
        MESSAGES_CONSUMED.labels(delivery.queue, "redelivered").inc()

    async def _dead_letter(self, delivery: Delivery, reason: str) -> None:
        headers = {
            **delivery.headers,
            HEADER_ORIGINAL_QUEUE: delivery.queue,
            HEADER_CONSUMER_GROUP: delivery.group,
            HEADER_DEAD_LETTER_REASON: reason,
        }
        headers.pop(HEADER_TARGET_GROUP, None)
        await self._send_with_retry(
            Message(
                queue=dead_letter_queue(delivery.queue),
                body=delivery.body,
                key=delivery.message.key,
                headers=headers,
                message_id=delivery.message.message_id,
            )
        )
        await self._commit(delivery)
        MESSAGES_CONSUMED.labels(delivery.queue, "dlq").inc()
        logger.warning(
            "Message dead-lettered",
            extra={
                "queue": delivery.queue,
                "group": delivery.group,
                "message_id": delivery.message.message_id,
                "attempt": delivery.attempt,
                "reason": reason,
            },
        )


class InMemoryChannel(MessageChannel):
    """
    Process-local channel for tests and single-process runs.

    Every queue keeps an append-only log. Each consumer group gets its own
    pending queue, preloaded from the log when the group first subscribes,
    so groups see every message the way Kafka consumer groups do.
    """

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._log: dict[str, list[Message]] = defaultdict(list)
        self._pending: dict[tuple[str, str], asyncio.Queue] = {}
        self._closed = False

    async def _send(self, message: Message) -> None:
        if self._closed:
            raise BrokerError("Channel is closed")
        self._log[message.queue].append(message)
        for (queue, _group), pending in self._pending.items():
            if queue == message.queue:
                pending.put_nowait(message)

    def _group_queue(self, queue: str, group: str) -> asyncio.Queue:
        pending = self._pending.get((queue, group))
        if pending is None:
            pending = asyncio.Queue()
            for message in self._log[queue]:
                pending.put_nowait(message)
            self._pending[(queue, group)] = pending
        return pending

    async def consume(self, queue: str, group: str) -> AsyncIterator[Delivery]:
        pending = self._group_queue(queue, group)
        while True:
            message = await pending.get()
            if message is None:
                return
            yield Delivery(self, message, group)

    async def _commit(self, delivery: Delivery) -> None:
        return None

    async def _requeue(self, delivery: Delivery, message: Message) -> None:
        self._group_queue(delivery.queue, delivery.group).put_nowait(message)

    async def close(self) -> None:
        self._closed = True
        for pending in self._pending.values():
            pending.put_nowait(None)

    def published(self, queue: str) -> list[Message]:
        """All messages durably recorded on ``queue`` (for inspection)."""
        return list(self._log.get(queue, []))

    def pending(self, queue: str, group: str) -> int:
        pending = self._pending.get((queue, group))
        return pending.qsize() if pending is not None else 0


# ---------------------------------------------------------------------------
# Event helpers
# ---------------------------------------------------------------------------


EventHandler = Callable[[EventBase], Awaitable[None]]


async def publish_event(
    channel: MessageChannel,
    queue: str,
    event: EventBase,
    *,
    key: str | None = None,
) -> Message:
    # Propagate trace context into the downstream message
    headers: dict[str, str] = {}
    inject(headers)
    return await channel.publish(queue, encode_event(event), key=key, headers=headers)


async def handle_delivery(delivery: Delivery, handler: EventHandler) -> None:
    """Decode, dispatch and settle a single delivery."""
    ctx = extract(dict(delivery.headers))

    with tracer.start_as_current_span(f"consume {delivery.queue}", context=ctx):
        try:
            event = parse_event(delivery.body)
            await handler(event)
        except PoisonMessageError as exc:
            logger.error(
                "Unprocessable message, sending to DLQ",
                extra={"queue": delivery.queue, "group": delivery.group, "error": str(exc)},
            )
            await delivery.dead_letter(str(exc))
            return
        except Exception as exc:
            logger.exception(
                "Handler failed, message will be redelivered",
                extra={
                    "queue": delivery.queue,
                    "group": delivery.group,
                    "attempt": delivery.attempt,
                },
            )
            await delivery.nack(f"{type(exc).__name__}: {exc}")
            return

        await delivery.ack()
        MESSAGES_CONSUMED.labels(delivery.queue, "processed").inc()


async def run_consumer(
    channel: MessageChannel,
    queue: str,
    group: str,
    handler: EventHandler,
) -> None:
    """Main consumer loop. Runs until the channel closes or the task is cancelled."""
    logger.info("Consuming %s", queue, extra={"queue": queue, "group": group})
    async for delivery in channel.consume(queue, group):
        await handle_delivery(delivery, handler)


async def run_supervised(
    name: str,
    factory: Callable[[], Awaitable[None]],
    *,
    restart_delay: float = 1.0,
) -> None:
    """Run ``factory()`` and start it again whenever it crashes.

    Returns when the coroutine finishes normally, e.g. once its channel closes.
    """
    while True:
        try:
            await factory()
            return
        except asyncio.CancelledError:
            raise
        except Exception:
            WORKER_RESTARTS.labels(name).inc()
            logger.exception("Worker crashed, restarting", extra={"worker": name, "restart_delay": restart_delay})
        await asyncio.sleep(restart_delay)
