"""
Kafka-backed MessageChannel.

  - Producer uses acks="all" + idempotence, so send_and_wait() returning
    means the message is replicated and durable
  - Consumers disable auto-commit; offsets are committed only when a
    delivery is settled (ack, redelivery or dead-letter)
  - Redelivery re-publishes to the same topic tagged with the consumer
    group; other groups skip those copies
"""

import logging
from collections.abc import AsyncIterator

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.errors import KafkaError

from shared.messaging import (
    HEADER_MESSAGE_ID,
    HEADER_TARGET_GROUP,
    BrokerError,
    Delivery,
    Message,
    MessageChannel,
)

logger = logging.getLogger(__name__)


class KafkaDelivery(Delivery):
    def __init__(self, channel, message, group, consumer: AIOKafkaConsumer, record) -> None:
        super().__init__(channel, message, group)
        self.consumer = consumer
        self.record = record


class KafkaChannel(MessageChannel):
    def __init__(self, bootstrap_servers: str, client_id: str = "order-platform", **kwargs) -> None:
        super().__init__(**kwargs)
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self._producer: AIOKafkaProducer | None = None
        self._consumers: list[AIOKafkaConsumer] = []

    async def start(self) -> None:
        if self._producer is not None:
            return
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            acks="all",
            enable_idempotence=True,
        )
        await self._producer.start()
        logger.info("Kafka producer started", extra={"bootstrap_servers": self.bootstrap_servers})

    async def close(self) -> None:
        for consumer in self._consumers:
            await consumer.stop()
        self._consumers.clear()
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def _send(self, message: Message) -> None:
        if self._producer is None:
            raise BrokerError("Kafka producer not started")
        try:
            await self._producer.send_and_wait(
                message.queue,
                value=message.body,
                key=message.key.encode() if message.key else None,
                headers=[(k, v.encode()) for k, v in message.headers.items()],
            )
        except KafkaError as exc:
            raise BrokerError(str(exc)) from exc

    async def consume(self, queue: str, group: str) -> AsyncIterator[Delivery]:
        consumer = AIOKafkaConsumer(
            queue,
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            group_id=group,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
        )
        await consumer.start()
        self._consumers.append(consumer)

        async for record in consumer:
            headers = {k: v.decode() for k, v in record.headers} if record.headers else {}
            target = headers.get(HEADER_TARGET_GROUP)
            if target is not None and target != group:
                # Retry copy addressed to another consumer group
                await self._commit_record(consumer, record)
                continue
            message = Message(
                queue=record.topic,
                body=record.value,
                key=record.key.decode() if record.key else None,
                headers=headers,
                message_id=headers.get(HEADER_MESSAGE_ID, f"{record.partition}-{record.offset}"),
            )
            yield KafkaDelivery(self, message, group, consumer, record)

    async def _commit(self, delivery: Delivery) -> None:
        if not isinstance(delivery, KafkaDelivery):
            raise TypeError(f"KafkaChannel cannot settle {type(delivery).__name__}")
        await self._commit_record(delivery.consumer, delivery.record)

    async def _requeue(self, delivery: Delivery, message: Message) -> None:
        await self._send_with_retry(message)

    @staticmethod
    async def _commit_record(consumer: AIOKafkaConsumer, record) -> None:
        tp = TopicPartition(record.topic, record.partition)
        await consumer.commit({tp: record.offset + 1})
