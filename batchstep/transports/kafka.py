"""Kafka transport implementation using aiokafka."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Iterable, Optional, Tuple

try:
    from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
    from aiokafka.structs import TopicPartition
except ImportError:  # pragma: no cover - aiokafka not installed
    AIOKafkaConsumer = None  # type: ignore
    AIOKafkaProducer = None  # type: ignore
    TopicPartition = None  # type: ignore

from ..contracts import ChunkReadyMessage
from .base import BaseTransport, Lifespan

logger = logging.getLogger(__name__)


class KafkaTransport(BaseTransport[Any]):
    """Kafka transport with manual offset commits.

    Notifications are keyed by job instance so that one instance's chunks
    land on one partition. Unparseable or rejected records go to
    ``dlq_topic``.
    """

    def __init__(
        self,
        brokers: Iterable[str] | str = "localhost:9092",
        group_id: str = "batchstep",
        dlq_topic: str = "batchstep.deadletter",
    ) -> None:
        if AIOKafkaProducer is None or AIOKafkaConsumer is None:
            raise ImportError("aiokafka package is required for KafkaTransport")

        self.brokers = [brokers] if isinstance(brokers, str) else list(brokers)
        self.group_id = group_id
        self.dlq_topic = dlq_topic
        self._producer: Optional[Any] = None
        self._consumer: Optional[Any] = None

    async def connect(self) -> None:
        if self._producer is None:
            producer = AIOKafkaProducer(bootstrap_servers=self.brokers)
            await producer.start()
            self._producer = producer

    async def disconnect(self) -> None:
        if self._consumer is not None:
            await self._consumer.stop()
            self._consumer = None
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def publish(self, topic: str, message: ChunkReadyMessage) -> None:
        await self.connect()
        await self._producer.send_and_wait(
            topic,
            value=message.to_json().encode("utf-8"),
            key=message.instance_id.encode("utf-8"),
        )

    async def _consumer_for(self, topic: str) -> Any:
        if self._consumer is None:
            consumer = AIOKafkaConsumer(
                topic,
                bootstrap_servers=self.brokers,
                group_id=self.group_id,
                enable_auto_commit=False,
                auto_offset_reset="earliest",
            )
            await consumer.start()
            self._consumer = consumer
        return self._consumer

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Any, ChunkReadyMessage]]:
        consumer = await self._consumer_for(topic)
        window = Lifespan(lifespan)
        while not window.expired:
            batch = await consumer.getmany(timeout_ms=1000, max_records=1)
            for records in batch.values():
                for record in records:
                    try:
                        message = ChunkReadyMessage.from_json(record.value.decode("utf-8"))
                    except ValueError as e:
                        logger.warning("Dead-lettering unparseable record on %s: %s", topic, e)
                        await self.nack(record, requeue=False)
                        continue
                    yield record, message

    async def ack(self, raw_message: Any) -> None:
        if self._consumer is None:
            raise RuntimeError("KafkaTransport has no active subscription")
        partition = TopicPartition(raw_message.topic, raw_message.partition)
        await self._consumer.commit({partition: raw_message.offset + 1})

    async def nack(self, raw_message: Any, requeue: bool = True) -> None:
        if self._consumer is None:
            raise RuntimeError("KafkaTransport has no active subscription")
        if requeue:
            partition = TopicPartition(raw_message.topic, raw_message.partition)
            self._consumer.seek(partition, raw_message.offset)
            return
        await self.connect()
        await self._producer.send_and_wait(
            self.dlq_topic, value=raw_message.value, key=raw_message.key
        )
        await self.ack(raw_message)
