"""
Destination log clients.

``KafkaDestination`` wraps a confluent-kafka Producer and turns its delivery
callbacks into asyncio futures, so a batch can be awaited as a whole.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from confluent_kafka import KafkaException, Producer
from confluent_kafka.schema_registry import SchemaRegistryClient
from confluent_kafka.schema_registry.avro import AvroSerializer
from confluent_kafka.serialization import MessageField, SerializationContext
from loguru import logger

from .schema_cache import SchemaDescriptor


@dataclass(frozen=True)
class DeliveryReport:
    topic: str
    partition: Optional[int] = None
    offset: Optional[int] = None


class DestinationClient(Protocol):
    """What the sink needs from the destination log."""

    def send(
        self,
        topic: str,
        key: Optional[str],
        value: bytes,
        partition: Optional[int] = None,
    ) -> "asyncio.Future[DeliveryReport]": ...

    async def flush(self) -> None: ...

    async def close(self) -> None: ...


class KafkaDestination:
    """confluent-kafka backed DestinationClient.

    Delivery callbacks fire inside ``flush()``/``poll()``, which run on a
    worker thread; results are handed back to the event loop thread-safely.
    """

    def __init__(
        self,
        config: dict[str, Any],
        *,
        flush_timeout: float = 30.0,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self._producer = Producer(config)
        self._flush_timeout = flush_timeout
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def send(
        self,
        topic: str,
        key: Optional[str],
        value: bytes,
        partition: Optional[int] = None,
    ) -> "asyncio.Future[DeliveryReport]":
        loop = self._get_loop()
        future: asyncio.Future[DeliveryReport] = loop.create_future()

        def on_delivery(err, msg) -> None:
            loop.call_soon_threadsafe(_resolve, future, err, msg, topic)

        kwargs: dict[str, Any] = {"value": value, "key": key, "on_delivery": on_delivery}
        if partition is not None:
            kwargs["partition"] = partition
        try:
            self._producer.produce(topic, **kwargs)
        except BufferError:
            # local queue full: serve callbacks to make room, then retry once
            logger.debug("Producer queue full, polling before retry")
            self._producer.poll(1.0)
            self._producer.produce(topic, **kwargs)
        return future

    async def flush(self) -> None:
        """Serve delivery callbacks until no message is left in the producer queue.

        A flush that times out is repeated; undeliverable messages still leave
        the queue once ``message.timeout.ms`` fails them.
        """
        remaining = await asyncio.to_thread(self._producer.flush, self._flush_timeout)
        while remaining:
            logger.warning(f"Producer flush left {remaining} messages in queue, flushing again")
            remaining = await asyncio.to_thread(self._producer.flush, self._flush_timeout)

    async def close(self) -> None:
        await self.flush()
        logger.info("Kafka producer closed")


def _resolve(future: asyncio.Future, err, msg, topic: str) -> None:
    if future.done():
        return
    if err is not None:
        future.set_exception(KafkaException(err))
        return
    future.set_result(DeliveryReport(topic=msg.topic() or topic, partition=msg.partition(), offset=msg.offset()))


class RegistryEncoder:
    """Re-encode decoded records into schema-registry wire format.

    Schemas are auto-registered under the topic's value subject.
    """

    def __init__(self, url: str):
        self._client = SchemaRegistryClient({"url": url})
        self._serializers: dict[SchemaDescriptor, AvroSerializer] = {}

    def encode(self, topic: str, descriptor: SchemaDescriptor, record: dict[str, Any]) -> bytes:
        serializer = self._serializers.get(descriptor)
        if serializer is None:
            serializer = AvroSerializer(self._client, json.dumps(descriptor.definition))
            self._serializers[descriptor] = serializer
        return serializer(record, SerializationContext(topic, MessageField.VALUE))
