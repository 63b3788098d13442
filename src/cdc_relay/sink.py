"""
Batched, transactional delivery sink.

Per batch: begin a read transaction on the channel, take up to
``batch_size`` messages, send each asynchronously, flush, wait for every
send to resolve, then commit. Any batch-level exception rolls the read back
so the same messages are redelivered (at-least-once). A failed individual
send is handled in its completion callback and never aborts the batch.
"""

from __future__ import annotations

import asyncio
import functools
import json
from enum import Enum
from time import monotonic
from typing import Optional

from loguru import logger

from .channel import Channel
from .counters import AgentCounterKey, CounterService, FlowCounterKey
from .destination import DeliveryReport, DestinationClient, RegistryEncoder
from .error_capture import ErrorCaptureLog, safe_append
from .errors import DeliveryError
from .metrics import SinkCounter
from .models import (
    AGENT_COUNTER_AGENT_IP,
    AGENT_COUNTER_MINUTE_KEY,
    FLOW_COUNTER_FROM_DB,
    FLOW_COUNTER_TABLE,
    FLOW_COUNTER_TIME_PERIOD,
    FLOW_COUNTER_TOPIC,
    OutboundMessage,
)
from .schema_cache import SchemaCache, schema_cache
from .settings import RelaySettings

ALERT_FIELDS = ["topic", "exception", "data"]
ALERT_SCHEMA_NAME = "alert"


class Status(str, Enum):
    READY = "ready"
    BACKOFF = "backoff"


class DeliverySink:
    """Drains a transactional channel into the destination log.

    One drain loop per instance: ``process()`` must not be called
    concurrently on the same sink. The sends within a batch run
    concurrently inside the destination client.

    Example:
        async with DeliverySink(channel, KafkaDestination(conf), settings) as sink:
            while await sink.process() is Status.READY:
                pass
    """

    def __init__(
        self,
        channel: Channel[OutboundMessage],
        client: DestinationClient,
        settings: RelaySettings,
        *,
        cache: Optional[SchemaCache] = None,
        counters: Optional[CounterService] = None,
        error_log: Optional[ErrorCaptureLog] = None,
        registry: Optional[RegistryEncoder] = None,
        name: str = "kafka-sink",
    ):
        self.channel = channel
        self.client = client
        self.settings = settings
        self.batch_size = settings.batch_size
        self.cache = cache if cache is not None else schema_cache()
        self.counters = counters
        self.error_log = error_log or ErrorCaptureLog(settings.send_error_file)
        if registry is None and settings.use_avro and settings.schema_registry_url:
            registry = RegistryEncoder(settings.schema_registry_url)
        self.registry = registry
        self.name = name
        self.counter = SinkCounter(name)

        self._pending: list[asyncio.Future[DeliveryReport]] = []
        self._started = False
        self._stopped = False

    # --------------------------- lifecycle

    async def start(self) -> None:
        if self._started:
            return
        self.counter.start()
        self._started = True
        logger.info(f"Sink {self.name} started (batch_size={self.batch_size})")

    async def stop(self) -> None:
        """Drain the channel to empty, then close the client and counters."""
        if self._stopped:
            return
        try:
            while await self.process() is Status.READY:
                pass
        except DeliveryError as exc:
            logger.error(f"Sink {self.name} drain before stop failed: {exc}")
        logger.info("sent channel data before sink stop")

        self._stopped = True
        await self.client.close()
        self.counter.stop()
        if self.counters is not None:
            self.counters.stop()
        self.cache.clear()
        logger.info(f"Sink {self.name} stopped. Metrics: {self.counter}")

    async def __aenter__(self) -> "DeliverySink":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # --------------------------- batch protocol

    async def process(self) -> Status:
        if self._stopped:
            raise DeliveryError(f"sink {self.name} is stopped")

        result = Status.READY
        txn = self.channel.transaction()
        self._pending = []
        try:
            await txn.begin()
            batch_start = monotonic()
            processed = 0
            while processed < self.batch_size:
                message = await txn.take()
                if message is None:
                    if processed == 0:
                        result = Status.BACKOFF
                        self.counter.increment_batch_empty()
                    else:
                        self.counter.increment_batch_underflow()
                    break
                logger.debug(f"message #{processed} topic={message.topic}")
                self._send(message)
                processed += 1
            else:
                self.counter.increment_batch_complete()

            # batch boundary is the flush boundary
            await self.client.flush()

            if processed > 0:
                results = await asyncio.gather(*self._pending, return_exceptions=True)
                self.counter.observe_send_time(monotonic() - batch_start)
                self.counter.add_drain_success(
                    sum(1 for r in results if not isinstance(r, BaseException))
                )

            await txn.commit()
        except Exception as exc:
            await self._handle_exception(txn, exc)
        finally:
            txn.close()

        return result

    async def _handle_exception(self, txn, exc: Exception) -> None:
        logger.error(f"Failed to publish events: {type(exc).__name__}: {exc}")
        self._pending = []
        try:
            await txn.rollback()
            self.counter.increment_rollback()
        except Exception as rollback_exc:
            logger.error(f"Transaction rollback failed: {rollback_exc}")
            raise DeliveryError("Transaction rollback failed") from rollback_exc
        raise DeliveryError("Failed to publish events") from exc

    # --------------------------- sending

    def _send(self, message: OutboundMessage) -> None:
        started = monotonic()
        topic = self._resolve_topic(message)
        partition = self._resolve_partition(message)
        value = self._serialize(message, topic)

        future = self.client.send(topic, message.partition_key, value, partition)
        future.add_done_callback(functools.partial(self._on_completion, message, topic, started))
        self._pending.append(future)

    def _resolve_topic(self, message: OutboundMessage) -> str:
        if not self.settings.allow_topic_override:
            return self.settings.topic
        topic = message.metadata.get(self.settings.topic_header)
        if topic is None:
            topic = self.settings.topic
            logger.warning(
                f"allow_topic_override set but header {self.settings.topic_header} "
                f"missing, producing to {topic}"
            )
        return topic

    def _resolve_partition(self, message: OutboundMessage) -> Optional[int]:
        partition = self.settings.static_partition_id
        header = self.settings.partition_header
        if header is not None:
            raw = message.metadata.get(header)
            if raw is not None:
                try:
                    partition = int(raw)
                except ValueError as exc:
                    raise DeliveryError("Non integer partition id specified") from exc
        return partition

    def _serialize(self, message: OutboundMessage, topic: str) -> bytes:
        if self.registry is None or not message.is_schema_tagged:
            return message.payload
        schema = self.cache.get_schema(message.schema_fields, message.schema_name)
        record = self.cache.decode(schema.fields, schema.name, message.payload)
        return self.registry.encode(topic, schema.descriptor, record)

    # --------------------------- completion / error path

    def _on_completion(
        self,
        message: OutboundMessage,
        topic: str,
        started: float,
        future: "asyncio.Future[DeliveryReport]",
    ) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.debug(f"Error sending message to Kafka: {exc}")
            self._handle_error_data(message, topic, exc)
            return
        report = future.result()
        logger.debug(
            f"Acked message topic={report.topic} partition={report.partition} "
            f"offset={report.offset} elapsed={(monotonic() - started) * 1000:.1f}ms"
        )

    def _handle_error_data(self, message: OutboundMessage, topic: str, exc: BaseException) -> None:
        self.counter.increment_send_failure()
        self._error_counter(message.metadata)
        rendered = self.render(message)
        safe_append(self.error_log, rendered)
        if self.settings.alert_enabled:
            self._send_alert(topic, str(exc), rendered)

    def _error_counter(self, metadata: dict[str, str]) -> None:
        if self.counters is None:
            return
        flow_topic = metadata.get(FLOW_COUNTER_TOPIC)
        if flow_topic is not None:
            self.counters.increment_error(
                FlowCounterKey(
                    flow_topic,
                    metadata.get(FLOW_COUNTER_TABLE, ""),
                    metadata.get(FLOW_COUNTER_FROM_DB, ""),
                    metadata.get(FLOW_COUNTER_TIME_PERIOD, ""),
                )
            )
        agent_ip = metadata.get(AGENT_COUNTER_AGENT_IP)
        if agent_ip is not None:
            self.counters.increment_error(
                AgentCounterKey(agent_ip, metadata.get(AGENT_COUNTER_MINUTE_KEY, ""))
            )

    def render(self, message: OutboundMessage) -> str:
        """Human-readable text of a payload: decoded Avro as JSON, or UTF-8 JSON as is."""
        if message.is_schema_tagged:
            try:
                record = self.cache.decode(message.schema_fields, message.schema_name, message.payload)
            except Exception as exc:
                logger.error(f"Cannot decode schema-tagged payload for rendering: {exc}")
                return message.payload.hex()
            return json.dumps(record, ensure_ascii=False)
        return message.payload.decode("utf-8", errors="replace")

    def _send_alert(self, topic: str, exception_info: str, rendered: str) -> None:
        envelope = {"topic": topic, "exception": exception_info, "data": rendered}
        alert_topic = self.settings.alert_topic
        try:
            if self.settings.use_avro:
                schema = self.cache.get_schema(ALERT_FIELDS, ALERT_SCHEMA_NAME)
                if self.registry is not None:
                    value = self.registry.encode(alert_topic, schema.descriptor, envelope)
                else:
                    value = self.cache.encode(ALERT_FIELDS, ALERT_SCHEMA_NAME, envelope)
            else:
                value = json.dumps(envelope, ensure_ascii=False).encode("utf-8")
            future = self.client.send(alert_topic, None, value)
        except Exception as exc:
            logger.error(f"Could not send alert for topic {topic}: {exc}")
            return
        future.add_done_callback(_log_alert_outcome)


def _log_alert_outcome(future: asyncio.Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.debug(f"Alert message not delivered (ignored): {exc}")
