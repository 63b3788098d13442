"""
CdcRelay: wires converter → channel → sink and runs the drain loop.

Usage:

    settings = load_settings(bootstrap_servers="localhost:9092")
    async with CdcRelay(settings) as relay:
        for entry in entries:
            await relay.submit(entry)
    # channel drained and producer flushed on exit
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable, Optional

from loguru import logger

from .channel import MemoryChannel
from .converter import BaseEntryConverter, build_converter
from .counters import CounterService, Counters
from .destination import DestinationClient, KafkaDestination, RegistryEncoder
from .error_capture import ErrorCaptureLog
from .errors import DeliveryError
from .models import Entry, OutboundMessage
from .schema_cache import SchemaCache, schema_cache
from .settings import RelaySettings
from .sink import DeliverySink, Status


@dataclass(frozen=True)
class RelayHealth:
    channel_size: int
    channel_capacity: int
    drain_alive: bool
    pending_rows: int
    sink: dict[str, int]

    @property
    def utilization(self) -> float:
        return self.channel_size / self.channel_capacity if self.channel_capacity > 0 else 0.0


class CdcRelay:
    """One upstream stream, one channel, one drain task."""

    def __init__(
        self,
        settings: RelaySettings,
        *,
        client: Optional[DestinationClient] = None,
        channel: Optional[MemoryChannel[OutboundMessage]] = None,
        counters: Optional[CounterService] = None,
        cache: Optional[SchemaCache] = None,
    ):
        self.settings = settings
        self.cache = cache if cache is not None else schema_cache()
        self.counters = counters if counters is not None else Counters(settings.counter_time_format)
        self.converter: BaseEntryConverter = build_converter(
            settings, cache=self.cache, counters=self.counters
        )
        self.channel: MemoryChannel[OutboundMessage] = channel or MemoryChannel(
            settings.channel_capacity
        )
        registry = None
        if settings.use_avro and settings.schema_registry_url:
            registry = RegistryEncoder(settings.schema_registry_url)
        self.sink = DeliverySink(
            self.channel,
            client or KafkaDestination(settings.kafka_producer_config()),
            settings,
            cache=self.cache,
            counters=self.counters,
            error_log=ErrorCaptureLog(settings.send_error_file),
            registry=registry,
        )
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        await self.sink.start()
        self._task = asyncio.create_task(self._drain_loop(), name="cdc-relay-drain")
        logger.info(f"CdcRelay started: {self.settings.summary()}")

    async def stop(self) -> None:
        """Let the in-flight batch finish, then drain what is left and close."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        await self.sink.stop()
        logger.info("CdcRelay stopped")

    async def __aenter__(self) -> "CdcRelay":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def submit(self, entry: Entry) -> int:
        """Convert one entry and enqueue the resulting messages. Returns count."""
        messages = self.converter.convert(entry)
        if messages:
            await self.channel.put_many(messages)
        return len(messages)

    async def submit_many(self, entries: Iterable[Entry]) -> int:
        total = 0
        for entry in entries:
            total += await self.submit(entry)
        return total

    async def _drain_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                status = await self.sink.process()
            except DeliveryError as exc:
                logger.error(f"Drain batch failed, will retry: {exc.__cause__ or exc}")
                await self._pause()
                continue
            if status is Status.BACKOFF:
                await self._pause()

    async def _pause(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.settings.backoff_seconds)
        except asyncio.TimeoutError:
            pass

    def health(self) -> RelayHealth:
        pending = getattr(self.converter, "pending_rows", 0)
        return RelayHealth(
            channel_size=self.channel.size,
            channel_capacity=self.channel.capacity,
            drain_alive=self._task is not None and not self._task.done(),
            pending_rows=pending,
            sink=self.sink.counter.snapshot(),
        )
