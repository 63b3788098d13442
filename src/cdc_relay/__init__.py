"""
CDC Relay

Relays database change-data-capture entries into a Kafka-style log:
table routing and field filtering, per-transaction batching, Avro or JSON
payloads, transactional batch delivery with per-message error capture.

Usage:
    from cdc_relay import CdcRelay, load_settings

    settings = load_settings(bootstrap_servers="localhost:9092")
    async with CdcRelay(settings) as relay:
        await relay.submit(entry)
"""

from .channel import MemoryChannel
from .converter import RowEntryConverter, TransactionEntryConverter, build_converter
from .counters import AgentCounterKey, CounterService, Counters, FlowCounterKey
from .destination import DeliveryReport, KafkaDestination
from .errors import (
    ChannelError,
    ConfigurationError,
    DeliveryError,
    EntryDecodeError,
    RelayError,
    SchemaBuildError,
)
from .models import Column, Entry, EntryHeader, EntryType, EventType, OutboundMessage, RowChange, RowData
from .relay import CdcRelay, RelayHealth
from .routing import FieldFilterIndex, PatternRouter, TopicRoutes
from .schema_cache import SchemaCache, schema_cache
from .settings import RelaySettings, get_settings, load_settings
from .sink import DeliverySink, Status

__version__ = "0.1.0"
__all__ = [
    "CdcRelay",
    "RelayHealth",
    "RelaySettings",
    "load_settings",
    "get_settings",
    "PatternRouter",
    "FieldFilterIndex",
    "TopicRoutes",
    "SchemaCache",
    "schema_cache",
    "CounterService",
    "Counters",
    "FlowCounterKey",
    "AgentCounterKey",
    "RowEntryConverter",
    "TransactionEntryConverter",
    "build_converter",
    "MemoryChannel",
    "DeliverySink",
    "Status",
    "KafkaDestination",
    "DeliveryReport",
    "Entry",
    "EntryHeader",
    "EntryType",
    "EventType",
    "RowChange",
    "RowData",
    "Column",
    "OutboundMessage",
    "RelayError",
    "ConfigurationError",
    "EntryDecodeError",
    "SchemaBuildError",
    "ChannelError",
    "DeliveryError",
]
