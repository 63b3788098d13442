"""
Shared pieces of entry conversion: decoding, column filtering, payload
encoding, SQL messages and counter bookkeeping.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, Optional, Protocol, Sequence

from loguru import logger
from pydantic import ValidationError

from ..counters import CounterService
from ..errors import EntryDecodeError, SchemaBuildError
from ..models import (
    AGENT_COUNTER_AGENT_IP,
    AGENT_COUNTER_MINUTE_KEY,
    FLOW_COUNTER_FROM_DB,
    FLOW_COUNTER_TABLE,
    FLOW_COUNTER_TIME_PERIOD,
    FLOW_COUNTER_TOPIC,
    META_SCHEMA_FIELDS,
    META_SCHEMA_NAME,
    Column,
    Entry,
    EntryHeader,
    OutboundMessage,
    RowChange,
    RowChangeRecord,
    RowData,
    TransactionEnd,
)
from ..schema_cache import SchemaCache
from ..settings import RelaySettings

SQL_FIELDS = ["table", "ts", "db", "sql", "agent", "from_db"]


class EntryConverter(Protocol):
    """Turns one upstream entry into zero or more outbound messages."""

    def convert(self, entry: Entry) -> list[OutboundMessage]: ...


def decode_row_change(entry: Entry) -> RowChange:
    try:
        return RowChange.model_validate_json(entry.store_value)
    except ValidationError as exc:
        logger.warning(f"parse row data event has an error, header={entry.header}")
        raise EntryDecodeError(f"parse row data event has an error, header={entry.header}") from exc


def decode_transaction_end(entry: Entry) -> TransactionEnd:
    try:
        return TransactionEnd.model_validate_json(entry.store_value)
    except ValidationError as exc:
        logger.error(f"parse transaction end event has an error, header={entry.header}")
        raise EntryDecodeError(
            f"parse transaction end event has an error, header={entry.header}"
        ) from exc


def primary_key(row: RowData) -> Optional[str]:
    """Concatenated key column values in column order; None if no key columns."""
    columns = row.after_columns or row.before_columns
    keys = [c.value or "" for c in columns if c.is_key]
    return "".join(keys) if keys else None


class BaseEntryConverter(ABC):
    """State-free helpers; subclasses implement ``convert``."""

    def __init__(
        self,
        settings: RelaySettings,
        schema_cache: SchemaCache,
        counters: Optional[CounterService] = None,
    ) -> None:
        self.settings = settings
        self.routes = settings.topic_routes
        self.field_filter = settings.field_filter
        self.schema_cache = schema_cache
        self.counters = counters
        self.agent_address = settings.agent_address
        self.from_db = settings.source_address
        self._last_query_sql: Optional[str] = None

    @abstractmethod
    def convert(self, entry: Entry) -> list[OutboundMessage]: ...

    # --------------------------- rows

    def build_record(self, row: RowData, header: EntryHeader, event_type) -> Optional[RowChangeRecord]:
        """Filtered record for one row, or None when the whole table is excluded."""
        qualifier = header.table_key
        if self.field_filter.is_table_excluded(qualifier):
            logger.debug(f"row dropped by table filter: {qualifier}")
            return None
        before = None
        if self.settings.old_data_required:
            before = self._columns_to_map(row.before_columns, qualifier)
        return RowChangeRecord(
            table_qualifier=qualifier,
            event_type=event_type,
            after_columns=self._columns_to_map(row.after_columns, qualifier),
            before_columns=before,
            execute_time=header.execute_time,
            primary_key=primary_key(row),
        )

    def _columns_to_map(self, columns: Sequence[Column], qualifier: str) -> dict[str, Optional[str]]:
        out: dict[str, Optional[str]] = {}
        for column in columns:
            if self.field_filter.is_field_excluded(qualifier, column.name):
                logger.debug(f"column dropped by filter {qualifier}:{column.name}")
                continue
            out[column.name] = None if column.is_null else column.value
        return out

    def resolve_topic(self, qualifier: str) -> str:
        """Mapped topic for a table, or the default topic when unmapped.

        With avro enabled an unmapped table has no schema to encode with and
        raises SchemaBuildError for the entry that carries it.
        """
        topic = self.routes.topic_for(qualifier)
        if topic is None:
            topic = self.settings.topic
            logger.debug(f"no route for {qualifier}, using default topic {topic}")
        if self.settings.use_avro and self.routes.schema_for(topic) is None:
            raise SchemaBuildError(f"no schema mapped for table {qualifier} (topic {topic})")
        return topic

    # --------------------------- encoding

    def encode(
        self,
        envelope: dict[str, Any],
        fields: Sequence[str],
        schema_name: Optional[str],
        metadata: dict[str, str],
    ) -> bytes:
        """Schema-tagged Avro when enabled, UTF-8 JSON otherwise.

        Nested values are JSON-encoded into one opaque string field for Avro.
        """
        if self.settings.use_avro:
            record = {
                k: json.dumps(v, ensure_ascii=False) if isinstance(v, (dict, list)) else v
                for k, v in envelope.items()
            }
            payload = self.schema_cache.encode(fields, schema_name, record)
            metadata[META_SCHEMA_NAME] = schema_name or ""
            metadata[META_SCHEMA_FIELDS] = ",".join(fields)
            return payload
        return json.dumps(envelope, ensure_ascii=False).encode("utf-8")

    # --------------------------- sql

    def remember_query(self, change: RowChange) -> None:
        self._last_query_sql = change.sql

    def sql_message(self, header: EntryHeader, sql: Optional[str]) -> OutboundMessage:
        envelope = {
            "table": header.table_name,
            "ts": header.execute_time // 1000,
            "db": header.schema_name,
            "sql": sql or "",
            "agent": self.agent_address,
            "from_db": self.from_db,
        }
        metadata = {self.settings.topic_header: self.settings.sql_topic}
        payload = self.encode(envelope, SQL_FIELDS, self.settings.sql_schema_name, metadata)
        logger.debug(f"sql message for {header.table_key}: {sql}")
        return OutboundMessage(topic=self.settings.sql_topic, payload=payload, metadata=metadata)

    def sql_echo_message(self, header: EntryHeader) -> Optional[OutboundMessage]:
        if not self.settings.sql_echo or self._last_query_sql is None:
            return None
        return self.sql_message(header, self._last_query_sql)

    # --------------------------- counters

    def count_row(self, topic: str, qualifier: str, header: EntryHeader, metadata: dict[str, str]) -> None:
        """Increment received counters and stamp their keys onto ``metadata``."""
        if self.counters is None or not self.settings.flow_counter_enabled:
            return
        flow_key = self.counters.flow_key(topic, qualifier, self.from_db, header.executed_at)
        self.counters.increment(flow_key)
        agent_key = self.counters.agent_key(self.agent_address)
        self.counters.increment(agent_key)

        metadata.setdefault(FLOW_COUNTER_TOPIC, flow_key.topic)
        metadata.setdefault(FLOW_COUNTER_TABLE, flow_key.table)
        metadata.setdefault(FLOW_COUNTER_FROM_DB, flow_key.from_db)
        metadata.setdefault(FLOW_COUNTER_TIME_PERIOD, flow_key.time_period)
        metadata.setdefault(AGENT_COUNTER_AGENT_IP, agent_key.agent_ip)
        metadata.setdefault(AGENT_COUNTER_MINUTE_KEY, agent_key.minute_key)
