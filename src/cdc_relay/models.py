"""
Data models for the relay.

Upstream replication-log entries are pydantic models; ``Entry.store_value``
holds the encoded body (a RowChange or TransactionEnd document) and is only
decoded by the converter. Outbound records are plain dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

# --- metadata header names carried on OutboundMessage.metadata ---

META_TOPIC = "topic"
META_KEY = "key"
META_SCHEMA_NAME = "schema_name"
META_SCHEMA_FIELDS = "schema_fields"
META_TRANS_ID = "trans_id"
META_SPLIT_ID = "split_id"
META_AGENT = "agent"
META_FROM = "from_db"
META_NUM_IN_TRANSACTION = "num_in_transaction"

FLOW_COUNTER_TOPIC = "flow_topic"
FLOW_COUNTER_TABLE = "flow_table"
FLOW_COUNTER_FROM_DB = "flow_from_db"
FLOW_COUNTER_TIME_PERIOD = "flow_time_period"
AGENT_COUNTER_AGENT_IP = "agent_ip"
AGENT_COUNTER_MINUTE_KEY = "agent_minute_key"


class EntryType(str, Enum):
    TRANSACTIONBEGIN = "TRANSACTIONBEGIN"
    ROWDATA = "ROWDATA"
    TRANSACTIONEND = "TRANSACTIONEND"


class EventType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    QUERY = "QUERY"
    CREATE = "CREATE"
    ALTER = "ALTER"
    ERASE = "ERASE"
    TRUNCATE = "TRUNCATE"
    RENAME = "RENAME"


class Column(BaseModel):
    """One column of a row image."""

    name: str
    sql_type: int = 12  # VARCHAR
    value: Optional[str] = None
    is_key: bool = False
    is_null: bool = False


class RowData(BaseModel):
    before_columns: list[Column] = Field(default_factory=list)
    after_columns: list[Column] = Field(default_factory=list)


class RowChange(BaseModel):
    event_type: EventType
    is_ddl: bool = False
    sql: str = ""
    row_datas: list[RowData] = Field(default_factory=list)


class TransactionEnd(BaseModel):
    transaction_id: str


class EntryHeader(BaseModel):
    schema_name: str = ""
    table_name: str = ""
    execute_time: int = 0  # epoch millis
    log_file_name: str = ""
    log_file_offset: int = 0

    @property
    def table_key(self) -> str:
        return f"{self.schema_name}.{self.table_name}"

    @property
    def executed_at(self) -> datetime:
        return datetime.fromtimestamp(self.execute_time / 1000)


class Entry(BaseModel):
    """A single upstream replication-log entry."""

    entry_type: EntryType
    header: EntryHeader = Field(default_factory=EntryHeader)
    store_value: bytes = b""

    @classmethod
    def row_change(cls, header: EntryHeader, change: RowChange) -> "Entry":
        return cls(
            entry_type=EntryType.ROWDATA,
            header=header,
            store_value=change.model_dump_json().encode("utf-8"),
        )

    @classmethod
    def transaction_end(cls, transaction_id: str, header: Optional[EntryHeader] = None) -> "Entry":
        return cls(
            entry_type=EntryType.TRANSACTIONEND,
            header=header or EntryHeader(),
            store_value=TransactionEnd(transaction_id=transaction_id)
            .model_dump_json()
            .encode("utf-8"),
        )

    @classmethod
    def transaction_begin(cls, header: Optional[EntryHeader] = None) -> "Entry":
        return cls(entry_type=EntryType.TRANSACTIONBEGIN, header=header or EntryHeader())


@dataclass
class RowChangeRecord:
    """A filtered row mutation ready to be batched."""

    table_qualifier: str
    event_type: EventType
    after_columns: dict[str, Optional[str]]
    before_columns: Optional[dict[str, Optional[str]]] = None
    execute_time: int = 0
    primary_key: Optional[str] = None  # partition key candidate, not serialized

    def to_dict(self) -> dict[str, Any]:
        db, _, table = self.table_qualifier.partition(".")
        out: dict[str, Any] = {
            "db": db,
            "table": table,
            "ts": self.execute_time // 1000,
            "type": self.event_type.value,
            "data": self.after_columns,
        }
        if self.before_columns is not None:
            out["old"] = self.before_columns
        return out


@dataclass
class OutboundMessage:
    topic: str
    payload: bytes
    partition_key: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def schema_name(self) -> Optional[str]:
        return self.metadata.get(META_SCHEMA_NAME)

    @property
    def schema_fields(self) -> list[str]:
        raw = self.metadata.get(META_SCHEMA_FIELDS, "")
        return [f for f in raw.split(",") if f]

    @property
    def is_schema_tagged(self) -> bool:
        return bool(self.schema_name)
