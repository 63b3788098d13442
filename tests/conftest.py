"""
Pytest configuration and fixtures for cdc-relay.

Provides settings factories, entry builders and a fake destination client.
"""

import asyncio
import sys
from types import SimpleNamespace
from typing import Callable, Optional

import pytest

from cdc_relay.counters import Counters
from cdc_relay.destination import DeliveryReport
from cdc_relay.models import Column, Entry, EntryHeader, EventType, RowChange, RowData
from cdc_relay.schema_cache import SchemaCache
from cdc_relay.settings import RelaySettings

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

EXECUTE_TIME_MS = 1_700_000_000_000


class FakeDestination:
    """In-memory DestinationClient.

    ``fail`` decides per send whether the delivery future resolves with an
    exception; ``raise_on_send`` makes ``send`` itself raise.
    """

    def __init__(
        self,
        fail: Optional[Callable[[str, bytes], bool]] = None,
        raise_on_send: Optional[Exception] = None,
    ):
        self.fail = fail or (lambda topic, value: False)
        self.raise_on_send = raise_on_send
        self.sent: list[tuple[str, Optional[str], bytes, Optional[int]]] = []
        self.flushes = 0
        self.closed = False

    def send(self, topic, key, value, partition=None):
        if self.raise_on_send is not None:
            raise self.raise_on_send
        self.sent.append((topic, key, value, partition))
        future = asyncio.get_running_loop().create_future()
        if self.fail(topic, value):
            future.set_exception(RuntimeError(f"broker rejected message for {topic}"))
        else:
            future.set_result(DeliveryReport(topic=topic, partition=partition or 0, offset=len(self.sent)))
        return future

    async def flush(self):
        self.flushes += 1

    async def close(self):
        self.closed = True

    def topics(self) -> list[str]:
        return [t for t, _, _, _ in self.sent]


@pytest.fixture
def fake_destination():
    return FakeDestination()


@pytest.fixture
def make_destination():
    """FakeDestination factory, e.g. ``make_destination(fail=lambda topic, value: True)``."""
    return FakeDestination


@pytest.fixture
def make_settings(tmp_path):
    """Factory for RelaySettings with test-friendly defaults."""

    def _make(**overrides) -> RelaySettings:
        values = {
            "bootstrap_servers": "localhost:9092",
            "send_error_file": str(tmp_path / "send_error.log"),
            "agent_address": "10.0.0.1",
            "source_address": "db-primary",
            "backoff_seconds": 0.01,
        }
        values.update(overrides)
        return RelaySettings(**values)

    return _make


@pytest.fixture
def counters():
    return Counters()


@pytest.fixture
def cache():
    return SchemaCache()


# ---------------------------
# Entry builders
# ---------------------------


def header(table: str = "db.orders", execute_time: int = EXECUTE_TIME_MS) -> EntryHeader:
    schema_name, _, table_name = table.partition(".")
    return EntryHeader(schema_name=schema_name, table_name=table_name, execute_time=execute_time)


def order_row(order_id: int, amount: str = "9.99") -> RowData:
    return RowData(
        after_columns=[
            Column(name="id", sql_type=4, value=str(order_id), is_key=True),
            Column(name="amount", sql_type=3, value=amount),
            Column(name="note", sql_type=12, value=None, is_null=True),
        ]
    )


def insert_entry(rows: list[RowData], table: str = "db.orders") -> Entry:
    change = RowChange(event_type=EventType.INSERT, row_datas=rows)
    return Entry.row_change(header(table), change)


def ddl_entry(sql: str, table: str = "db.orders") -> Entry:
    change = RowChange(event_type=EventType.ALTER, is_ddl=True, sql=sql)
    return Entry.row_change(header(table), change)


def query_entry(sql: str, table: str = "db.orders") -> Entry:
    change = RowChange(event_type=EventType.QUERY, sql=sql)
    return Entry.row_change(header(table), change)


@pytest.fixture
def entries():
    """Entry builders, e.g. ``entries.insert([entries.order_row(1)])``."""
    return SimpleNamespace(
        header=header,
        order_row=order_row,
        insert=insert_entry,
        ddl=ddl_entry,
        query=query_entry,
        execute_time=EXECUTE_TIME_MS,
    )
