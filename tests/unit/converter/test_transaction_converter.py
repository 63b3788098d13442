"""
Unit tests for transaction-batched entry conversion.
"""

import json
import math

import pytest

from cdc_relay.converter import BaseEntryConverter, TransactionEntryConverter, build_converter
from cdc_relay.counters import AgentCounterKey, FlowCounterKey
from cdc_relay.errors import EntryDecodeError, SchemaBuildError
from cdc_relay.models import (
    FLOW_COUNTER_FROM_DB,
    FLOW_COUNTER_TABLE,
    FLOW_COUNTER_TIME_PERIOD,
    FLOW_COUNTER_TOPIC,
    META_KEY,
    META_SPLIT_ID,
    META_TRANS_ID,
    Column,
    Entry,
    EntryType,
    EventType,
    RowChange,
    RowData,
)

ORDERS_MAP = "db.orders:orders-topic:ordersSchema"


@pytest.fixture
def make_converter(make_settings, cache, counters):
    def _make(**overrides):
        values = {"table_to_topic_map": ORDERS_MAP, "trans_max_split_row_num": 10}
        values.update(overrides)
        return build_converter(make_settings(**values), cache=cache, counters=counters)

    return _make


def _payload(message):
    return json.loads(message.payload.decode("utf-8"))


def test_build_converter_picks_transaction_mode(make_converter):
    assert isinstance(make_converter(), TransactionEntryConverter)


def test_single_transaction_one_message(make_converter, entries):
    conv = make_converter()
    rows = [entries.order_row(i) for i in (1, 2, 3)]

    assert conv.convert(Entry.transaction_begin()) == []
    assert conv.convert(entries.insert(rows)) == []
    assert conv.pending_rows == 3

    messages = conv.convert(Entry.transaction_end("tx-1"))
    assert len(messages) == 1
    msg = messages[0]
    assert msg.topic == "orders-topic"
    assert msg.partition_key == "1"
    assert msg.metadata["topic"] == "orders-topic"
    assert msg.metadata[META_KEY] == "1"
    assert msg.metadata[META_SPLIT_ID] == "0"

    body = _payload(msg)
    assert [r["data"]["id"] for r in body["data"]] == ["1", "2", "3"]
    assert body["split_id"] == "0"
    assert body["agent"] == "10.0.0.1"
    assert body["from_db"] == "db-primary"
    assert conv.pending_rows == 0


def test_batch_is_labelled_with_previous_transaction_id(make_converter, entries):
    conv = make_converter()
    conv.convert(entries.insert([entries.order_row(1)]))
    first = conv.convert(Entry.transaction_end("tx-1"))[0]
    assert first.metadata[META_TRANS_ID] == "<unknown>"

    conv.convert(entries.insert([entries.order_row(2)]))
    second = conv.convert(Entry.transaction_end("tx-2"))[0]
    assert second.metadata[META_TRANS_ID] == "tx-1"
    assert _payload(second)["trans_id"] == "tx-1"


def test_size_split_within_one_transaction(make_converter, entries):
    conv = make_converter(trans_max_split_row_num=2)
    rows = [entries.order_row(i) for i in (1, 2, 3)]

    split = conv.convert(entries.insert(rows))
    assert len(split) == 1
    tail = conv.convert(Entry.transaction_end("tx-1"))
    assert len(tail) == 1

    first, second = split[0], tail[0]
    assert first.metadata[META_SPLIT_ID] == "0"
    assert second.metadata[META_SPLIT_ID] == "1"
    assert len(_payload(first)["data"]) == 2
    assert len(_payload(second)["data"]) == 1
    assert first.metadata[META_TRANS_ID] == second.metadata[META_TRANS_ID]


@pytest.mark.parametrize("total,max_split", [(1, 1), (5, 2), (6, 3), (7, 10), (10, 10), (23, 4)])
def test_message_count_and_contiguous_split_ids(make_converter, entries, total, max_split):
    conv = make_converter(trans_max_split_row_num=max_split)
    messages = []
    for i in range(total):
        messages.extend(conv.convert(entries.insert([entries.order_row(i)])))
    messages.extend(conv.convert(Entry.transaction_end("tx-1")))

    assert len(messages) == math.ceil(total / max_split)
    assert [m.metadata[META_SPLIT_ID] for m in messages] == [str(i) for i in range(len(messages))]
    assert sum(len(_payload(m)["data"]) for m in messages) == total


def test_split_id_resets_at_transaction_end(make_converter, entries):
    conv = make_converter(trans_max_split_row_num=1)
    conv.convert(entries.insert([entries.order_row(1), entries.order_row(2)]))
    conv.convert(Entry.transaction_end("tx-1"))
    assert conv.split_id == 0

    msg = conv.convert(entries.insert([entries.order_row(3)]))[0]
    assert msg.metadata[META_SPLIT_ID] == "0"


def test_ddl_bypasses_batch(make_converter, entries):
    conv = make_converter()
    conv.convert(entries.insert([entries.order_row(1), entries.order_row(2)]))

    messages = conv.convert(entries.ddl("ALTER TABLE db.orders ADD COLUMN x INT"))
    assert len(messages) == 1
    sql = messages[0]
    assert sql.topic == "sql"
    assert sql.metadata["topic"] == "sql"
    body = _payload(sql)
    assert body["sql"] == "ALTER TABLE db.orders ADD COLUMN x INT"
    assert body["table"] == "orders"
    assert body["db"] == "db"
    assert "data" not in body

    # accumulated rows untouched
    assert conv.pending_rows == 2
    batch = conv.convert(Entry.transaction_end("tx-1"))
    assert len(batch) == 1
    assert all("sql" not in row for row in _payload(batch[0])["data"])


def test_query_is_remembered_not_emitted(make_converter, entries):
    conv = make_converter()
    assert conv.convert(entries.query("INSERT INTO orders VALUES (1)")) == []
    assert conv.pending_rows == 0


def test_sql_echo_precedes_rows(make_converter, entries):
    conv = make_converter(sql_echo=True)
    conv.convert(entries.query("INSERT INTO orders VALUES (1)"))
    messages = conv.convert(entries.insert([entries.order_row(1)]))
    assert len(messages) == 1
    assert _payload(messages[0])["sql"] == "INSERT INTO orders VALUES (1)"


def test_no_echo_by_default(make_converter, entries):
    conv = make_converter()
    conv.convert(entries.query("INSERT INTO orders VALUES (1)"))
    assert conv.convert(entries.insert([entries.order_row(1)])) == []


def test_malformed_entry_is_fatal_and_leaves_state(make_converter, entries):
    conv = make_converter()
    conv.convert(entries.insert([entries.order_row(1)]))

    bad = Entry(entry_type=EntryType.ROWDATA, store_value=b"\x00not json")
    with pytest.raises(EntryDecodeError):
        conv.convert(bad)
    assert conv.pending_rows == 1

    bad_end = Entry(entry_type=EntryType.TRANSACTIONEND, store_value=b"{}")
    with pytest.raises(EntryDecodeError):
        conv.convert(bad_end)
    assert conv.pending_rows == 1


def test_field_and_table_filters(make_converter, entries):
    conv = make_converter(table_fields_filter="db.orders:amount;db.audit")
    conv.convert(entries.insert([entries.order_row(1)]))
    conv.convert(entries.insert([entries.order_row(2)], table="db.audit"))
    messages = conv.convert(Entry.transaction_end("tx-1"))

    rows = _payload(messages[0])["data"]
    assert len(rows) == 1
    assert rows[0]["data"] == {"id": "1", "note": None}
    assert "old" not in rows[0]


def test_unmapped_table_goes_to_default_topic(make_converter, entries):
    conv = make_converter(table_to_topic_map="")
    conv.convert(entries.insert([entries.order_row(1)], table="db.users"))
    msg = conv.convert(Entry.transaction_end("tx-1"))[0]
    assert msg.topic == "default-flume-topic"


def test_old_values_included_when_required(make_converter, entries):
    conv = make_converter(old_data_required=True)
    row = RowData(
        before_columns=[Column(name="id", value="1", is_key=True), Column(name="amount", value="1.00")],
        after_columns=[Column(name="id", value="1", is_key=True), Column(name="amount", value="2.00")],
    )
    entry = Entry.row_change(entries.header(), RowChange(event_type=EventType.UPDATE, row_datas=[row]))
    conv.convert(entry)
    record = _payload(conv.convert(Entry.transaction_end("tx-1"))[0])["data"][0]
    assert record["type"] == "UPDATE"
    assert record["old"] == {"id": "1", "amount": "1.00"}
    assert record["data"] == {"id": "1", "amount": "2.00"}
    assert record["ts"] == entries.execute_time // 1000


def test_rows_are_counted_and_keys_stamped(make_converter, entries, counters):
    conv = make_converter()
    conv.convert(entries.insert([entries.order_row(1), entries.order_row(2)]))
    msg = conv.convert(Entry.transaction_end("tx-1"))[0]

    key = FlowCounterKey(
        msg.metadata[FLOW_COUNTER_TOPIC],
        msg.metadata[FLOW_COUNTER_TABLE],
        msg.metadata[FLOW_COUNTER_FROM_DB],
        msg.metadata[FLOW_COUNTER_TIME_PERIOD],
    )
    assert key.topic == "orders-topic"
    assert key.table == "db.orders"
    assert counters.flow.get(key).received == 2
    assert sum(v.received for v in counters.agent.snapshot().values()) == 2


def test_counting_disabled(make_converter, entries, counters):
    conv = make_converter(flow_counter_enabled=False)
    conv.convert(entries.insert([entries.order_row(1)]))
    msg = conv.convert(Entry.transaction_end("tx-1"))[0]
    assert FLOW_COUNTER_TOPIC not in msg.metadata
    assert len(counters.flow) == 0


def test_avro_payload_is_schema_tagged(make_converter, entries, cache):
    conv = make_converter(use_avro=True)
    conv.convert(entries.insert([entries.order_row(7)]))
    msg = conv.convert(Entry.transaction_end("tx-1"))[0]

    assert msg.is_schema_tagged
    assert msg.schema_name == "ordersSchema"
    assert msg.schema_fields == ["data", "trans_id", "split_id", "agent", "from_db"]

    record = cache.decode(msg.schema_fields, msg.schema_name, msg.payload)
    assert record["trans_id"] == "<unknown>"
    assert json.loads(record["data"])[0]["data"]["id"] == "7"



def test_avro_unmapped_table_fails_its_entry(make_converter, entries):
    conv = make_converter(use_avro=True)
    with pytest.raises(SchemaBuildError, match="db.audit"):
        conv.convert(entries.insert([entries.order_row(1)], table="db.audit"))
    assert conv.pending_rows == 0

    # mapped tables keep converting
    conv.convert(entries.insert([entries.order_row(2)]))
    assert len(conv.convert(Entry.transaction_end("tx-1"))) == 1


class RecordingCounters:
    """Counter service that records calls instead of aggregating."""

    def __init__(self):
        self.received = []
        self.errors = []

    def increment(self, key):
        self.received.append(key)

    def increment_error(self, key):
        self.errors.append(key)

    def flow_key(self, topic, table, from_db, when=None):
        return FlowCounterKey(topic, table, from_db, "bucket")

    def agent_key(self, agent_ip, when=None):
        return AgentCounterKey(agent_ip, "bucket")

    def stop(self):
        pass


def test_injected_counter_service(make_settings, cache, entries):
    recording = RecordingCounters()
    conv = build_converter(
        make_settings(table_to_topic_map=ORDERS_MAP), cache=cache, counters=recording
    )
    conv.convert(entries.insert([entries.order_row(1), entries.order_row(2)]))

    flow = FlowCounterKey("orders-topic", "db.orders", "db-primary", "bucket")
    agent = AgentCounterKey("10.0.0.1", "bucket")
    assert recording.received == [flow, agent, flow, agent]
    assert recording.errors == []


def test_base_converter_is_abstract(make_settings, cache):
    with pytest.raises(TypeError):
        BaseEntryConverter(make_settings(), cache)

def test_reset_drops_pending_rows(make_converter, entries):
    conv = make_converter()
    conv.convert(entries.insert([entries.order_row(1)]))
    conv.reset()
    assert conv.convert(Entry.transaction_end("tx-1")) == []
