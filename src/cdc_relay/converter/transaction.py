"""
Transaction-batched conversion.

Rows are accumulated between transaction-end markers and flushed as one
message per transaction, split into sub-batches of at most
``trans_max_split_row_num`` rows. Not safe to share across threads: one
converter per upstream stream.
"""

from __future__ import annotations

from typing import Optional

from loguru import logger

from ..models import (
    META_AGENT,
    META_FROM,
    META_KEY,
    META_SPLIT_ID,
    META_TRANS_ID,
    Entry,
    EntryType,
    EventType,
    OutboundMessage,
    RowChangeRecord,
)
from .base import BaseEntryConverter, decode_row_change, decode_transaction_end

META_FIELDS = ["data", "trans_id", "split_id", "agent", "from_db"]
UNKNOWN_TRANS_ID = "<unknown>"


class TransactionEntryConverter(BaseEntryConverter):
    """ACCUMULATING state machine over transaction boundaries.

    The id stamped on a batch is that of the *previous* transaction end:
    the in-progress transaction's id is not known until its end marker
    arrives. It only needs to be unique, not exact.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.max_split_rows = self.settings.trans_max_split_row_num
        self.batch: list[RowChangeRecord] = []
        self.trans_id = UNKNOWN_TRANS_ID
        self.split_id = 0
        self._batch_meta: dict[str, str] = {}

    def convert(self, entry: Entry) -> list[OutboundMessage]:
        messages: list[OutboundMessage] = []
        # TRANSACTIONBEGIN carries nothing we need
        if entry.entry_type == EntryType.TRANSACTIONEND:
            self._handle_transaction_end(entry, messages)
        elif entry.entry_type == EntryType.ROWDATA:
            self._handle_row_data(entry, messages)
        return messages

    def _handle_transaction_end(self, entry: Entry, messages: list[OutboundMessage]) -> None:
        end = decode_transaction_end(entry)
        if self.batch:
            messages.append(self._flush())

        self.trans_id = end.transaction_id
        self.split_id = 0
        logger.debug(f"TRANSACTIONEND transId={self.trans_id}")

    def _handle_row_data(self, entry: Entry, messages: list[OutboundMessage]) -> None:
        change = decode_row_change(entry)
        header = entry.header

        if change.event_type == EventType.QUERY:
            self.remember_query(change)
            return
        if change.is_ddl:
            messages.append(self.sql_message(header, change.sql))
            return

        echo = self.sql_echo_message(header)
        if echo is not None:
            messages.append(echo)

        for row in change.row_datas:
            record = self.build_record(row, header, change.event_type)
            if record is not None:
                topic = self.resolve_topic(record.table_qualifier)
                self.batch.append(record)
                self.count_row(topic, record.table_qualifier, header, self._batch_meta)

            if len(self.batch) >= self.max_split_rows:
                messages.append(self._flush())
                self.split_id += 1

    def _flush(self) -> OutboundMessage:
        first = self.batch[0]
        topic = self.resolve_topic(first.table_qualifier)

        envelope = {
            "data": [r.to_dict() for r in self.batch],
            "trans_id": self.trans_id,
            "split_id": str(self.split_id),
            "agent": self.agent_address,
            "from_db": self.from_db,
        }
        metadata = {
            self.settings.topic_header: topic,
            META_TRANS_ID: self.trans_id,
            META_SPLIT_ID: str(self.split_id),
            META_AGENT: self.agent_address,
            META_FROM: self.from_db,
        }
        metadata.update(self._batch_meta)
        key = self._partition_key(first)
        if key is not None:
            metadata[META_KEY] = key

        payload = self.encode(envelope, META_FIELDS, self.routes.schema_for(topic), metadata)
        logger.debug(
            f"batch flushed: topic={topic} trans_id={self.trans_id} "
            f"split_id={self.split_id} rows={len(self.batch)}"
        )
        self.batch = []
        self._batch_meta = {}
        return OutboundMessage(topic=topic, payload=payload, partition_key=key, metadata=metadata)

    @staticmethod
    def _partition_key(first: RowChangeRecord) -> Optional[str]:
        # a batch may span tables; the first row's key is advisory only
        return first.primary_key

    @property
    def pending_rows(self) -> int:
        return len(self.batch)

    def reset(self) -> None:
        """Drop the accumulated batch (e.g. after an upstream rollback)."""
        self.batch = []
        self._batch_meta = {}
        self.split_id = 0
