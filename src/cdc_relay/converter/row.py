"""
Per-row conversion: one message per mutated row, no transaction batching.
"""

from __future__ import annotations

from loguru import logger

from ..models import (
    META_KEY,
    META_NUM_IN_TRANSACTION,
    Entry,
    EntryType,
    EventType,
    OutboundMessage,
)
from .base import BaseEntryConverter, decode_row_change, decode_transaction_end

ROW_FIELDS = ["db", "table", "ts", "type", "data", "old", "agent", "from_db"]


class RowEntryConverter(BaseEntryConverter):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.number_in_transaction = 0

    def convert(self, entry: Entry) -> list[OutboundMessage]:
        messages: list[OutboundMessage] = []

        if entry.entry_type in (EntryType.TRANSACTIONBEGIN, EntryType.TRANSACTIONEND):
            self.number_in_transaction = 0
            if entry.entry_type == EntryType.TRANSACTIONEND:
                decode_transaction_end(entry)
            return messages

        change = decode_row_change(entry)
        header = entry.header

        if change.event_type == EventType.QUERY:
            self.remember_query(change)
        elif change.is_ddl:
            messages.append(self.sql_message(header, change.sql))
        else:
            echo = self.sql_echo_message(header)
            if echo is not None:
                messages.append(echo)

            for row in change.row_datas:
                record = self.build_record(row, header, change.event_type)
                if record is None:
                    continue
                topic = self.resolve_topic(record.table_qualifier)
                metadata = {
                    self.settings.topic_header: topic,
                    META_NUM_IN_TRANSACTION: str(self.number_in_transaction),
                }
                self.count_row(topic, record.table_qualifier, header, metadata)
                if record.primary_key is not None:
                    metadata[META_KEY] = record.primary_key
                logger.debug(f"RowData pk:{record.primary_key}")

                envelope = record.to_dict()
                envelope["agent"] = self.agent_address
                envelope["from_db"] = self.from_db
                payload = self.encode(envelope, ROW_FIELDS, self.routes.schema_for(topic), metadata)
                messages.append(
                    OutboundMessage(
                        topic=topic,
                        payload=payload,
                        partition_key=record.primary_key,
                        metadata=metadata,
                    )
                )
                self.number_in_transaction += 1
        return messages
