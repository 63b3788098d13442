"""
Demo script for CdcRelay.

Feeds synthetic order transactions through the relay into an in-process
destination that prints acknowledgments; one table is made to fail so the
error-capture path is visible. No Kafka broker needed.
"""

import asyncio
import random

from loguru import logger

from cdc_relay import CdcRelay, DeliveryReport, Entry, load_settings
from cdc_relay.models import Column, EntryHeader, EventType, RowChange, RowData


class PrintDestination:
    """DestinationClient that acks everything except the 'refunds' topic."""

    def __init__(self):
        self.offset = 0

    def send(self, topic, key, value, partition=None):
        future = asyncio.get_running_loop().create_future()
        self.offset += 1
        if topic == "refunds-topic":
            future.set_exception(RuntimeError("topic authorization failed"))
        else:
            future.set_result(DeliveryReport(topic=topic, partition=partition or 0, offset=self.offset))
        return future

    async def flush(self):
        await asyncio.sleep(0.005)

    async def close(self):
        logger.info(f"PrintDestination closed after {self.offset} sends")


def order_entry(table: str, order_id: int) -> Entry:
    db, _, name = table.partition(".")
    row = RowData(
        after_columns=[
            Column(name="id", value=str(order_id), is_key=True),
            Column(name="amount", value=f"{random.uniform(1, 500):.2f}"),
        ]
    )
    return Entry.row_change(
        EntryHeader(schema_name=db, table_name=name, execute_time=1_700_000_000_000 + order_id),
        RowChange(event_type=EventType.INSERT, row_datas=[row]),
    )


async def main():
    settings = load_settings(
        bootstrap_servers="demo:9092",
        converter_mode="row",
        table_to_topic_map="shop.orders:orders-topic;shop.refunds:refunds-topic",
        send_error_file="demo_send_error.log",
        batch_size=50,
        alert_enabled=False,
    )

    async with CdcRelay(settings, client=PrintDestination()) as relay:
        logger.info("🚀 Starting relay demo - 20 transactions of 25 rows")
        for tx in range(20):
            await relay.submit(Entry.transaction_begin())
            for i in range(25):
                table = "shop.refunds" if i == 0 else "shop.orders"
                await relay.submit(order_entry(table, tx * 100 + i))
            await relay.submit(Entry.transaction_end(f"tx-{tx}"))

            if tx % 5 == 0:
                health = relay.health()
                logger.info(
                    f"Progress: {tx}/20 | "
                    f"Channel: {health.channel_size}/{health.channel_capacity} | "
                    f"Drain alive: {health.drain_alive}"
                )

        logger.info("⏳ Waiting for drain...")

    logger.info(f"✅ Demo complete. Sink: {relay.health().sink}")
    logger.info(f"Captured failures: {relay.sink.error_log.count()} (see {settings.send_error_file})")


if __name__ == "__main__":
    asyncio.run(main())
