"""
Prometheus metrics for the relay.

Flow/agent counters mirror the in-process counter tables (without the time
bucket label, which would grow without bound). Sink metrics mirror the
drain loop outcomes. Importing this module registers everything with the
global REGISTRY.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram
from loguru import logger

# --- Flow / agent counters ---

FLOW_RECEIVED_TOTAL = Counter(
    "cdc_flow_received_total",
    "Rows received per destination topic and source table",
    ["topic", "table", "from_db"],
)

FLOW_ERROR_TOTAL = Counter(
    "cdc_flow_error_total",
    "Messages that failed delivery per destination topic and source table",
    ["topic", "table", "from_db"],
)

AGENT_RECEIVED_TOTAL = Counter(
    "cdc_agent_received_total",
    "Rows received per relay agent",
    ["agent"],
)

AGENT_ERROR_TOTAL = Counter(
    "cdc_agent_error_total",
    "Messages that failed delivery per relay agent",
    ["agent"],
)

# --- Sink metrics ---

SINK_BATCHES_TOTAL = Counter(
    "cdc_sink_batches_total",
    "Drained batches by outcome",
    ["sink", "outcome"],  # outcome: empty|underflow|complete|rollback
)

SINK_MESSAGES_TOTAL = Counter(
    "cdc_sink_messages_total",
    "Messages sent by outcome",
    ["sink", "status"],  # status: success|failure
)

SINK_SEND_LATENCY = Histogram(
    "cdc_sink_send_latency_seconds",
    "Time from first send to full batch acknowledgment",
    ["sink"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10],
)


class SinkCounter:
    """Per-sink tallies mirrored into the Prometheus metrics above."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.batch_empty = 0
        self.batch_underflow = 0
        self.batch_complete = 0
        self.rollbacks = 0
        self.drain_success = 0
        self.send_failures = 0
        self.running = False

    def start(self) -> None:
        self.running = True
        logger.debug(f"SinkCounter {self.name} started")

    def stop(self) -> None:
        self.running = False
        logger.info(f"SinkCounter {self.name} stopped: {self.snapshot()}")

    def increment_batch_empty(self) -> None:
        self.batch_empty += 1
        SINK_BATCHES_TOTAL.labels(sink=self.name, outcome="empty").inc()

    def increment_batch_underflow(self) -> None:
        self.batch_underflow += 1
        SINK_BATCHES_TOTAL.labels(sink=self.name, outcome="underflow").inc()

    def increment_batch_complete(self) -> None:
        self.batch_complete += 1
        SINK_BATCHES_TOTAL.labels(sink=self.name, outcome="complete").inc()

    def increment_rollback(self) -> None:
        self.rollbacks += 1
        SINK_BATCHES_TOTAL.labels(sink=self.name, outcome="rollback").inc()

    def add_drain_success(self, n: int) -> None:
        self.drain_success += n
        SINK_MESSAGES_TOTAL.labels(sink=self.name, status="success").inc(n)

    def increment_send_failure(self) -> None:
        self.send_failures += 1
        SINK_MESSAGES_TOTAL.labels(sink=self.name, status="failure").inc()

    def observe_send_time(self, seconds: float) -> None:
        SINK_SEND_LATENCY.labels(sink=self.name).observe(seconds)

    def snapshot(self) -> dict[str, int]:
        return {
            "batch_empty": self.batch_empty,
            "batch_underflow": self.batch_underflow,
            "batch_complete": self.batch_complete,
            "rollbacks": self.rollbacks,
            "drain_success": self.drain_success,
            "send_failures": self.send_failures,
        }

    def __repr__(self) -> str:
        return f"SinkCounter({self.name}, {self.snapshot()})"
