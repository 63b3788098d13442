"""
Flow and agent counter tables.

Two independent aggregation tables keyed by compound value keys. Counts are
monotonic, created lazily on first touch and never evicted: the key space
(topic x table x source x time bucket) is bounded in practice, and callers
picking a fine-grained bucket own the memory cost.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, Optional, Protocol, TypeVar

from loguru import logger

from .metrics import (
    AGENT_ERROR_TOTAL,
    AGENT_RECEIVED_TOTAL,
    FLOW_ERROR_TOTAL,
    FLOW_RECEIVED_TOTAL,
)

DEFAULT_TIME_FORMAT = "%Y-%m-%d %H:%M"


@dataclass(frozen=True)
class FlowCounterKey:
    topic: str
    table: str
    from_db: str
    time_period: str


@dataclass(frozen=True)
class AgentCounterKey:
    agent_ip: str
    minute_key: str


@dataclass(frozen=True)
class CounterValue:
    received: int = 0
    errors: int = 0


K = TypeVar("K")


class CounterTable(Generic[K]):
    """Lock-protected map of key → [received, errors]."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._counts: dict[K, list[int]] = {}
        self._lock = threading.Lock()

    def increment(self, key: K, n: int = 1) -> None:
        with self._lock:
            self._counts.setdefault(key, [0, 0])[0] += n
        self._on_received(key, n)

    def increment_error(self, key: K, n: int = 1) -> None:
        with self._lock:
            self._counts.setdefault(key, [0, 0])[1] += n
        self._on_error(key, n)

    def get(self, key: K) -> CounterValue:
        with self._lock:
            received, errors = self._counts.get(key, (0, 0))
        return CounterValue(received=received, errors=errors)

    def snapshot(self) -> dict[K, CounterValue]:
        with self._lock:
            return {k: CounterValue(v[0], v[1]) for k, v in self._counts.items()}

    def __len__(self) -> int:
        return len(self._counts)

    def _on_received(self, key: K, n: int) -> None:
        pass

    def _on_error(self, key: K, n: int) -> None:
        pass


class FlowCounter(CounterTable[FlowCounterKey]):
    def __init__(self) -> None:
        super().__init__("flow")

    def _on_received(self, key: FlowCounterKey, n: int) -> None:
        FLOW_RECEIVED_TOTAL.labels(topic=key.topic, table=key.table, from_db=key.from_db).inc(n)

    def _on_error(self, key: FlowCounterKey, n: int) -> None:
        FLOW_ERROR_TOTAL.labels(topic=key.topic, table=key.table, from_db=key.from_db).inc(n)


class AgentCounter(CounterTable[AgentCounterKey]):
    def __init__(self) -> None:
        super().__init__("agent")

    def _on_received(self, key: AgentCounterKey, n: int) -> None:
        AGENT_RECEIVED_TOTAL.labels(agent=key.agent_ip).inc(n)

    def _on_error(self, key: AgentCounterKey, n: int) -> None:
        AGENT_ERROR_TOTAL.labels(agent=key.agent_ip).inc(n)


class CounterService(Protocol):
    """What converters and sinks need from the shared counters."""

    def increment(self, key: FlowCounterKey | AgentCounterKey) -> None: ...

    def increment_error(self, key: FlowCounterKey | AgentCounterKey) -> None: ...

    def flow_key(
        self, topic: str, table: str, from_db: str, when: Optional[datetime] = None
    ) -> FlowCounterKey: ...

    def agent_key(self, agent_ip: str, when: Optional[datetime] = None) -> AgentCounterKey: ...

    def stop(self) -> None: ...


class Counters:
    """Flow + agent tables behind one injectable service.

    Built once per process and handed to every converter and sink instance.

    Example:
        counters = Counters()
        counters.increment(FlowCounterKey("t", "db.a", "10.0.0.1", "2024-01-01 10:00"))
        counters.flow.get(key).received  # 1
    """

    def __init__(self, time_format: str = DEFAULT_TIME_FORMAT) -> None:
        self.flow = FlowCounter()
        self.agent = AgentCounter()
        self.time_format = time_format
        self._stopped = False

    def _table(self, key: FlowCounterKey | AgentCounterKey) -> CounterTable:
        if isinstance(key, FlowCounterKey):
            return self.flow
        if isinstance(key, AgentCounterKey):
            return self.agent
        raise TypeError(f"unsupported counter key: {key!r}")

    def increment(self, key: FlowCounterKey | AgentCounterKey) -> None:
        self._table(key).increment(key)

    def increment_error(self, key: FlowCounterKey | AgentCounterKey) -> None:
        self._table(key).increment_error(key)

    def time_bucket(self, when: Optional[datetime] = None) -> str:
        return (when or datetime.now()).strftime(self.time_format)

    def flow_key(
        self, topic: str, table: str, from_db: str, when: Optional[datetime] = None
    ) -> FlowCounterKey:
        return FlowCounterKey(topic, table, from_db, self.time_bucket(when))

    def agent_key(self, agent_ip: str, when: Optional[datetime] = None) -> AgentCounterKey:
        return AgentCounterKey(agent_ip, self.time_bucket(when))

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        logger.info(f"Counters stopped: flow_keys={len(self.flow)} agent_keys={len(self.agent)}")
