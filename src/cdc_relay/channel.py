from __future__ import annotations

import asyncio
from collections import deque
from typing import Awaitable, Callable, Generic, Iterable, Literal, Optional, Protocol, TypeVar

from loguru import logger

from .errors import ChannelError

T = TypeVar("T")
OverflowStrategy = Literal["block", "error"]
BackpressureCallback = Callable[[], Awaitable[None]]


class ChannelTransaction(Protocol[T]):
    async def begin(self) -> None: ...

    async def take(self) -> Optional[T]: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...

    def close(self) -> None: ...


class Channel(Protocol[T]):
    """Transactional source the sink drains from."""

    def transaction(self) -> ChannelTransaction[T]: ...


class MemoryChannel(Generic[T]):
    """Bounded in-memory channel with transactional takes and watermarks.

    Items taken inside a transaction keep occupying capacity until commit;
    rollback puts them back at the head in their original order so the next
    transaction sees them first.
    """

    def __init__(
        self,
        capacity: int,
        high_watermark: int | None = None,
        low_watermark: int | None = None,
        *,
        overflow_strategy: OverflowStrategy = "block",
        on_high: Optional[BackpressureCallback] = None,
        on_low: Optional[BackpressureCallback] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self._capacity = capacity
        self._items: deque[T] = deque()
        self._reserved = 0  # taken, not yet committed

        self._high_wm = (
            high_watermark if high_watermark is not None else max(1, int(0.8 * capacity))
        )
        self._low_wm = low_watermark if low_watermark is not None else int(0.5 * capacity)
        self._overflow = overflow_strategy
        self._on_high = on_high
        self._on_low = on_low
        self._high_fired = False

        self._cond = asyncio.Condition()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        """Queued items, excluding those reserved by open transactions."""
        return len(self._items)

    @property
    def occupied(self) -> int:
        return len(self._items) + self._reserved

    async def put(self, item: T) -> None:
        """Put item according to overflow policy; emits high watermark once."""
        async with self._cond:
            if self.occupied >= self._capacity:
                if self._overflow == "error":
                    raise ChannelError("MemoryChannel is full")
                await self._cond.wait_for(lambda: self.occupied < self._capacity)
            self._items.append(item)
        await self._maybe_signal_high()

    async def put_many(self, items: Iterable[T]) -> None:
        for item in items:
            await self.put(item)

    def transaction(self) -> "MemoryTransaction[T]":
        return MemoryTransaction(self)

    # --------------------------- transaction support

    async def _take(self) -> Optional[T]:
        async with self._cond:
            if not self._items:
                return None
            self._reserved += 1
            return self._items.popleft()

    async def _commit(self, n: int) -> None:
        async with self._cond:
            self._reserved -= n
            self._cond.notify_all()
        await self._maybe_signal_low()

    async def _rollback(self, taken: list[T]) -> None:
        async with self._cond:
            self._reserved -= len(taken)
            self._items.extendleft(reversed(taken))
            self._cond.notify_all()

    def _restore_nowait(self, taken: list[T]) -> None:
        self._reserved -= len(taken)
        self._items.extendleft(reversed(taken))

    async def _maybe_signal_high(self) -> None:
        if not self._high_fired and self.occupied >= self._high_wm:
            self._high_fired = True
            if self._on_high:
                await self._on_high()

    async def _maybe_signal_low(self) -> None:
        if self._high_fired and self.occupied <= self._low_wm:
            self._high_fired = False
            if self._on_low:
                await self._on_low()


class MemoryTransaction(Generic[T]):
    def __init__(self, channel: MemoryChannel[T]):
        self._channel = channel
        self._taken: list[T] = []
        self._open = False
        self._closed = False

    async def begin(self) -> None:
        if self._open or self._closed:
            raise ChannelError("transaction already begun")
        self._open = True

    async def take(self) -> Optional[T]:
        self._check_open("take")
        item = await self._channel._take()
        if item is not None:
            self._taken.append(item)
        return item

    async def commit(self) -> None:
        self._check_open("commit")
        n = len(self._taken)
        self._taken = []
        self._open = False
        await self._channel._commit(n)

    async def rollback(self) -> None:
        self._check_open("rollback")
        taken, self._taken = self._taken, []
        self._open = False
        await self._channel._rollback(taken)

    def close(self) -> None:
        """Close the transaction; one still open is rolled back in place."""
        if self._open:
            logger.warning(f"transaction closed while open, restoring {len(self._taken)} items")
            taken, self._taken = self._taken, []
            self._open = False
            self._channel._restore_nowait(taken)
        self._closed = True

    def _check_open(self, op: str) -> None:
        if not self._open:
            raise ChannelError(f"{op} outside of an open transaction")
