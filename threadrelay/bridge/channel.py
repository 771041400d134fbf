"""Handoff channel -- inject follow-up input into a run that is still streaming.

The orchestrator opens one channel per run and hands it to the agent runtime as
its extra-input source.  Chat messages that arrive while the run is busy are
pushed onto the channel instead of racing the run's consumption loop.

The channel is single-use: once closed it only yields whatever is still
buffered and then ends.  ``drain`` lets teardown recover values that were
pushed but never consumed so they can be re-queued.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Generic, TypeVar

T = TypeVar("T")

_END = object()


class HandoffChannel(Generic[T]):
    """Push / close / drain async queue with a lazy async-iterator consumer."""

    def __init__(self) -> None:
        self._buffer: deque[T] = deque()
        self._waiters: deque[asyncio.Future[object]] = deque()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._buffer)

    def push(self, value: T) -> None:
        """Enqueue *value*, handing it straight to a waiting consumer if any."""
        if self._closed:
            return
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(value)
                return
        self._buffer.append(value)

    def close(self) -> None:
        """Mark the channel terminal and wake every waiter with end-of-stream."""
        if self._closed:
            return
        self._closed = True
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(_END)

    def drain(self) -> list[T]:
        """Remove and return every buffered-but-unconsumed value."""
        items = list(self._buffer)
        self._buffer.clear()
        return items

    # -- Consumer --------------------------------------------------------------

    def __aiter__(self) -> HandoffChannel[T]:
        return self

    async def __anext__(self) -> T:
        if self._buffer:
            return self._buffer.popleft()
        if self._closed:
            raise StopAsyncIteration

        waiter: asyncio.Future[object] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            value = await waiter
        except asyncio.CancelledError:
            # A cancelled consumer must not swallow a value handed to it.
            if waiter in self._waiters:
                self._waiters.remove(waiter)
            elif waiter.done() and not waiter.cancelled() and waiter.result() is not _END:
                self._buffer.appendleft(waiter.result())  # type: ignore[arg-type]
            raise
        if value is _END:
            raise StopAsyncIteration
        return value  # type: ignore[return-value]
