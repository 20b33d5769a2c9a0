"""Async change channel bridging store updates to UI consumers.

The store publishes every committed state on the bus; a UI loop consumes
them with ``async for state in bus.changes()``. Consumers only ever need
the latest snapshot, so when the queue is full the oldest pending
snapshot is dropped instead of applying backpressure to the store.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChangeBus(Generic[T]):
    """Bounded queue of state snapshots for async consumers."""

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, item: T) -> None:
        """Queue a snapshot without blocking. Never raises."""
        if self._closed:
            return
        if self._queue.full():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self._dropped += 1
            if self._dropped % 100 == 1:
                logger.debug("ChangeBus full, dropped %d stale snapshot(s)", self._dropped)
        self._queue.put_nowait(item)

    async def changes(self) -> AsyncIterator[T]:
        """Yield snapshots as they arrive. Stops on close()."""
        while not self._closed:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield item

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True
