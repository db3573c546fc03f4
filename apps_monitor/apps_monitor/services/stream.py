"""Bounded in-process result streams.

Producers never block: when the stream is full the oldest entry is dropped.
Consumers that fall behind lose history, never the newest results.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CAPACITY = 128


class ResultStream(Generic[T]):
    """Single-producer-order preserving queue with drop-oldest overflow.

    Parameters
    ----------
    capacity:
        Maximum number of buffered entries.
    name:
        Label used in log messages.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, name: str = "results") -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize=capacity)
        self._name = name
        self.dropped = 0

    @property
    def capacity(self) -> int:
        return self._queue.maxsize

    def __len__(self) -> int:
        return self._queue.qsize()

    def publish(self, item: T) -> None:
        """Append *item*, evicting the oldest entry if the stream is full."""
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.dropped += 1
                if self.dropped == 1 or self.dropped % self.capacity == 0:
                    logger.debug("Stream %s full; dropped %d entries so far", self._name, self.dropped)

    async def get(self) -> T:
        return await self._queue.get()

    def get_nowait(self) -> T:
        return self._queue.get_nowait()

    def drain(self) -> list[T]:
        """Remove and return everything currently buffered."""
        items: list[T] = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items
