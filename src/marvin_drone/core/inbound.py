"""Bounded inbound event buffer with loss accounting."""

from __future__ import annotations

import asyncio
import logging
from collections import deque

from marvin_drone.models.events import EventsMissed, InboundEvent

logger = logging.getLogger("marvin_drone.inbound")


class InboundBuffer:
    """FIFO between a channel and its dispatcher.

    When full, the oldest buffered event is dropped to make room. Dropped
    events are counted, and the next :meth:`get` returns a single
    ``EventsMissed`` marker carrying the count before any surviving event,
    which is exactly where the dropped events would have been delivered.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self._maxsize = maxsize
        self._items: deque[InboundEvent] = deque()
        self._ready = asyncio.Event()
        self._closed = False
        self._missed = 0
        self._last_dropped = 0
        self.total_missed = 0

    def __len__(self) -> int:
        return len(self._items)

    @property
    def maxsize(self) -> int:
        return self._maxsize

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event: InboundEvent) -> bool:
        """Append *event*. Returns False if the buffer is closed."""
        if self._closed:
            return False
        if len(self._items) >= self._maxsize:
            dropped = self._items.popleft()
            self._missed += 1
            self._last_dropped = dropped.sequence
            self.total_missed += 1
            if self._missed == 1:
                logger.warning("Inbound buffer full (%d), dropping oldest events", self._maxsize)
        self._items.append(event)
        self._ready.set()
        return True

    async def get(self) -> InboundEvent | EventsMissed | None:
        """Next item in order, or None once closed and drained."""
        while True:
            if self._missed:
                marker = EventsMissed(count=self._missed, last_sequence=self._last_dropped)
                self._missed = 0
                return marker
            if self._items:
                return self._items.popleft()
            if self._closed:
                return None
            self._ready.clear()
            await self._ready.wait()

    def close(self) -> None:
        """Stop accepting events. Buffered events are still handed out."""
        self._closed = True
        self._ready.set()
