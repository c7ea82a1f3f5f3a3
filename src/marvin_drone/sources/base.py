"""Base abstraction for local event sources."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from marvin_drone.models.enums import SourceStatus
from marvin_drone.models.events import LocalEvent, LocalPayload
from marvin_drone.models.health import SourceHealth

logger = logging.getLogger("marvin_drone.sources")


class LocalSource(ABC):
    """A producer of locally observed events.

    A LocalSource exposes its events as a lazy async iterator. Nothing is
    read or probed until the iterator is consumed, and consumption stops as
    soon as the consumer stops iterating.

    Lifecycle:
        1. Create the source with its configuration
        2. Iterate ``events()`` - the source yields one ``LocalEvent`` per
           observation
        3. Iteration ends when the source runs dry (e.g. the tailed file
           was removed) or :meth:`stop` is called
        4. Sources with ``restartable = True`` may be iterated again

    Example:
        class Counter(LocalSource):
            @property
            def source_id(self) -> str:
                return "counter"

            async def events(self) -> AsyncIterator[LocalEvent]:
                for n in range(3):
                    yield LocalEvent(source_id=self.source_id, payload=...)

            async def stop(self) -> None:
                ...
    """

    @property
    @abstractmethod
    def source_id(self) -> str:
        """Unique identifier, e.g. ``tail:/var/log/syslog`` or ``ping:10.0.0.1``."""
        ...

    @abstractmethod
    def events(self) -> AsyncIterator[LocalEvent]:
        """Return the event sequence."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Ask a running ``events()`` iteration to end."""
        ...

    @property
    def restartable(self) -> bool:
        return False

    @property
    def status(self) -> SourceStatus:
        return SourceStatus.STOPPED

    async def healthcheck(self) -> SourceHealth:
        return SourceHealth(source_id=self.source_id, status=self.status)


class BaseLocalSource(LocalSource):
    """Convenience base class with common source functionality.

    Provides:
    - Status tracking
    - Event counting
    - Timestamp tracking
    - Stop signal via asyncio.Event and an interruptible sleep

    Subclasses implement ``_produce()`` yielding bare payloads; this class
    wraps them into ``LocalEvent`` and keeps the bookkeeping.
    """

    def __init__(self) -> None:
        self._status = SourceStatus.STOPPED
        self._started_at: datetime | None = None
        self._last_event_at: datetime | None = None
        self._events_produced = 0
        self._error: str | None = None
        self._stop_event = asyncio.Event()

    @property
    def status(self) -> SourceStatus:
        return self._status

    async def healthcheck(self) -> SourceHealth:
        return SourceHealth(
            source_id=self.source_id,
            status=self._status,
            started_at=self._started_at,
            last_event_at=self._last_event_at,
            events_produced=self._events_produced,
            error=self._error,
        )

    @abstractmethod
    def _produce(self) -> AsyncIterator[LocalPayload]:
        """Yield payloads until exhausted or stopped."""
        ...

    async def events(self) -> AsyncIterator[LocalEvent]:
        self._begin()
        try:
            async for payload in self._produce():
                self._events_produced += 1
                self._last_event_at = datetime.now(UTC)
                yield LocalEvent(source_id=self.source_id, payload=payload)
            self._set_status(SourceStatus.STOPPED if self._should_stop() else SourceStatus.FINISHED)
        except Exception as e:
            self._set_status(SourceStatus.ERROR, str(e))
            raise
        finally:
            if self._status is SourceStatus.RUNNING:
                self._set_status(SourceStatus.STOPPED)

    def _begin(self) -> None:
        if self._status is SourceStatus.RUNNING:
            raise RuntimeError(f"source {self.source_id} is already running")
        if self._started_at is not None and not self.restartable:
            raise RuntimeError(f"source {self.source_id} cannot be restarted")
        self._stop_event.clear()
        self._started_at = datetime.now(UTC)
        self._set_status(SourceStatus.RUNNING)

    def _set_status(self, status: SourceStatus, error: str | None = None) -> None:
        """Update status and optionally set error message."""
        self._status = status
        self._error = error

    async def stop(self) -> None:
        """Signal the source to stop."""
        self._stop_event.set()

    def _should_stop(self) -> bool:
        return self._stop_event.is_set()

    async def _sleep(self, delay: float) -> None:
        """Sleep for *delay* seconds or until stop is requested."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), delay)
