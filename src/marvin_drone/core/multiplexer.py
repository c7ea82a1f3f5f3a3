"""Merges local sources into the single outbound channel."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field

from marvin_drone.core.channel import ControlChannel
from marvin_drone.core.errors import CallError, NotJoinedError
from marvin_drone.core.retry import retry_with_backoff
from marvin_drone.models.enums import CallErrorReason, DeliveryMode
from marvin_drone.models.events import LocalEvent, OutboundMessage
from marvin_drone.models.health import MultiplexerStats
from marvin_drone.models.policy import RetryPolicy
from marvin_drone.sources.base import LocalSource

logger = logging.getLogger("marvin_drone.multiplexer")

# Pause before re-checking membership after a send hit a dead link.
_RESEND_PAUSE = 0.1


@dataclass
class _Pending:
    seq: int
    event: LocalEvent


@dataclass
class _Registration:
    source: LocalSource
    critical: bool
    queue: deque[_Pending] = field(default_factory=deque)
    task: asyncio.Task[None] | None = None
    done: bool = False


class UplinkMultiplexer:
    """Publishes events from many local sources on one channel.

    Each registered source gets its own listener task that appends to a
    per-source buffer of at most *buffer_size* events. When a buffer is full
    the oldest event is dropped and counted. A single publisher task takes
    the oldest buffered event across all sources and sends it, but only
    while the channel is joined; otherwise it waits for the next join.
    Per-source order is therefore preserved while order across sources is
    arrival order at best.

    Regular sources are published fire-and-forget. Sources registered with
    ``critical=True`` use request/reply with *call_timeout* and are retried
    according to *retry_policy*.

    A source that finishes or crashes is unregistered once its buffer is
    flushed; other sources are unaffected.
    """

    def __init__(
        self,
        channel: ControlChannel,
        *,
        hostname: str,
        buffer_size: int = 100,
        call_timeout: float = 5.0,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        self._channel = channel
        self._hostname = hostname
        self._buffer_size = buffer_size
        self._call_timeout = call_timeout
        self._retry_policy = retry_policy or RetryPolicy()
        self._registrations: dict[str, _Registration] = {}
        self._dropped: dict[str, int] = {}
        self._seq = itertools.count()
        self._wakeup = asyncio.Event()
        self._closing = asyncio.Event()
        self._accepting = True
        self._publisher: asyncio.Task[None] | None = None
        self.published = 0
        self.failed = 0

    @property
    def sources(self) -> list[str]:
        return list(self._registrations)

    @property
    def pending(self) -> int:
        return sum(len(reg.queue) for reg in self._registrations.values())

    def stats(self) -> MultiplexerStats:
        return MultiplexerStats(
            published=self.published,
            failed=self.failed,
            pending=self.pending,
            dropped=dict(self._dropped),
            sources=self.sources,
        )

    # -- Registration --

    def register(self, source: LocalSource, *, critical: bool = False) -> None:
        """Start listening to *source*.

        Raises:
            RuntimeError: if the multiplexer is stopping.
            ValueError: if a source with the same id is registered.
        """
        if not self._accepting:
            raise RuntimeError("multiplexer is stopping")
        source_id = source.source_id
        if source_id in self._registrations:
            raise ValueError(f"source {source_id} is already registered")
        reg = _Registration(source=source, critical=critical)
        self._registrations[source_id] = reg
        self._dropped.setdefault(source_id, 0)
        reg.task = asyncio.create_task(self._listen(reg), name=f"source:{source_id}")
        logger.info(
            "Registered source %s%s",
            source_id,
            " (critical)" if critical else "",
            extra={"source_id": source_id},
        )

    async def unregister(self, source_id: str) -> None:
        """Stop *source_id* and discard whatever it still has buffered."""
        reg = self._registrations.pop(source_id, None)
        if reg is None:
            return
        await self._stop_listener(reg)
        if reg.queue:
            logger.info("Discarding %d buffered events from %s", len(reg.queue), source_id)
        logger.info("Unregistered source %s", source_id, extra={"source_id": source_id})

    async def _stop_listener(self, reg: _Registration) -> None:
        await reg.source.stop()
        task, reg.task = reg.task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        reg.done = True

    async def _listen(self, reg: _Registration) -> None:
        source_id = reg.source.source_id
        try:
            async for event in reg.source.events():
                self._enqueue(reg, event)
        except Exception:
            logger.exception("Source %s crashed", source_id, extra={"source_id": source_id})
        else:
            logger.info("Source %s finished", source_id, extra={"source_id": source_id})
        finally:
            reg.done = True
            self._wakeup.set()

    def _enqueue(self, reg: _Registration, event: LocalEvent) -> None:
        if not self._accepting:
            return
        source_id = reg.source.source_id
        if len(reg.queue) >= self._buffer_size:
            reg.queue.popleft()
            dropped = self._dropped[source_id] = self._dropped[source_id] + 1
            if dropped == 1 or dropped % self._buffer_size == 0:
                logger.warning(
                    "Uplink buffer for %s full, dropped %d events so far",
                    source_id,
                    dropped,
                    extra={"source_id": source_id, "dropped": dropped},
                )
        reg.queue.append(_Pending(seq=next(self._seq), event=event))
        self._wakeup.set()

    # -- Lifecycle --

    def start(self) -> None:
        if self._publisher is not None and not self._publisher.done():
            return
        self._publisher = asyncio.create_task(
            self._publish_loop(), name=f"uplink:{self._channel.topic}"
        )

    async def stop(self, timeout: float = 5.0) -> None:
        """Stop accepting events and flush what is buffered for up to *timeout*.

        Flushing only happens while the channel is joined. Events still
        buffered afterwards are discarded.
        """
        self._accepting = False
        for reg in list(self._registrations.values()):
            await self._stop_listener(reg)
        self._closing.set()
        self._wakeup.set()

        publisher, self._publisher = self._publisher, None
        if publisher is not None:
            done, _ = await asyncio.wait({publisher}, timeout=timeout)
            if not done:
                publisher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await publisher
        if self.pending:
            logger.warning("Discarding %d unsent uplink events at shutdown", self.pending)
        self._registrations.clear()

    # -- Publishing --

    def _next_ready(self) -> _Registration | None:
        """Registration holding the oldest buffered event, pruning finished ones."""
        best: _Registration | None = None
        for source_id, reg in list(self._registrations.items()):
            if not reg.queue:
                if reg.done and self._accepting:
                    del self._registrations[source_id]
                    logger.info("Unregistered finished source %s", source_id)
                continue
            if best is None or reg.queue[0].seq < best.queue[0].seq:
                best = reg
        return best

    async def _publish_loop(self) -> None:
        while True:
            reg = self._next_ready()
            if reg is None:
                if self._closing.is_set():
                    return
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            if not self._channel.is_joined:
                if self._closing.is_set():
                    return
                await self._wait_joined_or_closing()
                continue

            head = reg.queue[0]
            try:
                await self._send(reg, head)
            except NotJoinedError:
                continue
            except CallError as exc:
                if exc.reason is CallErrorReason.CONNECTION_LOST:
                    # Kept at the head; resent after the next join.
                    await asyncio.sleep(_RESEND_PAUSE)
                    continue
                self.failed += 1
                logger.warning(
                    "Uplink event from %s failed: %s",
                    reg.source.source_id,
                    exc,
                    extra={"source_id": reg.source.source_id, "reason": str(exc.reason)},
                )
            else:
                self.published += 1

            if reg.queue and reg.queue[0] is head:
                reg.queue.popleft()

    async def _wait_joined_or_closing(self) -> None:
        joined = asyncio.ensure_future(self._channel.wait_joined())
        closing = asyncio.ensure_future(self._closing.wait())
        try:
            await asyncio.wait({joined, closing}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            joined.cancel()
            closing.cancel()

    async def _send(self, reg: _Registration, pending: _Pending) -> None:
        event = pending.event
        message = OutboundMessage(
            topic=self._channel.topic,
            event=event.event_name,
            payload=event.to_payload(self._hostname),
        )
        if not reg.critical:
            await self._channel.send(message)
            return
        message = message.model_copy(
            update={
                "delivery": DeliveryMode.REQUEST_REPLY,
                "timeout": self._call_timeout,
            }
        )
        await retry_with_backoff(
            self._channel.send, self._retry_policy, message, retry_on=(CallError,)
        )
