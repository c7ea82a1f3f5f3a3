"""Routes inbound channel events to registered handlers."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from marvin_drone.core.channel import ControlChannel
from marvin_drone.models.enums import EventKind, SystemEvent
from marvin_drone.models.events import EventsMissed, InboundEvent

logger = logging.getLogger("marvin_drone.dispatcher")

EventHandler = Callable[[InboundEvent], Awaitable[None]]
OverflowHandler = Callable[[EventsMissed], Awaitable[None]]


class EventDispatcher:
    """Drains a channel's inbound buffer on a background task.

    Events are handed to handlers strictly in the order the buffer yields
    them. System notices and application events have separate handler
    tables keyed by name. Loss reported by the buffer reaches the overflow
    handler as one ``EventsMissed`` in place of the dropped events.

    A handler that raises is logged and skipped; it never stops the loop.
    The task ends when the channel is left and its buffer is drained.

    Example:
        dispatcher = EventDispatcher(channel)

        @dispatcher.on("reboot")
        async def reboot(event: InboundEvent) -> None:
            ...

        @dispatcher.on_overflow
        async def missed(marker: EventsMissed) -> None:
            logger.warning("lost %d events", marker.count)

        dispatcher.start()
    """

    def __init__(
        self,
        channel: ControlChannel,
        *,
        overflow_handler: OverflowHandler | None = None,
    ) -> None:
        self._channel = channel
        self._application: dict[str, EventHandler] = {}
        self._system: dict[str, EventHandler] = {}
        self._overflow_handler = overflow_handler
        self._task: asyncio.Task[None] | None = None
        self.dispatched = 0
        self.unhandled = 0
        self.missed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -- Registration --

    def on(self, name: str, handler: EventHandler | None = None) -> Any:
        """Register a handler for application event *name*.

        Usable directly or as a decorator.
        """
        return self._register(self._application, name, handler)

    def on_system(self, event: SystemEvent | str, handler: EventHandler | None = None) -> Any:
        """Register a handler for a channel lifecycle notice."""
        return self._register(self._system, str(event), handler)

    def on_overflow(self, handler: OverflowHandler) -> OverflowHandler:
        self._overflow_handler = handler
        return handler

    def _register(
        self, table: dict[str, EventHandler], name: str, handler: EventHandler | None
    ) -> Any:
        def decorator(fn: EventHandler) -> EventHandler:
            if name in table:
                logger.warning("Replacing handler for %r", name)
            table[name] = fn
            return fn

        if handler is not None:
            return decorator(handler)
        return decorator

    # -- Lifecycle --

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"dispatcher:{self._channel.topic}")

    async def wait_closed(self, timeout: float | None = None) -> None:
        """Wait for the loop to finish on its own, cancelling it after *timeout*."""
        task = self._task
        if task is None:
            return
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            await self.stop()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        inbound = self._channel.inbound
        while (item := await inbound.get()) is not None:
            await self.dispatch(item)
        logger.info("Dispatcher for %s finished", self._channel.topic)

    # -- Dispatch --

    async def dispatch(self, item: InboundEvent | EventsMissed) -> None:
        match item:
            case EventsMissed(count=count):
                self.missed += count
                if self._overflow_handler is None:
                    logger.warning(
                        "%d inbound events missed on %s (no overflow handler)",
                        count,
                        self._channel.topic,
                    )
                    return
                await self._invoke(self._overflow_handler, item, "overflow")
            case InboundEvent(kind=EventKind.SYSTEM, name=name):
                handler = self._system.get(name)
                if handler is None:
                    logger.debug("No handler for system notice %r", name)
                    return
                await self._invoke(handler, item, name)
            case InboundEvent(kind=EventKind.APPLICATION, name=name):
                handler = self._application.get(name)
                if handler is None:
                    self.unhandled += 1
                    logger.warning(
                        "No handler for event %r on %s, discarding",
                        name,
                        self._channel.topic,
                        extra={"topic": self._channel.topic, "event": name},
                    )
                    return
                await self._invoke(handler, item, name)

    async def _invoke(self, handler: Callable[[Any], Awaitable[None]], item: Any, name: str) -> None:
        try:
            await handler(item)
        except Exception:
            logger.exception("Error in %s handler on %s", name, self._channel.topic)
        else:
            self.dispatched += 1
