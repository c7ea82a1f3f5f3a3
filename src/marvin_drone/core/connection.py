"""The single authenticated link to the control server."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Callable

from marvin_drone.core.backoff import jittered_delays
from marvin_drone.core.errors import ConnectError, LinkClosedError
from marvin_drone.models.enums import ConnectErrorReason, ConnectionState
from marvin_drone.models.events import Frame
from marvin_drone.models.policy import BackoffPolicy
from marvin_drone.transport.base import Link, Transport

logger = logging.getLogger("marvin_drone.connection")

StateListener = Callable[[ConnectionState], None]
FrameHandler = Callable[[Frame], None]


class Connection:
    """Owns the one physical link to the control server.

    The connection opens at most one link at a time. Inbound frames are
    routed to the handler registered for their topic. When the link drops
    a supervisor task reconnects with full-jitter exponential backoff until
    it succeeds or :meth:`close` is called. Every state change is pushed to
    the registered state listeners so channels can rejoin.

    Connect attempts are serialized by a lock, so an explicit
    :meth:`connect` and the reconnect supervisor never race.
    """

    def __init__(
        self,
        url: str,
        secret: str,
        *,
        transport: Transport | None = None,
        connect_timeout: float = 10.0,
        backoff: BackoffPolicy | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if transport is None:
            from marvin_drone.transport.phoenix import PhoenixTransport

            transport = PhoenixTransport()
        self._url = url
        self._secret = secret
        self._transport = transport
        self._connect_timeout = connect_timeout
        self._backoff = backoff or BackoffPolicy()
        self._rng = rng
        self._state = ConnectionState.DISCONNECTED
        self._link: Link | None = None
        self._reader: asyncio.Task[None] | None = None
        self._supervisor: asyncio.Task[None] | None = None
        self._connect_lock = asyncio.Lock()
        self._closed = asyncio.Event()
        self._routes: dict[str, FrameHandler] = {}
        self._listeners: list[StateListener] = []
        self._reconnects = 0

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def closed(self) -> bool:
        """True once :meth:`close` was called. A closed connection never reconnects."""
        return self._closed.is_set()

    @property
    def reconnects(self) -> int:
        return self._reconnects

    # -- Routing and listeners --

    def route(self, topic: str, handler: FrameHandler) -> None:
        """Deliver frames for *topic* to *handler* (called on the reader task)."""
        self._routes[topic] = handler

    def unroute(self, topic: str) -> None:
        self._routes.pop(topic, None)

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        logger.info(
            "Connection %s -> %s",
            previous,
            state,
            extra={"url": self._url, "state": str(state)},
        )
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Error in connection state listener")

    # -- Connect / reconnect --

    async def connect(self, timeout: float | None = None) -> Connection:
        """Open and authenticate the link.

        Raises:
            ConnectError: with reason ``UNREACHABLE``, ``AUTH_REJECTED`` or
                ``TIMEOUT``. The state is then ``FAILED``.
        """
        if self.closed:
            raise ConnectError(ConnectErrorReason.UNREACHABLE, "connection is closed")
        async with self._connect_lock:
            if self._state is not ConnectionState.CONNECTED:
                await self._attempt(timeout or self._connect_timeout)
        return self

    async def reconnect(self) -> None:
        """Retry :meth:`connect` with jittered backoff until connected or closed."""
        async with self._connect_lock:
            delays = jittered_delays(self._backoff, self._rng)
            attempt = 0
            while not self.closed and self._state is not ConnectionState.CONNECTED:
                attempt += 1
                delay = next(delays)
                logger.info(
                    "Reconnecting to %s in %.2fs (attempt %d)",
                    self._url,
                    delay,
                    attempt,
                    extra={"attempt": attempt, "delay": delay},
                )
                if await self._wait_closed(delay):
                    return
                try:
                    await self._attempt(self._connect_timeout)
                except ConnectError as exc:
                    logger.warning(
                        "Reconnect attempt %d failed: %s",
                        attempt,
                        exc,
                        extra={"attempt": attempt, "reason": str(exc.reason)},
                    )
                else:
                    self._reconnects += 1

    async def _attempt(self, timeout: float) -> None:
        self._set_state(ConnectionState.CONNECTING)
        try:
            link = await asyncio.wait_for(
                self._transport.open(self._url, self._secret, timeout), timeout
            )
        except TimeoutError as exc:
            self._set_state(ConnectionState.FAILED)
            raise ConnectError(
                ConnectErrorReason.TIMEOUT, f"no link to {self._url} within {timeout}s"
            ) from exc
        except ConnectError:
            self._set_state(ConnectionState.FAILED)
            raise
        if self.closed:
            await link.close()
            self._set_state(ConnectionState.DISCONNECTED)
            raise ConnectError(ConnectErrorReason.UNREACHABLE, "connection closed while connecting")
        self._link = link
        self._reader = asyncio.create_task(self._read_loop(link), name=f"reader:{self._url}")
        self._set_state(ConnectionState.CONNECTED)

    async def _wait_closed(self, delay: float) -> bool:
        try:
            await asyncio.wait_for(self._closed.wait(), delay)
        except TimeoutError:
            return False
        return True

    # -- Link I/O --

    async def send(self, frame: Frame) -> None:
        """Send *frame* on the current link.

        Raises:
            LinkClosedError: if there is no open link or it drops mid-send.
        """
        link = self._link
        if link is None or self._state is not ConnectionState.CONNECTED:
            raise LinkClosedError(f"not connected to {self._url}")
        await link.send(frame)

    async def _read_loop(self, link: Link) -> None:
        try:
            while True:
                frame = await link.recv()
                handler = self._routes.get(frame.topic)
                if handler is None:
                    logger.debug("Dropping frame for unrouted topic %s", frame.topic)
                    continue
                try:
                    handler(frame)
                except Exception:
                    logger.exception("Error routing %s frame on %s", frame.event, frame.topic)
        except LinkClosedError as exc:
            if link is self._link:
                logger.warning("Link to %s lost: %s", self._url, exc)
        await link.close()
        self._on_link_lost(link)

    def _on_link_lost(self, link: Link) -> None:
        if link is not self._link:
            return
        self._link = None
        self._reader = None
        self._set_state(ConnectionState.DISCONNECTED)
        if not self.closed and (self._supervisor is None or self._supervisor.done()):
            self._supervisor = asyncio.create_task(self.reconnect(), name=f"reconnect:{self._url}")

    # -- Shutdown --

    async def close(self) -> None:
        """Close the link for good. No further reconnects are attempted."""
        self._closed.set()
        supervisor, self._supervisor = self._supervisor, None
        if supervisor is not None:
            supervisor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await supervisor
        link, self._link = self._link, None
        reader, self._reader = self._reader, None
        if link is not None:
            await link.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        self._set_state(ConnectionState.DISCONNECTED)


async def connect(
    url: str,
    secret: str,
    timeout: float = 10.0,
    *,
    transport: Transport | None = None,
    backoff: BackoffPolicy | None = None,
) -> Connection:
    """Create a :class:`Connection` and open it.

    Raises:
        ConnectError: if the first attempt fails.
    """
    connection = Connection(
        url, secret, transport=transport, connect_timeout=timeout, backoff=backoff
    )
    return await connection.connect(timeout)
