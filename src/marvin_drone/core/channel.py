"""Topic membership with publish and request/reply primitives."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from typing import Any

from marvin_drone.core.backoff import jittered_delays
from marvin_drone.core.connection import Connection
from marvin_drone.core.errors import CallError, JoinError, LinkClosedError, NotJoinedError
from marvin_drone.core.inbound import InboundBuffer
from marvin_drone.models.enums import (
    CallErrorReason,
    ChannelState,
    ConnectionState,
    DeliveryMode,
    EventKind,
    JoinErrorReason,
    SystemEvent,
)
from marvin_drone.models.events import Frame, InboundEvent, OutboundMessage
from marvin_drone.models.policy import BackoffPolicy
from marvin_drone.transport.base import (
    CLOSE_EVENT,
    ERROR_EVENT,
    JOIN_EVENT,
    LEAVE_EVENT,
    REPLY_EVENT,
)

logger = logging.getLogger("marvin_drone.channel")


class ControlChannel:
    """Membership in one topic over a :class:`Connection`.

    ``publish`` and ``call`` only work while the channel is ``JOINED``;
    otherwise they raise ``NotJoinedError`` at once and nothing is queued.
    After the connection comes back from a loss, or the server reports the
    channel errored, the channel rejoins on its own (with backoff between
    failed attempts) as long as :meth:`join` was called and :meth:`leave`
    was not.

    Correlation ids (``ref``) come from a per-channel counter. Replies are
    matched by ref and frames stamped with an older ``join_ref`` are
    ignored. Inbound application events and lifecycle notices are pushed
    to :attr:`inbound` in arrival order.
    """

    def __init__(
        self,
        connection: Connection,
        topic: str,
        *,
        params: dict[str, Any] | None = None,
        join_timeout: float = 15.0,
        inbound_buffer_size: int = 1000,
        rejoin_backoff: BackoffPolicy | None = None,
    ) -> None:
        self._connection = connection
        self._topic = topic
        self._params = params or {}
        self._join_timeout = join_timeout
        self._rejoin_backoff = rejoin_backoff or BackoffPolicy()
        self._state = ChannelState.IDLE
        self._joined = asyncio.Event()
        self._join_lock = asyncio.Lock()
        self._refs = itertools.count(1)
        self._sequence = itertools.count(1)
        self._join_ref: str | None = None
        self._join_response: dict[str, Any] = {}
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._calls: set[asyncio.Future[dict[str, Any]]] = set()
        self._inbound = InboundBuffer(inbound_buffer_size)
        self._rejoin_task: asyncio.Task[None] | None = None
        self._wants_membership = False
        self._ever_joined = False
        self.rejoins = 0
        connection.route(topic, self._handle_frame)
        connection.add_state_listener(self._on_connection_state)

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_joined(self) -> bool:
        return self._state is ChannelState.JOINED

    @property
    def inbound(self) -> InboundBuffer:
        return self._inbound

    @property
    def in_flight(self) -> int:
        """Number of calls still waiting for a reply."""
        return len(self._calls)

    async def wait_joined(self) -> None:
        """Block until the channel is joined."""
        await self._joined.wait()

    def _set_state(self, state: ChannelState) -> None:
        if state is self._state:
            return
        logger.info(
            "Channel %s: %s -> %s",
            self._topic,
            self._state,
            state,
            extra={"topic": self._topic, "state": str(state)},
        )
        self._state = state
        if state is ChannelState.JOINED:
            self._joined.set()
        else:
            self._joined.clear()

    def _next_ref(self) -> str:
        return str(next(self._refs))

    # -- Join / leave --

    async def join(self, timeout: float | None = None) -> dict[str, Any]:
        """Join the topic and keep rejoining after losses until :meth:`leave`.

        Returns:
            The server's join response.

        Raises:
            JoinError: ``TIMEOUT``, ``REJECTED`` or ``CONNECTION_LOST``.
        """
        if self._state is ChannelState.LEFT:
            raise JoinError(JoinErrorReason.REJECTED, f"channel {self._topic} was left")
        self._wants_membership = True
        return await self._join(timeout or self._join_timeout)

    async def _join(self, timeout: float) -> dict[str, Any]:
        async with self._join_lock:
            if self._state is ChannelState.JOINED:
                return self._join_response
            if not self._connection.is_connected:
                self._set_state(ChannelState.ERRORED)
                raise JoinError(JoinErrorReason.CONNECTION_LOST, "connection is not up")

            ref = self._next_ref()
            self._join_ref = ref
            future = asyncio.get_running_loop().create_future()
            self._pending[ref] = future
            self._set_state(ChannelState.JOINING)
            frame = Frame(join_ref=ref, ref=ref, topic=self._topic, event=JOIN_EVENT, payload=self._params)
            try:
                reply = await asyncio.wait_for(self._roundtrip(frame, future), timeout)
            except TimeoutError:
                self._set_state(ChannelState.ERRORED)
                raise JoinError(
                    JoinErrorReason.TIMEOUT, f"join {self._topic} timed out after {timeout}s"
                ) from None
            except (LinkClosedError, CallError) as exc:
                self._set_state(ChannelState.ERRORED)
                raise JoinError(JoinErrorReason.CONNECTION_LOST, str(exc)) from exc
            finally:
                self._pending.pop(ref, None)

            if reply.get("status") != "ok":
                self._set_state(ChannelState.ERRORED)
                raise JoinError(
                    JoinErrorReason.REJECTED,
                    f"join {self._topic} rejected: {reply.get('response')}",
                )

            self._join_response = reply.get("response") or {}
            self._set_state(ChannelState.JOINED)
            notice = SystemEvent.REJOINED if self._ever_joined else SystemEvent.JOINED
            if self._ever_joined:
                self.rejoins += 1
            self._ever_joined = True
            self._notify(notice, self._join_response)
            return self._join_response

    async def leave(self, timeout: float = 5.0) -> None:
        """Leave the topic, best effort.

        Local subscription state is released whether or not the server
        acknowledges the leave.
        """
        self._wants_membership = False
        rejoin, self._rejoin_task = self._rejoin_task, None
        if rejoin is not None and rejoin is not asyncio.current_task():
            rejoin.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await rejoin

        if self._state is ChannelState.JOINED and self._connection.is_connected:
            ref = self._next_ref()
            future = asyncio.get_running_loop().create_future()
            self._pending[ref] = future
            frame = Frame(join_ref=self._join_ref, ref=ref, topic=self._topic, event=LEAVE_EVENT)
            try:
                await asyncio.wait_for(self._roundtrip(frame, future), timeout)
            except (TimeoutError, LinkClosedError, CallError) as exc:
                logger.info("Leave of %s not acknowledged: %s", self._topic, str(exc) or "timeout")
            finally:
                self._pending.pop(ref, None)
        self._release()

    def _release(self) -> None:
        if self._state is ChannelState.LEFT:
            return
        self._set_state(ChannelState.LEFT)
        self._fail_pending(CallErrorReason.CONNECTION_LOST, f"channel {self._topic} left")
        self._notify(SystemEvent.CLOSED, {})
        self._inbound.close()
        self._connection.unroute(self._topic)
        self._connection.remove_state_listener(self._on_connection_state)

    # -- Outbound --

    def _ensure_joined(self) -> None:
        if self._state is not ChannelState.JOINED:
            raise NotJoinedError(f"channel {self._topic} is {self._state}")

    async def publish(self, event: str, payload: dict[str, Any] | None = None) -> None:
        """Fire and forget. Returns once the transport accepted the frame.

        Raises:
            NotJoinedError: if the channel is not joined.
            CallError: ``CONNECTION_LOST`` if the link dropped. Not retried.
        """
        self._ensure_joined()
        frame = Frame(
            join_ref=self._join_ref,
            ref=self._next_ref(),
            topic=self._topic,
            event=event,
            payload=payload or {},
        )
        try:
            await self._connection.send(frame)
        except LinkClosedError as exc:
            raise CallError(CallErrorReason.CONNECTION_LOST, str(exc)) from exc

    async def call(
        self, event: str, payload: dict[str, Any] | None = None, timeout: float = 5.0
    ) -> dict[str, Any]:
        """Send *event* and wait for its correlated reply.

        Concurrent calls are independent and may complete in any order.

        Returns:
            The ``response`` part of an ``ok`` reply.

        Raises:
            NotJoinedError: if the channel is not joined.
            CallError: ``TIMEOUT`` when no reply arrives within *timeout*,
                ``CONNECTION_LOST`` when the link or membership is lost
                first, ``REJECTED`` when the server replies with an error.
        """
        self._ensure_joined()
        return await self._call(self._next_ref(), event, payload, timeout)

    async def _call(
        self, ref: str, event: str, payload: dict[str, Any] | None, timeout: float
    ) -> dict[str, Any]:
        future = asyncio.get_running_loop().create_future()
        self._pending[ref] = future
        self._calls.add(future)
        frame = Frame(
            join_ref=self._join_ref,
            ref=ref,
            topic=self._topic,
            event=event,
            payload=payload or {},
        )
        try:
            reply = await asyncio.wait_for(self._roundtrip(frame, future), timeout)
        except TimeoutError:
            raise CallError(
                CallErrorReason.TIMEOUT, f"no reply to {event!r} within {timeout}s"
            ) from None
        except LinkClosedError as exc:
            raise CallError(CallErrorReason.CONNECTION_LOST, str(exc)) from exc
        finally:
            self._pending.pop(ref, None)
            self._calls.discard(future)

        if reply.get("status") != "ok":
            raise CallError(CallErrorReason.REJECTED, f"{event!r} rejected: {reply.get('response')}")
        return reply.get("response") or {}

    async def send(self, message: OutboundMessage) -> dict[str, Any] | None:
        """Send an :class:`OutboundMessage` according to its delivery mode.

        Request/reply messages get their ``correlation_id`` set to the wire
        ref of this attempt, so a resend carries a fresh one.
        """
        if message.topic != self._topic:
            raise ValueError(f"message for {message.topic} sent on {self._topic}")
        if message.delivery is DeliveryMode.REQUEST_REPLY:
            self._ensure_joined()
            message.correlation_id = ref = self._next_ref()
            return await self._call(ref, message.event, message.payload, message.timeout or 5.0)
        await self.publish(message.event, message.payload)
        return None

    async def _roundtrip(
        self, frame: Frame, future: asyncio.Future[dict[str, Any]]
    ) -> dict[str, Any]:
        await self._connection.send(frame)
        return await future

    async def drain(self, timeout: float) -> bool:
        """Wait up to *timeout* for in-flight calls. Returns True if none remain."""
        pending = {f for f in self._calls if not f.done()}
        if pending:
            _, pending = await asyncio.wait(pending, timeout=timeout)
        return not pending

    # -- Inbound --

    def _handle_frame(self, frame: Frame) -> None:
        if frame.join_ref is not None and frame.join_ref != self._join_ref:
            logger.debug("Ignoring %s from stale join %s on %s", frame.event, frame.join_ref, self._topic)
            return
        if frame.event == REPLY_EVENT:
            future = self._pending.get(frame.ref) if frame.ref is not None else None
            if future is not None and not future.done():
                future.set_result(frame.payload)
            return
        if frame.event in (ERROR_EVENT, CLOSE_EVENT):
            self._on_server_close(frame.event)
            return
        if self._state is not ChannelState.JOINED:
            logger.debug("Dropping %s on %s while %s", frame.event, self._topic, self._state)
            return
        self._push(EventKind.APPLICATION, frame.event, frame.payload)

    def _on_server_close(self, event: str) -> None:
        if self._state in (ChannelState.IDLE, ChannelState.LEFT):
            return
        if event == CLOSE_EVENT and not self._wants_membership:
            # Acknowledges our own leave.
            logger.debug("Server closed %s after leave", self._topic)
            return
        logger.warning("Server sent %s for %s", event, self._topic, extra={"topic": self._topic})
        self._set_state(ChannelState.ERRORED)
        self._fail_pending(CallErrorReason.CONNECTION_LOST, f"server sent {event}")
        self._notify(SystemEvent.ERRORED, {"event": event})
        if self._wants_membership and self._connection.is_connected:
            self._schedule_rejoin()

    def _on_connection_state(self, state: ConnectionState) -> None:
        if state is ConnectionState.CONNECTED:
            if self._wants_membership and self._ever_joined and self._state is not ChannelState.JOINED:
                self._schedule_rejoin()
            return
        if self._connection.closed:
            self._wants_membership = False
            self._release()
            return
        if self._state in (ChannelState.JOINED, ChannelState.JOINING):
            self._set_state(ChannelState.ERRORED)
            self._fail_pending(CallErrorReason.CONNECTION_LOST, "connection lost")
            self._notify(SystemEvent.CONNECTION_LOST, {})

    def _schedule_rejoin(self) -> None:
        if self._rejoin_task is not None and not self._rejoin_task.done():
            return
        self._rejoin_task = asyncio.create_task(self._rejoin_loop(), name=f"rejoin:{self._topic}")

    async def _rejoin_loop(self) -> None:
        delays = jittered_delays(self._rejoin_backoff)
        while self._wants_membership and self._state is not ChannelState.JOINED:
            if not self._connection.is_connected:
                # The next CONNECTED notification schedules a fresh loop.
                return
            try:
                await self._join(self._join_timeout)
            except JoinError as exc:
                delay = next(delays)
                logger.warning(
                    "Rejoin of %s failed (%s), retrying in %.2fs",
                    self._topic,
                    exc,
                    delay,
                    extra={"topic": self._topic, "reason": str(exc.reason)},
                )
                await asyncio.sleep(delay)

    def _fail_pending(self, reason: CallErrorReason, message: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(CallError(reason, message))
        self._pending.clear()

    def _notify(self, event: SystemEvent, payload: dict[str, Any]) -> None:
        self._push(EventKind.SYSTEM, str(event), payload)

    def _push(self, kind: EventKind, name: str, payload: dict[str, Any]) -> None:
        self._inbound.put(
            InboundEvent(kind=kind, name=name, payload=payload, sequence=next(self._sequence))
        )
