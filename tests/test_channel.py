"""Tests for ControlChannel join/publish/call/leave."""

from __future__ import annotations

import asyncio
import logging

import pytest

from marvin_drone.core.channel import ControlChannel
from marvin_drone.core.connection import Connection
from marvin_drone.core.errors import CallError, JoinError, NotJoinedError
from marvin_drone.models.enums import (
    CallErrorReason,
    ChannelState,
    DeliveryMode,
    EventKind,
    JoinErrorReason,
    SystemEvent,
)
from marvin_drone.models.events import Frame, InboundEvent, OutboundMessage
from marvin_drone.transport.base import JOIN_EVENT, LEAVE_EVENT
from marvin_drone.transport.mock import MockReply, MockServer
from tests.conftest import HOSTNAME, TOPIC, make_channel, wait_until


async def _names(channel: ControlChannel, n: int) -> list[str]:
    items = [await asyncio.wait_for(channel.inbound.get(), 1.0) for _ in range(n)]
    return [item.name for item in items if isinstance(item, InboundEvent)]


class TestJoin:
    async def test_join(self, connection: Connection, server: MockServer) -> None:
        await connection.connect()
        channel = make_channel(connection)
        server.join_replies[TOPIC] = MockReply(response={"welcome": True})

        response = await channel.join()

        assert response == {"welcome": True}
        assert channel.state is ChannelState.JOINED
        join = server.events(JOIN_EVENT)[0]
        assert join.topic == TOPIC
        assert join.payload == {"hostname": HOSTNAME}
        assert join.join_ref == join.ref
        assert await _names(channel, 1) == [SystemEvent.JOINED]

    async def test_join_rejected(self, connection: Connection, server: MockServer) -> None:
        await connection.connect()
        channel = make_channel(connection)
        server.join_replies[TOPIC] = MockReply(status="error", response={"reason": "unauthorized"})

        with pytest.raises(JoinError) as exc_info:
            await channel.join()

        assert exc_info.value.reason is JoinErrorReason.REJECTED
        assert channel.state is ChannelState.ERRORED

    async def test_join_timeout(self, connection: Connection, server: MockServer) -> None:
        await connection.connect()
        channel = make_channel(connection)
        server.join_replies[TOPIC] = None

        with pytest.raises(JoinError) as exc_info:
            await channel.join(timeout=0.05)

        assert exc_info.value.reason is JoinErrorReason.TIMEOUT
        assert channel.state is ChannelState.ERRORED

    async def test_join_without_connection(self, connection: Connection) -> None:
        channel = make_channel(connection)
        with pytest.raises(JoinError) as exc_info:
            await channel.join()
        assert exc_info.value.reason is JoinErrorReason.CONNECTION_LOST

    async def test_join_when_joined_is_noop(
        self, channel: ControlChannel, server: MockServer
    ) -> None:
        await channel.join()
        assert len(server.events(JOIN_EVENT)) == 1


class TestPublish:
    async def test_publish(self, channel: ControlChannel, server: MockServer) -> None:
        await channel.publish("tail_line", {"text": "hi"})

        frame = server.events("tail_line")[0]
        assert frame.topic == TOPIC
        assert frame.payload == {"text": "hi"}
        assert frame.join_ref == server.events(JOIN_EVENT)[0].join_ref

    async def test_not_joined_fails_fast(self, connection: Connection, server: MockServer) -> None:
        await connection.connect()
        channel = make_channel(connection)

        with pytest.raises(NotJoinedError):
            await channel.publish("tail_line", {})
        with pytest.raises(NotJoinedError):
            await channel.call("ping", {})
        assert server.received == []

    async def test_publish_on_dead_link(self, channel: ControlChannel, server: MockServer) -> None:
        server.link.sever()
        with pytest.raises((CallError, NotJoinedError)):
            await channel.publish("tail_line", {})


class TestCall:
    async def test_returns_reply(self, channel: ControlChannel, server: MockServer) -> None:
        server.replies["ping"] = MockReply(response={"pong": HOSTNAME})

        reply = await channel.call("ping", {"hostname": HOSTNAME}, timeout=1.0)

        assert reply == {"pong": HOSTNAME}
        assert channel.in_flight == 0

    async def test_timeout_within_bound(self, channel: ControlChannel, server: MockServer) -> None:
        server.replies["ping"] = None
        loop = asyncio.get_running_loop()
        started = loop.time()

        with pytest.raises(CallError) as exc_info:
            await channel.call("ping", {}, timeout=0.05)

        elapsed = loop.time() - started
        assert exc_info.value.reason is CallErrorReason.TIMEOUT
        assert 0.04 <= elapsed < 0.5
        assert channel.in_flight == 0

    async def test_rejected(self, channel: ControlChannel, server: MockServer) -> None:
        server.replies["reboot"] = MockReply(status="error", response={"reason": "denied"})
        with pytest.raises(CallError) as exc_info:
            await channel.call("reboot", {}, timeout=1.0)
        assert exc_info.value.reason is CallErrorReason.REJECTED

    async def test_concurrent_calls_complete_out_of_order(
        self, channel: ControlChannel, server: MockServer
    ) -> None:
        server.replies["slow"] = MockReply(response={"n": "slow"}, delay=0.05)
        server.replies["fast"] = MockReply(response={"n": "fast"})
        order: list[str] = []

        async def run(event: str) -> None:
            reply = await channel.call(event, {}, timeout=1.0)
            order.append(reply["n"])

        await asyncio.gather(run("slow"), run("fast"))

        assert order == ["fast", "slow"]
        refs = [f.ref for f in server.received if f.event in ("slow", "fast")]
        assert len(set(refs)) == 2

    async def test_connection_lost(
        self, channel: ControlChannel, server: MockServer, advance
    ) -> None:
        server.replies["ping"] = None
        task = asyncio.create_task(channel.call("ping", {}, timeout=1.0))
        await advance()

        server.reachable = False
        server.drop_link()

        with pytest.raises(CallError) as exc_info:
            await task
        assert exc_info.value.reason is CallErrorReason.CONNECTION_LOST

    async def test_send_message(self, channel: ControlChannel, server: MockServer) -> None:
        server.replies["status"] = MockReply(response={"ok": 1})
        message = OutboundMessage(
            topic=TOPIC, event="status", delivery=DeliveryMode.REQUEST_REPLY, timeout=1.0
        )
        assert await channel.send(message) == {"ok": 1}

        assert await channel.send(OutboundMessage(topic=TOPIC, event="status")) is None
        assert len(server.events("status")) == 2

    async def test_correlation_id_matches_wire_ref(
        self, channel: ControlChannel, server: MockServer
    ) -> None:
        server.replies["status"] = MockReply()
        message = OutboundMessage(
            topic=TOPIC, event="status", delivery=DeliveryMode.REQUEST_REPLY, timeout=1.0
        )

        await channel.send(message)
        first = message.correlation_id
        assert first == server.events("status")[-1].ref

        await channel.send(message)
        assert message.correlation_id == server.events("status")[-1].ref
        assert message.correlation_id != first

        plain = OutboundMessage(topic=TOPIC, event="status")
        await channel.send(plain)
        assert plain.correlation_id is None

    async def test_send_wrong_topic(self, channel: ControlChannel) -> None:
        with pytest.raises(ValueError):
            await channel.send(OutboundMessage(topic="other:topic", event="x"))

    async def test_drain_waits_for_calls(
        self, channel: ControlChannel, server: MockServer, advance
    ) -> None:
        server.replies["slow"] = MockReply(delay=0.05)
        task = asyncio.create_task(channel.call("slow", {}, timeout=1.0))
        await advance()
        assert channel.in_flight == 1

        assert await channel.drain(1.0) is True
        await task

    async def test_drain_gives_up(
        self, channel: ControlChannel, server: MockServer, advance
    ) -> None:
        server.replies["never"] = None
        task = asyncio.create_task(channel.call("never", {}, timeout=1.0))
        await advance()

        assert await channel.drain(0.01) is False
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestInbound:
    async def test_application_events(self, channel: ControlChannel, server: MockServer) -> None:
        await server.push(TOPIC, "reboot", {"at": "now"})

        joined = await channel.inbound.get()
        event = await asyncio.wait_for(channel.inbound.get(), 1.0)

        assert joined.kind is EventKind.SYSTEM
        assert event.kind is EventKind.APPLICATION
        assert event.name == "reboot"
        assert event.payload == {"at": "now"}
        assert event.sequence > joined.sequence

    async def test_stale_join_ref_ignored(
        self, channel: ControlChannel, server: MockServer
    ) -> None:
        await channel.inbound.get()  # joined
        server.link.deliver(Frame(join_ref="999", topic=TOPIC, event="stale"))
        await server.push(TOPIC, "fresh")

        event = await asyncio.wait_for(channel.inbound.get(), 1.0)
        assert event.name == "fresh"
        assert len(channel.inbound) == 0


class TestRejoin:
    async def test_rejoins_after_reconnect(
        self, channel: ControlChannel, server: MockServer
    ) -> None:
        server.drop_link()
        await wait_until(
            lambda: server.opened == 2 and len(server.events(JOIN_EVENT)) == 2 and channel.is_joined
        )

        first, second = server.events(JOIN_EVENT)
        assert first.join_ref != second.join_ref
        assert channel.rejoins == 1
        assert await _names(channel, 3) == [
            SystemEvent.JOINED,
            SystemEvent.CONNECTION_LOST,
            SystemEvent.REJOINED,
        ]

    async def test_not_joined_during_outage(
        self, channel: ControlChannel, server: MockServer
    ) -> None:
        server.reachable = False
        server.drop_link()
        await wait_until(lambda: channel.state is ChannelState.ERRORED)

        with pytest.raises(NotJoinedError):
            await channel.publish("tail_line", {})

        server.reachable = True
        await wait_until(lambda: channel.is_joined)
        await channel.publish("tail_line", {})
        assert len(server.events("tail_line")) == 1

    async def test_rejoins_after_server_error(
        self, channel: ControlChannel, server: MockServer
    ) -> None:
        await server.crash_channel(TOPIC)
        await wait_until(lambda: len(server.events(JOIN_EVENT)) == 2 and channel.is_joined)

        assert server.opened == 1
        assert await _names(channel, 3) == [
            SystemEvent.JOINED,
            SystemEvent.ERRORED,
            SystemEvent.REJOINED,
        ]

    async def test_rejoin_retries_rejection(
        self, channel: ControlChannel, server: MockServer
    ) -> None:
        attempts = 0

        def flaky(frame: Frame) -> MockReply:
            nonlocal attempts
            attempts += 1
            return MockReply(status="error") if attempts < 3 else MockReply()

        server.join_replies[TOPIC] = flaky
        await server.close_channel(TOPIC)
        await wait_until(lambda: attempts == 3 and channel.is_joined)


class TestLeave:
    async def test_leave(self, channel: ControlChannel, server: MockServer) -> None:
        await channel.leave()

        assert channel.state is ChannelState.LEFT
        assert len(server.events(LEAVE_EVENT)) == 1
        assert channel.inbound.closed
        with pytest.raises(NotJoinedError):
            await channel.publish("x", {})
        with pytest.raises(JoinError):
            await channel.join()

    async def test_leave_releases_without_server(
        self, channel: ControlChannel, server: MockServer
    ) -> None:
        server.reachable = False
        server.drop_link()
        await wait_until(lambda: channel.state is ChannelState.ERRORED)

        await channel.leave(timeout=0.05)

        assert channel.state is ChannelState.LEFT
        assert server.events(LEAVE_EVENT) == []

    async def test_no_rejoin_after_leave(
        self, channel: ControlChannel, server: MockServer
    ) -> None:
        await channel.leave()
        server.drop_link()
        await wait_until(lambda: server.opened == 2)
        await asyncio.sleep(0.02)
        assert len(server.events(JOIN_EVENT)) == 1

    async def test_connection_close_releases(
        self, channel: ControlChannel, connection: Connection
    ) -> None:
        await connection.close()
        assert channel.state is ChannelState.LEFT
        assert channel.inbound.closed

    async def test_close_after_leave_is_quiet(
        self, channel: ControlChannel, server: MockServer, caplog: pytest.LogCaptureFixture
    ) -> None:
        server.replies[LEAVE_EVENT] = MockReply(delay=0.05)
        leaving = asyncio.create_task(channel.leave(timeout=1.0))
        await wait_until(lambda: bool(server.events(LEAVE_EVENT)))

        with caplog.at_level(logging.WARNING, logger="marvin_drone.channel"):
            await server.close_channel(TOPIC)
            await leaving

        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]
        assert await _names(channel, 2) == [SystemEvent.JOINED, SystemEvent.CLOSED]
        assert len(server.events(JOIN_EVENT)) == 1
