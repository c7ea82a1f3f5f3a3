"""Tests for Connection connect/reconnect behaviour."""

from __future__ import annotations

import asyncio

import pytest

from marvin_drone.core.connection import Connection, connect
from marvin_drone.core.errors import ConnectError, LinkClosedError
from marvin_drone.models.enums import ConnectErrorReason, ConnectionState
from marvin_drone.models.events import Frame
from marvin_drone.transport.mock import MockServer, MockTransport
from tests.conftest import FAST_BACKOFF, SECRET, URL, wait_until


class TestConnect:
    async def test_connects(self, connection: Connection, transport: MockTransport) -> None:
        states: list[ConnectionState] = []
        connection.add_state_listener(states.append)

        await connection.connect()

        assert connection.is_connected
        assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        assert transport.urls == [URL]

    async def test_auth_rejected(self, transport: MockTransport) -> None:
        conn = Connection(URL, "wrong", transport=transport)
        with pytest.raises(ConnectError) as exc_info:
            await conn.connect()
        assert exc_info.value.reason is ConnectErrorReason.AUTH_REJECTED
        assert conn.state is ConnectionState.FAILED

    async def test_unreachable(self, connection: Connection, server: MockServer) -> None:
        server.reachable = False
        with pytest.raises(ConnectError) as exc_info:
            await connection.connect()
        assert exc_info.value.reason is ConnectErrorReason.UNREACHABLE
        assert connection.state is ConnectionState.FAILED

    async def test_timeout_within_bound(self, connection: Connection, server: MockServer) -> None:
        server.connect_delay = 5.0
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(ConnectError) as exc_info:
            await connection.connect(timeout=0.05)
        assert exc_info.value.reason is ConnectErrorReason.TIMEOUT
        assert loop.time() - started < 1.0

    async def test_connect_when_connected_is_noop(
        self, connection: Connection, server: MockServer
    ) -> None:
        await connection.connect()
        await connection.connect()
        assert server.opened == 1

    async def test_concurrent_connects_are_serialized(
        self, connection: Connection, server: MockServer
    ) -> None:
        server.connect_delay = 0.01
        await asyncio.gather(connection.connect(), connection.connect())
        assert server.opened == 1

    async def test_module_level_connect(self, transport: MockTransport) -> None:
        conn = await connect(URL, SECRET, transport=transport)
        try:
            assert conn.is_connected
        finally:
            await conn.close()

    async def test_closed_connection_refuses_connect(self, connection: Connection) -> None:
        await connection.close()
        with pytest.raises(ConnectError):
            await connection.connect()


class TestLinkIO:
    async def test_send_requires_link(self, connection: Connection) -> None:
        with pytest.raises(LinkClosedError):
            await connection.send(Frame(topic="t", event="e"))

    async def test_send_reaches_server(self, connection: Connection, server: MockServer) -> None:
        await connection.connect()
        await connection.send(Frame(ref="1", topic="t", event="hello", payload={"a": 1}))
        assert server.events("hello")[0].payload == {"a": 1}

    async def test_frames_routed_by_topic(self, connection: Connection, server: MockServer) -> None:
        received: list[Frame] = []
        connection.route("t", received.append)
        await connection.connect()

        await server.push("t", "news", {"n": 1})
        await server.push("other", "ignored")
        await wait_until(lambda: len(received) == 1)

        assert received[0].event == "news"
        connection.unroute("t")
        await server.push("t", "news", {"n": 2})
        await asyncio.sleep(0.01)
        assert len(received) == 1

    async def test_routing_error_does_not_kill_reader(
        self, connection: Connection, server: MockServer
    ) -> None:
        received: list[Frame] = []

        def handler(frame: Frame) -> None:
            if frame.event == "bad":
                raise RuntimeError("handler bug")
            received.append(frame)

        connection.route("t", handler)
        await connection.connect()
        await server.push("t", "bad")
        await server.push("t", "good")
        await wait_until(lambda: len(received) == 1)
        assert connection.is_connected


class TestReconnect:
    async def test_reconnects_after_link_loss(
        self, connection: Connection, server: MockServer
    ) -> None:
        states: list[ConnectionState] = []
        await connection.connect()
        connection.add_state_listener(states.append)

        server.drop_link()
        await wait_until(lambda: server.opened == 2 and connection.is_connected)

        assert connection.reconnects == 1
        assert states[0] is ConnectionState.DISCONNECTED
        assert states[-1] is ConnectionState.CONNECTED

    async def test_keeps_retrying_until_reachable(
        self, connection: Connection, server: MockServer
    ) -> None:
        await connection.connect()
        server.fail_next_connects = 3

        server.drop_link()
        await wait_until(lambda: server.fail_next_connects == 0 and connection.is_connected)

        assert server.opened == 2
        assert connection.reconnects == 1

    async def test_close_stops_reconnecting(
        self, connection: Connection, server: MockServer
    ) -> None:
        await connection.connect()
        server.reachable = False
        server.drop_link()
        await wait_until(lambda: connection.state is not ConnectionState.CONNECTED)

        await connection.close()
        server.reachable = True
        await asyncio.sleep(0.05)

        assert connection.closed
        assert connection.state is ConnectionState.DISCONNECTED
        assert server.opened == 1

    async def test_one_link_at_a_time(self, transport: MockTransport, server: MockServer) -> None:
        conn = Connection(URL, SECRET, transport=transport, backoff=FAST_BACKOFF)
        await conn.connect()
        for _ in range(3):
            server.drop_link()
            opened = server.opened
            await wait_until(lambda: server.opened == opened + 1 and conn.is_connected)
            assert sum(1 for link in server.links if not link.closed) == 1
        await conn.close()
        assert all(link.closed for link in server.links)
