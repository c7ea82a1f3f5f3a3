"""Mock control server and transport for testing."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from marvin_drone.core.errors import ConnectError, LinkClosedError
from marvin_drone.models.enums import ConnectErrorReason
from marvin_drone.models.events import Frame
from marvin_drone.transport.base import (
    CLOSE_EVENT,
    ERROR_EVENT,
    JOIN_EVENT,
    LEAVE_EVENT,
    REPLY_EVENT,
    Link,
    Transport,
)


@dataclass
class MockReply:
    """Scripted reply for one inbound frame."""

    status: str = "ok"
    response: dict[str, Any] = field(default_factory=dict)
    delay: float = 0.0


# A rule is a fixed reply, a function of the request, or None for "never reply".
ReplyRule = MockReply | Callable[[Frame], MockReply | None] | None


class MockLink(Link):
    """In-memory link whose far end is a ``MockServer``."""

    def __init__(self, server: MockServer) -> None:
        self._server = server
        self._inbox: asyncio.Queue[Frame | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, frame: Frame) -> None:
        if self._closed:
            raise LinkClosedError("mock link closed")
        self._server._handle(self, frame)

    async def recv(self) -> Frame:
        if self._closed and self._inbox.empty():
            raise LinkClosedError("mock link closed")
        frame = await self._inbox.get()
        if frame is None:
            raise LinkClosedError("mock link closed")
        return frame

    async def close(self) -> None:
        self.sever()

    def deliver(self, frame: Frame) -> None:
        """Queue a frame for the client."""
        if not self._closed:
            self._inbox.put_nowait(frame)

    def sever(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbox.put_nowait(None)


class MockServer:
    """Scriptable stand-in for the control server.

    Example:
        server = MockServer(secret="s3cret")
        server.replies["ping"] = MockReply(response={"pong": True})
        server.replies["slow"] = None  # never answers

        transport = MockTransport(server)
        ...
        server.drop_link()              # simulate link loss
        await server.push("drone:cnc", "reboot", {"at": "now"})
        assert server.events("tail_line")
    """

    def __init__(self, *, secret: str | None = None) -> None:
        self.secret = secret
        self.reachable = True
        self.connect_delay = 0.0
        self.fail_next_connects = 0
        self.join_replies: dict[str, ReplyRule] = {}
        self.replies: dict[str, ReplyRule] = {}
        self.received: list[Frame] = []
        self.links: list[MockLink] = []
        self._join_refs: dict[str, str | None] = {}

    @property
    def link(self) -> MockLink | None:
        """The most recent link, if still open."""
        if self.links and not self.links[-1].closed:
            return self.links[-1]
        return None

    @property
    def opened(self) -> int:
        return len(self.links)

    def events(self, name: str) -> list[Frame]:
        """All frames received with event *name*, in arrival order."""
        return [f for f in self.received if f.event == name]

    def index_of(self, frame: Frame) -> int:
        return next(i for i, f in enumerate(self.received) if f is frame)

    def drop_link(self) -> None:
        """Sever the current link from the server side."""
        if self.link is not None:
            self.link.sever()

    async def push(self, topic: str, event: str, payload: dict[str, Any] | None = None) -> None:
        """Push an application event to the joined client."""
        self._send(Frame(join_ref=self._join_refs.get(topic), topic=topic, event=event, payload=payload or {}))

    async def crash_channel(self, topic: str) -> None:
        """Emulate the server-side channel process crashing."""
        self._send(Frame(join_ref=self._join_refs.get(topic), topic=topic, event=ERROR_EVENT))

    async def close_channel(self, topic: str) -> None:
        self._send(Frame(join_ref=self._join_refs.get(topic), topic=topic, event=CLOSE_EVENT))

    def _send(self, frame: Frame) -> None:
        link = self.link
        if link is None:
            raise LinkClosedError("no client connected")
        link.deliver(frame)

    async def _accept(self, secret: str, timeout: float) -> MockLink:
        if self.connect_delay:
            if self.connect_delay >= timeout:
                await asyncio.sleep(timeout)
                raise ConnectError(ConnectErrorReason.TIMEOUT, "mock connect timed out")
            await asyncio.sleep(self.connect_delay)
        if self.fail_next_connects > 0:
            self.fail_next_connects -= 1
            raise ConnectError(ConnectErrorReason.UNREACHABLE, "mock server unreachable")
        if not self.reachable:
            raise ConnectError(ConnectErrorReason.UNREACHABLE, "mock server unreachable")
        if self.secret is not None and secret != self.secret:
            raise ConnectError(ConnectErrorReason.AUTH_REJECTED, "mock server rejected secret")
        link = MockLink(self)
        self.links.append(link)
        return link

    def _handle(self, link: MockLink, frame: Frame) -> None:
        self.received.append(frame)
        rule: ReplyRule
        if frame.event == JOIN_EVENT:
            self._join_refs[frame.topic] = frame.join_ref
            rule = self.join_replies.get(frame.topic, MockReply())
        elif frame.event == LEAVE_EVENT:
            self._join_refs.pop(frame.topic, None)
            rule = self.replies.get(LEAVE_EVENT, MockReply())
        else:
            rule = self.replies.get(frame.event, MockReply())

        reply = rule(frame) if callable(rule) else rule
        if reply is None:
            return
        out = Frame(
            join_ref=frame.join_ref,
            ref=frame.ref,
            topic=frame.topic,
            event=REPLY_EVENT,
            payload={"status": reply.status, "response": reply.response},
        )
        if reply.delay:
            asyncio.get_running_loop().call_later(reply.delay, link.deliver, out)
        else:
            link.deliver(out)


class MockTransport(Transport):
    """Transport that opens links to a ``MockServer``."""

    def __init__(self, server: MockServer | None = None) -> None:
        self.server = server or MockServer()
        self.urls: list[str] = []

    async def open(self, url: str, secret: str, timeout: float) -> Link:
        self.urls.append(url)
        return await self.server._accept(secret, timeout)
