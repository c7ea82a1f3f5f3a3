"""Shared test fixtures and helpers."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Coroutine
from typing import Any

import pytest

from marvin_drone.core.channel import ControlChannel
from marvin_drone.core.connection import Connection
from marvin_drone.models.events import TailLine
from marvin_drone.models.policy import BackoffPolicy
from marvin_drone.sources.base import BaseLocalSource
from marvin_drone.transport.mock import MockServer, MockTransport

URL = "https://marvin.test/marvin"
SECRET = "s3cret"
TOPIC = "drone:cnc"
HOSTNAME = "agent-7"

# Reconnect/rejoin quickly so outage scenarios finish in milliseconds.
FAST_BACKOFF = BackoffPolicy(base_delay_seconds=0.005, max_delay_seconds=0.02)


@pytest.fixture
def advance() -> Callable[[int], Coroutine[Any, Any, None]]:
    """Yield control to let pending tasks run without real delay.

    Replaces ``await asyncio.sleep(0.05)`` patterns with zero-delay
    event loop yields::

        await advance()       # 5 yields (default)
        await advance(10)     # 10 yields for heavier workloads
    """

    async def _advance(n: int = 5) -> None:
        for _ in range(n):
            await asyncio.sleep(0)

    return _advance


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* until it holds, failing the test after *timeout*."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"condition not met within {timeout}s")
        await asyncio.sleep(0.002)


class FakeSource(BaseLocalSource):
    """Source fed by the test: ``feed()`` lines, ``finish()`` or ``fail()``."""

    def __init__(self, source_id: str = "tail:fake", *, restartable: bool = False) -> None:
        super().__init__()
        self._id = source_id
        self._restartable = restartable
        self._queue: asyncio.Queue[str | BaseException | None] = asyncio.Queue()

    @property
    def source_id(self) -> str:
        return self._id

    @property
    def restartable(self) -> bool:
        return self._restartable

    def feed(self, *texts: str) -> None:
        for text in texts:
            self._queue.put_nowait(text)

    def finish(self) -> None:
        self._queue.put_nowait(None)

    def fail(self, exc: BaseException) -> None:
        self._queue.put_nowait(exc)

    async def _produce(self) -> AsyncIterator[TailLine]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            if isinstance(item, BaseException):
                raise item
            yield TailLine(path=self._id, text=item)


@pytest.fixture
def server() -> MockServer:
    return MockServer(secret=SECRET)


@pytest.fixture
def transport(server: MockServer) -> MockTransport:
    return MockTransport(server)


@pytest.fixture
async def connection(transport: MockTransport) -> AsyncIterator[Connection]:
    conn = Connection(URL, SECRET, transport=transport, connect_timeout=0.5, backoff=FAST_BACKOFF)
    yield conn
    await conn.close()


def make_channel(connection: Connection, **kwargs: Any) -> ControlChannel:
    kwargs.setdefault("params", {"hostname": HOSTNAME})
    kwargs.setdefault("join_timeout", 0.5)
    kwargs.setdefault("rejoin_backoff", FAST_BACKOFF)
    return ControlChannel(connection, TOPIC, **kwargs)


@pytest.fixture
async def channel(connection: Connection) -> ControlChannel:
    """A channel joined to ``TOPIC`` over a connected mock link."""
    await connection.connect()
    ch = make_channel(connection)
    await ch.join()
    return ch
