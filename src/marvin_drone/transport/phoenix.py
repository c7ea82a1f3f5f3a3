"""Phoenix Channels (v2 JSON serializer) transport over WebSockets."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets
from websockets import ClientConnection
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus, InvalidURI

from marvin_drone.core.errors import ConnectError, LinkClosedError
from marvin_drone.models.enums import ConnectErrorReason
from marvin_drone.models.events import Frame
from marvin_drone.transport.base import REPLY_EVENT, Link, Transport

logger = logging.getLogger("marvin_drone.transport.phoenix")

PROTOCOL_VSN = "2.0.0"
PHOENIX_TOPIC = "phoenix"
HEARTBEAT_EVENT = "heartbeat"

_AUTH_STATUSES = frozenset({401, 403})
_SCHEMES = {"http": "ws", "https": "wss", "ws": "ws", "wss": "wss"}


def socket_url(url: str, secret: str, *, vsn: str = PROTOCOL_VSN) -> str:
    """Build the websocket endpoint for a Phoenix server URL.

    ``https://host/marvin`` becomes
    ``wss://host/marvin/socket/websocket?token=...&vsn=2.0.0``. A URL that
    already ends in ``/websocket`` keeps its path.
    """
    parts = urlsplit(url)
    scheme = _SCHEMES.get(parts.scheme)
    if scheme is None or not parts.netloc:
        raise ValueError(f"unsupported control server URL: {url!r}")
    path = parts.path.rstrip("/")
    if not path.endswith("/websocket"):
        path = f"{path}/socket/websocket"
    query = [(k, v) for k, v in parse_qsl(parts.query) if k not in ("token", "vsn")]
    query += [("token", secret), ("vsn", vsn)]
    return urlunsplit((scheme, parts.netloc, path, urlencode(query), ""))


def encode_frame(frame: Frame) -> str:
    """Serialize as ``[join_ref, ref, topic, event, payload]``."""
    return json.dumps([frame.join_ref, frame.ref, frame.topic, frame.event, frame.payload])


def decode_frame(raw: str | bytes) -> Frame | None:
    """Parse a v2 array message. Returns None for anything malformed."""
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
        if not isinstance(data, list) or len(data) != 5:
            return None
        join_ref, ref, topic, event, payload = data
        if not isinstance(payload, dict):
            payload = {"value": payload}
        return Frame(
            join_ref=None if join_ref is None else str(join_ref),
            ref=None if ref is None else str(ref),
            topic=topic,
            event=event,
            payload=payload,
        )
    except (UnicodeDecodeError, json.JSONDecodeError, TypeError, ValueError) as e:
        logger.debug("Failed to decode frame: %s", e)
        return None


class PhoenixLink(Link):
    """A live Phoenix socket with its heartbeat.

    A heartbeat is pushed on the ``phoenix`` topic every
    *heartbeat_interval* seconds. If the previous heartbeat is still
    unanswered when the next one is due, the link closes itself so the
    owner sees it as lost.
    """

    def __init__(self, ws: ClientConnection, *, heartbeat_interval: float | None = 30.0) -> None:
        self._ws = ws
        self._closed = False
        self._refs = itertools.count(1)
        self._pending_heartbeat: str | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        if heartbeat_interval:
            self._heartbeat_task = asyncio.create_task(
                self._heartbeat_loop(heartbeat_interval), name="phoenix-heartbeat"
            )

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, frame: Frame) -> None:
        if self._closed:
            raise LinkClosedError("link closed")
        try:
            await self._ws.send(encode_frame(frame))
        except ConnectionClosed as exc:
            self._closed = True
            raise LinkClosedError(str(exc)) from exc

    async def recv(self) -> Frame:
        while True:
            if self._closed:
                raise LinkClosedError("link closed")
            try:
                raw = await self._ws.recv()
            except ConnectionClosed as exc:
                self._closed = True
                raise LinkClosedError(str(exc)) from exc
            frame = decode_frame(raw)
            if frame is None:
                continue
            if frame.topic == PHOENIX_TOPIC:
                if frame.event == REPLY_EVENT and frame.ref == self._pending_heartbeat:
                    self._pending_heartbeat = None
                continue
            return frame

    async def close(self) -> None:
        self._closed = True
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        with contextlib.suppress(Exception):
            await self._ws.close()

    async def _heartbeat_loop(self, interval: float) -> None:
        while not self._closed:
            await asyncio.sleep(interval)
            if self._pending_heartbeat is not None:
                logger.warning("Heartbeat %s unanswered, closing link", self._pending_heartbeat)
                await self.close()
                return
            ref = f"hb{next(self._refs)}"
            self._pending_heartbeat = ref
            try:
                await self.send(Frame(ref=ref, topic=PHOENIX_TOPIC, event=HEARTBEAT_EVENT))
            except LinkClosedError:
                return


class PhoenixTransport(Transport):
    """Opens Phoenix socket links with the shared secret as the ``token`` param.

    Example:
        transport = PhoenixTransport(heartbeat_interval=30.0)
        link = await transport.open("https://wa7vc.org/marvin", "s3cret", timeout=10.0)
    """

    def __init__(
        self,
        *,
        heartbeat_interval: float | None = 30.0,
        max_size: int = 2**20,  # 1 MB
        close_timeout: float = 5.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._heartbeat_interval = heartbeat_interval
        self._max_size = max_size
        self._close_timeout = close_timeout
        self._headers = headers or {}

    async def open(self, url: str, secret: str, timeout: float) -> Link:
        try:
            uri = socket_url(url, secret)
        except ValueError as exc:
            raise ConnectError(ConnectErrorReason.UNREACHABLE, str(exc)) from exc

        connect_kwargs: dict[str, Any] = {
            "uri": uri,
            "open_timeout": None,
            # Liveness is tracked by the Phoenix heartbeat instead.
            "ping_interval": None,
            "close_timeout": self._close_timeout,
            "max_size": self._max_size,
        }
        if self._headers:
            connect_kwargs["additional_headers"] = self._headers

        try:
            ws = await asyncio.wait_for(websockets.connect(**connect_kwargs), timeout)
        except TimeoutError as exc:
            raise ConnectError(
                ConnectErrorReason.TIMEOUT, f"no handshake from {url} within {timeout}s"
            ) from exc
        except InvalidStatus as exc:
            status = exc.response.status_code
            if status in _AUTH_STATUSES:
                raise ConnectError(
                    ConnectErrorReason.AUTH_REJECTED, f"{url} rejected credentials ({status})"
                ) from exc
            raise ConnectError(
                ConnectErrorReason.UNREACHABLE, f"{url} answered HTTP {status}"
            ) from exc
        except (OSError, InvalidHandshake, InvalidURI) as exc:
            raise ConnectError(ConnectErrorReason.UNREACHABLE, f"{url}: {exc}") from exc

        logger.debug("Opened socket to %s", url)
        return PhoenixLink(ws, heartbeat_interval=self._heartbeat_interval)
