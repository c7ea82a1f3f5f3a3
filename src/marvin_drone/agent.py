"""Top-level orchestration of the drone."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Any

from marvin_drone.config import AgentConfig
from marvin_drone.core.backoff import jittered_delays
from marvin_drone.core.channel import ControlChannel
from marvin_drone.core.connection import Connection
from marvin_drone.core.dispatcher import EventDispatcher
from marvin_drone.core.errors import (
    CallError,
    ConnectError,
    JoinError,
    NotJoinedError,
    StartupError,
)
from marvin_drone.core.multiplexer import UplinkMultiplexer
from marvin_drone.models.enums import ConnectErrorReason
from marvin_drone.models.events import EventsMissed
from marvin_drone.models.health import AgentHealth
from marvin_drone.sources.base import LocalSource
from marvin_drone.sources.probe import ProbeSource
from marvin_drone.sources.tail import FileTailSource
from marvin_drone.transport.base import Transport

logger = logging.getLogger("marvin_drone.agent")

HANDSHAKE_EVENT = "ping"


def build_sources(config: AgentConfig) -> list[LocalSource]:
    """One tail source per file and one probe source per address."""
    sources: list[LocalSource] = [FileTailSource(path) for path in config.tail]
    sources.extend(ProbeSource(str(addr), interval=config.ping_interval) for addr in config.ping)
    return sources


class Agent:
    """Wires Connection -> ControlChannel -> {EventDispatcher, UplinkMultiplexer}.

    Startup is strict: the control server must be reached within
    ``startup_connect_attempts`` tries, the topic joined, and the ``ping``
    handshake answered, otherwise :meth:`start` raises ``StartupError``.
    Once started, every network failure is recovered by reconnecting and
    rejoining.

    Example:
        agent = Agent(AgentConfig.load(secret="s3cret", tail=["/var/log/syslog"]))

        @agent.dispatcher.on("reboot")
        async def reboot(event: InboundEvent) -> None:
            ...

        await agent.run()
    """

    def __init__(
        self,
        config: AgentConfig,
        *,
        transport: Transport | None = None,
        sources: list[LocalSource] | None = None,
    ) -> None:
        self._config = config
        self._sources = build_sources(config) if sources is None else list(sources)
        self._connection = Connection(
            config.marvin,
            config.secret.get_secret_value(),
            transport=transport,
            connect_timeout=config.connect_timeout,
            backoff=config.backoff,
        )
        self._channel = ControlChannel(
            self._connection,
            config.topic,
            params={"hostname": config.hostname},
            join_timeout=config.join_timeout,
            inbound_buffer_size=config.inbound_buffer_size,
            rejoin_backoff=config.backoff,
        )
        self._dispatcher = EventDispatcher(self._channel, overflow_handler=self._on_overflow)
        self._multiplexer = UplinkMultiplexer(
            self._channel,
            hostname=config.hostname,
            buffer_size=config.buffer_size,
            call_timeout=config.call_timeout,
            retry_policy=config.critical_retry,
        )
        self._stop = asyncio.Event()
        self._started = False
        self._shut_down = False
        self.events_missed = 0
        self.handshake_reply: dict[str, Any] = {}

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def channel(self) -> ControlChannel:
        return self._channel

    @property
    def dispatcher(self) -> EventDispatcher:
        return self._dispatcher

    @property
    def multiplexer(self) -> UplinkMultiplexer:
        return self._multiplexer

    @property
    def sources(self) -> list[LocalSource]:
        return list(self._sources)

    # -- Startup --

    async def start(self) -> None:
        """Connect, join, handshake, then start serving sources.

        Raises:
            StartupError: if any step fails. Everything opened so far is
                closed again before raising.
        """
        if self._started:
            return
        cfg = self._config
        logger.info("Starting drone %s against %s", cfg.hostname, cfg.marvin)
        try:
            await self._connect()
            await self._channel.join(cfg.join_timeout)
            self._dispatcher.start()
            self.handshake_reply = await self._channel.call(
                HANDSHAKE_EVENT, {"hostname": cfg.hostname}, cfg.handshake_timeout
            )
        except (ConnectError, JoinError, CallError, NotJoinedError) as exc:
            await self._abort()
            raise StartupError(f"startup failed: {exc}") from exc

        logger.info("Handshake with %s complete", cfg.marvin, extra={"reply": self.handshake_reply})
        self._multiplexer.start()
        for source in self._sources:
            self._multiplexer.register(source)
        self._started = True

    async def _connect(self) -> None:
        attempts = self._config.startup_connect_attempts
        delays = jittered_delays(self._config.backoff)
        for attempt in range(1, attempts + 1):
            try:
                await self._connection.connect()
                return
            except ConnectError as exc:
                if exc.reason is ConnectErrorReason.AUTH_REJECTED or attempt == attempts:
                    raise
                delay = next(delays)
                logger.warning(
                    "Connect attempt %d/%d failed (%s), retrying in %.2fs",
                    attempt,
                    attempts,
                    exc,
                    delay,
                    extra={"attempt": attempt, "reason": str(exc.reason)},
                )
                await asyncio.sleep(delay)

    async def _abort(self) -> None:
        await self._dispatcher.stop()
        await self._connection.close()

    # -- Running --

    async def run(self) -> None:
        """Start, serve until SIGINT/SIGTERM or :meth:`request_shutdown`, then shut down."""
        await self.start()
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, self.request_shutdown)
                installed.append(sig)
        try:
            await self._stop.wait()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.shutdown()

    def request_shutdown(self) -> None:
        if not self._stop.is_set():
            logger.info("Shutdown requested")
        self._stop.set()

    async def shutdown(self) -> None:
        """Stop sources, let in-flight calls finish, leave, disconnect."""
        if self._shut_down:
            return
        self._shut_down = True
        self._stop.set()
        cfg = self._config
        await self._multiplexer.stop(timeout=cfg.call_timeout)
        if not await self._channel.drain(cfg.call_timeout):
            logger.warning("%d calls still in flight at shutdown", self._channel.in_flight)
        await self._channel.leave(timeout=cfg.call_timeout)
        await self._dispatcher.wait_closed(timeout=cfg.call_timeout)
        await self._connection.close()
        logger.info("Drone %s shut down", cfg.hostname)

    # -- Observability --

    async def _on_overflow(self, marker: EventsMissed) -> None:
        self.events_missed += marker.count
        logger.warning(
            "Missed %d control events (through #%d)",
            marker.count,
            marker.last_sequence,
            extra={"missed": marker.count},
        )

    async def healthcheck(self) -> AgentHealth:
        return AgentHealth(
            hostname=self._config.hostname,
            connection=self._connection.state,
            channel=self._channel.state,
            reconnects=self._connection.reconnects,
            events_missed=self.events_missed,
            uplink=self._multiplexer.stats(),
            sources=[await source.healthcheck() for source in self._sources],
        )
