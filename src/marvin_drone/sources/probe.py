"""Periodic reachability probes."""

from __future__ import annotations

import asyncio
import logging
import math
import re
from collections.abc import AsyncIterator, Awaitable, Callable

from marvin_drone.models.events import ProbeResult
from marvin_drone.sources.base import BaseLocalSource

logger = logging.getLogger("marvin_drone.sources.probe")

# (reachable, latency in milliseconds)
ProbeOutcome = tuple[bool, float | None]
Prober = Callable[[str, float], Awaitable[ProbeOutcome]]

_LATENCY_RE = re.compile(rb"time[=<]\s*([\d.]+)\s*ms")


async def system_ping(address: str, timeout: float) -> ProbeOutcome:
    """Send one echo request with the system ``ping`` binary."""
    wait = max(1, math.ceil(timeout))
    try:
        proc = await asyncio.create_subprocess_exec(
            "ping",
            "-n",
            "-c",
            "1",
            "-W",
            str(wait),
            address,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        logger.warning("Cannot run ping for %s: %s", address, exc, extra={"address": address})
        return False, None
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), wait + 1)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        return False, None
    if proc.returncode != 0:
        return False, None
    match = _LATENCY_RE.search(stdout)
    return True, float(match.group(1)) if match else None


class ProbeSource(BaseLocalSource):
    """Yields one ``ProbeResult`` for *address* every *interval* seconds.

    Ticks are scheduled from a fixed start time, so a slow probe does not
    push later samples back. Ticks that pass while a probe overruns are
    skipped rather than fired back to back. A prober that raises yields an
    unreachable sample and probing goes on. The sequence is infinite and
    restartable.
    """

    def __init__(
        self,
        address: str,
        *,
        interval: float = 5.0,
        timeout: float | None = None,
        prober: Prober | None = None,
    ) -> None:
        super().__init__()
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._address = address
        self._interval = interval
        self._timeout = timeout or min(interval, 5.0)
        self._prober = prober or system_ping

    @property
    def source_id(self) -> str:
        return f"ping:{self._address}"

    @property
    def address(self) -> str:
        return self._address

    @property
    def restartable(self) -> bool:
        return True

    async def _produce(self) -> AsyncIterator[ProbeResult]:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        logger.info("Probing %s every %.1fs", self._address, self._interval)
        while not self._should_stop():
            try:
                reachable, latency = await self._prober(self._address, self._timeout)
            except Exception:
                logger.exception(
                    "Probe of %s failed", self._address, extra={"address": self._address}
                )
                reachable, latency = False, None
            yield ProbeResult(address=self._address, reachable=reachable, latency_ms=latency)
            next_tick = max(next_tick + self._interval, loop.time())
            await self._sleep(max(0.0, next_tick - loop.time()))
