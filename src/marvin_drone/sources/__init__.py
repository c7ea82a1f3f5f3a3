"""Local event sources."""

from marvin_drone.sources.base import BaseLocalSource, LocalSource
from marvin_drone.sources.probe import ProbeSource, system_ping
from marvin_drone.sources.tail import FileTailSource

__all__ = [
    "BaseLocalSource",
    "FileTailSource",
    "LocalSource",
    "ProbeSource",
    "system_ping",
]
