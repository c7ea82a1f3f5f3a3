"""Control-plane transports."""

from marvin_drone.transport.base import Link, Transport
from marvin_drone.transport.mock import MockLink, MockReply, MockServer, MockTransport
from marvin_drone.transport.phoenix import PhoenixLink, PhoenixTransport

__all__ = [
    "Link",
    "MockLink",
    "MockReply",
    "MockServer",
    "MockTransport",
    "PhoenixLink",
    "PhoenixTransport",
    "Transport",
]
