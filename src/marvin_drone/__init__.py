"""marvin-drone - field agent that feeds local events to Marvin over a Phoenix channel."""

from marvin_drone._version import __version__
from marvin_drone.agent import Agent, build_sources
from marvin_drone.config import AgentConfig
from marvin_drone.core.channel import ControlChannel
from marvin_drone.core.connection import Connection, connect
from marvin_drone.core.dispatcher import EventDispatcher
from marvin_drone.core.errors import (
    CallError,
    ConfigError,
    ConnectError,
    DroneError,
    JoinError,
    LinkClosedError,
    NotJoinedError,
    StartupError,
)
from marvin_drone.core.inbound import InboundBuffer
from marvin_drone.core.multiplexer import UplinkMultiplexer
from marvin_drone.models.enums import (
    CallErrorReason,
    ChannelState,
    ConnectErrorReason,
    ConnectionState,
    DeliveryMode,
    EventKind,
    JoinErrorReason,
    SourceStatus,
    SystemEvent,
)
from marvin_drone.models.events import (
    EventsMissed,
    Frame,
    InboundEvent,
    LocalEvent,
    OutboundMessage,
    ProbeResult,
    TailLine,
)
from marvin_drone.models.health import AgentHealth, MultiplexerStats, SourceHealth
from marvin_drone.models.policy import BackoffPolicy, RetryPolicy
from marvin_drone.sources import BaseLocalSource, FileTailSource, LocalSource, ProbeSource
from marvin_drone.transport import MockReply, MockServer, MockTransport, PhoenixTransport

__all__ = [
    # Orchestration
    "Agent",
    "AgentConfig",
    "build_sources",
    # Core
    "Connection",
    "ControlChannel",
    "EventDispatcher",
    "InboundBuffer",
    "UplinkMultiplexer",
    "connect",
    # Errors
    "CallError",
    "ConfigError",
    "ConnectError",
    "DroneError",
    "JoinError",
    "LinkClosedError",
    "NotJoinedError",
    "StartupError",
    # Enums
    "CallErrorReason",
    "ChannelState",
    "ConnectErrorReason",
    "ConnectionState",
    "DeliveryMode",
    "EventKind",
    "JoinErrorReason",
    "SourceStatus",
    "SystemEvent",
    # Models
    "AgentHealth",
    "BackoffPolicy",
    "EventsMissed",
    "Frame",
    "InboundEvent",
    "LocalEvent",
    "MultiplexerStats",
    "OutboundMessage",
    "ProbeResult",
    "RetryPolicy",
    "SourceHealth",
    "TailLine",
    # Sources
    "BaseLocalSource",
    "FileTailSource",
    "LocalSource",
    "ProbeSource",
    # Transports
    "MockReply",
    "MockServer",
    "MockTransport",
    "PhoenixTransport",
    "__version__",
]
