"""All string enums for marvin-drone."""

from __future__ import annotations

from enum import StrEnum, unique


@unique
class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@unique
class ChannelState(StrEnum):
    IDLE = "idle"
    JOINING = "joining"
    JOINED = "joined"
    LEFT = "left"
    ERRORED = "errored"


@unique
class DeliveryMode(StrEnum):
    FIRE_AND_FORGET = "fire_and_forget"
    REQUEST_REPLY = "request_reply"


@unique
class EventKind(StrEnum):
    SYSTEM = "system"
    APPLICATION = "application"


@unique
class SystemEvent(StrEnum):
    """Lifecycle notices injected into a channel's inbound stream."""

    JOINED = "joined"
    REJOINED = "rejoined"
    ERRORED = "errored"
    CLOSED = "closed"
    CONNECTION_LOST = "connection_lost"


@unique
class ConnectErrorReason(StrEnum):
    UNREACHABLE = "unreachable"
    AUTH_REJECTED = "auth_rejected"
    TIMEOUT = "timeout"


@unique
class JoinErrorReason(StrEnum):
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    CONNECTION_LOST = "connection_lost"


@unique
class CallErrorReason(StrEnum):
    TIMEOUT = "timeout"
    CONNECTION_LOST = "connection_lost"
    REJECTED = "rejected"


@unique
class SourceStatus(StrEnum):
    """Lifecycle status for a local event source."""

    STOPPED = "stopped"
    RUNNING = "running"
    FINISHED = "finished"
    ERROR = "error"
