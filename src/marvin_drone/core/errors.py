"""Exception taxonomy for the drone."""

from __future__ import annotations

from marvin_drone.models.enums import CallErrorReason, ConnectErrorReason, JoinErrorReason


class DroneError(Exception):
    """Base exception for all marvin-drone errors."""


class ConnectError(DroneError):
    """Opening the link to the control server failed."""

    def __init__(self, reason: ConnectErrorReason, message: str = "") -> None:
        self.reason = reason
        super().__init__(message or f"connect failed: {reason}")


class JoinError(DroneError):
    """Joining a topic failed."""

    def __init__(self, reason: JoinErrorReason, message: str = "") -> None:
        self.reason = reason
        super().__init__(message or f"join failed: {reason}")


class CallError(DroneError):
    """A request/reply call (or a publish on a dead link) failed."""

    def __init__(self, reason: CallErrorReason, message: str = "") -> None:
        self.reason = reason
        super().__init__(message or f"call failed: {reason}")


class NotJoinedError(DroneError):
    """Publish or call attempted while the channel is not joined."""


class LinkClosedError(DroneError):
    """The physical link went away. Raised by transports only."""


class ConfigError(DroneError):
    """Configuration was rejected before the agent was built."""


class StartupError(DroneError):
    """Connect, join or the identification handshake failed at startup."""
