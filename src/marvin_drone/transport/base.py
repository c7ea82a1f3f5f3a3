"""Abstract base classes for the control-plane transport."""

from __future__ import annotations

from abc import ABC, abstractmethod

from marvin_drone.models.events import Frame

# Reserved event names of the pub/sub wire contract.
JOIN_EVENT = "phx_join"
LEAVE_EVENT = "phx_leave"
REPLY_EVENT = "phx_reply"
ERROR_EVENT = "phx_error"
CLOSE_EVENT = "phx_close"


class Link(ABC):
    """One open physical link to the control server.

    A link is single-use: once closed (by either side) every ``send`` and
    ``recv`` raises ``LinkClosedError`` and a new link must be opened.
    """

    @abstractmethod
    async def send(self, frame: Frame) -> None:
        """Hand *frame* to the wire. Returns once it is accepted for send."""
        ...

    @abstractmethod
    async def recv(self) -> Frame:
        """Wait for the next frame from the server."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the link. Safe to call more than once."""
        ...

    @property
    @abstractmethod
    def closed(self) -> bool: ...


class Transport(ABC):
    """Factory for authenticated links.

    Implementations map their failures onto ``ConnectError`` with one of
    the ``ConnectErrorReason`` values.
    """

    @abstractmethod
    async def open(self, url: str, secret: str, timeout: float) -> Link:
        """Open and authenticate a new link within *timeout* seconds."""
        ...
