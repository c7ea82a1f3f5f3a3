"""Inbound, outbound and local event models."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from marvin_drone.models.enums import DeliveryMode, EventKind


class Frame(BaseModel):
    """One message exchanged with a link, independent of its wire encoding."""

    join_ref: str | None = None
    ref: str | None = None
    topic: str
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)


class InboundEvent(BaseModel):
    """An event received on a joined channel."""

    kind: EventKind
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    sequence: int = Field(default=0, ge=0)
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class EventsMissed(BaseModel):
    """Stands in for inbound events dropped before they could be dispatched."""

    count: int = Field(gt=0)
    last_sequence: int = Field(default=0, ge=0)


class OutboundMessage(BaseModel):
    """A message headed for the control server."""

    topic: str
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)
    delivery: DeliveryMode = DeliveryMode.FIRE_AND_FORGET
    timeout: float | None = Field(default=None, gt=0.0)
    correlation_id: str | None = None


class TailLine(BaseModel):
    """A line appended to a tailed file."""

    type: Literal["tail_line"] = "tail_line"
    path: str
    text: str


class ProbeResult(BaseModel):
    """One reachability sample for an address."""

    type: Literal["probe_result"] = "probe_result"
    address: str
    reachable: bool
    latency_ms: float | None = Field(default=None, ge=0.0)


LocalPayload = Annotated[TailLine | ProbeResult, Field(discriminator="type")]


class LocalEvent(BaseModel):
    """An event observed locally by a source."""

    source_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    payload: LocalPayload

    @property
    def event_name(self) -> str:
        return self.payload.type

    def to_payload(self, hostname: str) -> dict[str, Any]:
        """Flatten into the outbound payload sent to the server."""
        data = self.payload.model_dump(exclude={"type"})
        data["hostname"] = hostname
        data["source"] = self.source_id
        data["timestamp"] = self.timestamp.isoformat()
        return data
