"""Health and counter snapshots."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from marvin_drone.models.enums import ChannelState, ConnectionState, SourceStatus


class SourceHealth(BaseModel):
    """Health information for a local source."""

    source_id: str
    status: SourceStatus = SourceStatus.STOPPED
    started_at: datetime | None = None
    last_event_at: datetime | None = None
    events_produced: int = 0
    error: str | None = None


class MultiplexerStats(BaseModel):
    """Uplink counters."""

    published: int = 0
    failed: int = 0
    pending: int = 0
    dropped: dict[str, int] = Field(default_factory=dict)
    sources: list[str] = Field(default_factory=list)

    @property
    def total_dropped(self) -> int:
        return sum(self.dropped.values())


class AgentHealth(BaseModel):
    """Snapshot of the whole agent."""

    hostname: str
    connection: ConnectionState
    channel: ChannelState
    reconnects: int = 0
    events_missed: int = 0
    uplink: MultiplexerStats = Field(default_factory=MultiplexerStats)
    sources: list[SourceHealth] = Field(default_factory=list)
