"""Reconnect and retry policy models."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class BackoffPolicy(BaseModel):
    """Exponential backoff with full jitter for reconnects and rejoins."""

    base_delay_seconds: float = Field(default=1.0, gt=0.0)
    max_delay_seconds: float = Field(default=30.0, gt=0.0)
    exponential_base: float = Field(default=2.0, ge=1.0)

    @model_validator(mode="after")
    def _check_cap(self) -> BackoffPolicy:
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class RetryPolicy(BaseModel):
    """Configures retry behaviour for request/reply uplink messages."""

    max_retries: int = Field(default=3, ge=0)
    base_delay_seconds: float = Field(default=1.0, gt=0.0)
    max_delay_seconds: float = Field(default=10.0, gt=0.0)
    exponential_base: float = Field(default=2.0, gt=0.0)
