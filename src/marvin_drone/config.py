"""Agent configuration."""

from __future__ import annotations

import socket
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    IPvAnyAddress,
    SecretStr,
    ValidationError,
    field_validator,
)

from marvin_drone.core.errors import ConfigError
from marvin_drone.models.policy import BackoffPolicy, RetryPolicy

DEFAULT_MARVIN_URL = "https://wa7vc.org/marvin"
DEFAULT_TOPIC = "drone:cnc"
SECRET_ENV_VAR = "MARVIN_SECRET"


def system_hostname() -> str:
    """Return this machine's hostname.

    Raises:
        ConfigError: if the system reports no usable hostname.
    """
    try:
        name = socket.gethostname()
    except OSError as exc:
        raise ConfigError(f"cannot determine hostname ({exc}); pass --hostname") from exc
    if not name:
        raise ConfigError("cannot determine hostname; pass --hostname")
    return name


class AgentConfig(BaseModel):
    """Everything the agent needs, validated once at startup.

    Use :meth:`load` rather than the constructor to get ``ConfigError``
    instead of pydantic's ``ValidationError``, and to fill in the system
    hostname when none is given.
    """

    model_config = ConfigDict(frozen=True)

    hostname: str = Field(min_length=1)
    secret: SecretStr
    marvin: str = DEFAULT_MARVIN_URL
    topic: str = Field(default=DEFAULT_TOPIC, min_length=1)
    tail: list[Path] = Field(default_factory=list)
    ping: list[IPvAnyAddress] = Field(default_factory=list)

    connect_timeout: float = Field(default=10.0, gt=0.0)
    join_timeout: float = Field(default=15.0, gt=0.0)
    call_timeout: float = Field(default=5.0, gt=0.0)
    handshake_timeout: float = Field(default=5.0, gt=0.0)
    ping_interval: float = Field(default=5.0, gt=0.0)
    buffer_size: int = Field(default=100, ge=1)
    inbound_buffer_size: int = Field(default=1000, ge=1)
    startup_connect_attempts: int = Field(default=3, ge=1)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    critical_retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @field_validator("marvin")
    @classmethod
    def validate_marvin_url(cls, v: str) -> str:
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https", "ws", "wss") or not parsed.hostname:
            raise ValueError(f"marvin must be an http(s) or ws(s) URL, got {v!r}")
        return v

    @field_validator("secret")
    @classmethod
    def validate_secret(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value():
            raise ValueError(f"secret must not be empty (set --secret or {SECRET_ENV_VAR})")
        return v

    @field_validator("tail")
    @classmethod
    def validate_tail(cls, v: list[Path]) -> list[Path]:
        for path in v:
            if not path.is_file():
                raise ValueError(f"cannot tail {path}: not a file")
        if len(set(v)) != len(v):
            raise ValueError("tail lists the same file more than once")
        return v

    @field_validator("ping")
    @classmethod
    def validate_ping(cls, v: list[Any]) -> list[Any]:
        if len(set(v)) != len(v):
            raise ValueError("ping lists the same address more than once")
        return v

    @classmethod
    def load(cls, **values: Any) -> AgentConfig:
        """Validate *values* into a config.

        ``None`` values are treated as missing so CLI defaults apply.

        Raises:
            ConfigError: on any invalid or missing value.
        """
        values = {k: v for k, v in values.items() if v is not None}
        if "hostname" not in values:
            values["hostname"] = system_hostname()
        try:
            return cls(**values)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
                for err in exc.errors()
            )
            raise ConfigError(f"invalid configuration: {problems}") from exc
