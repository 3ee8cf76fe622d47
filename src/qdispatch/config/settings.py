from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError

from ..errors import ConfigurationError


class EngineSettings(BaseModel):
    """Brief: Typed tunables for DispatchEngine.

    Inputs:
      - connect_timeout: Stream connect timeout in seconds.
      - send_once_udp: Maximum UDP slots sent per scheduler tick.
      - send_once_stream: Maximum stream slots sent per scheduler tick.
      - usleep_udp: Pause between UDP packets of one batch, microseconds.
      - usleep_stream: Pause between stream packets of one batch, microseconds.
      - read_timeout: Wait after the first send before retrying, ms.
      - read_retry_timeout: Wait after each retry send, ms.
      - read_got_timeout: Silence after the last received packet that ends a
        slot once it has any response, ms.
      - loop_timeout: Receive-phase budget when a send tick was capped, ms.
      - socket_buffer: Maximum bytes read per receive call.
      - send_retry: Maximum retransmissions per slot.

    Outputs:
      - EngineSettings instance; every field is a plain int.

    Notes:
      - Values must be real ints; bools and numeric strings are rejected.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    connect_timeout: StrictInt = Field(default=1, ge=1)
    send_once_udp: StrictInt = Field(default=5, ge=1)
    send_once_stream: StrictInt = Field(default=5, ge=1)
    usleep_udp: StrictInt = Field(default=100, ge=0)
    usleep_stream: StrictInt = Field(default=100, ge=0)
    read_timeout: StrictInt = Field(default=600, ge=0)
    read_retry_timeout: StrictInt = Field(default=200, ge=0)
    read_got_timeout: StrictInt = Field(default=20, ge=0)
    loop_timeout: StrictInt = Field(default=2, ge=0)
    socket_buffer: StrictInt = Field(default=8192, ge=1)
    send_retry: StrictInt = Field(default=1, ge=0)

    def timeout_for_attempt(self, attempts: int) -> int:
        """Brief: Read timeout (ms) that applies after the given send count.

        Inputs:
          - attempts: Number of sends already issued for a slot (>= 1).

        Outputs:
          - int: read_timeout after the first send, read_retry_timeout after.
        """

        return self.read_timeout if attempts <= 1 else self.read_retry_timeout

    @property
    def long_wait(self) -> int:
        return max(self.read_timeout, self.read_retry_timeout)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def build_settings(
    base: Optional[EngineSettings] = None, overrides: Optional[Mapping[str, Any]] = None
) -> EngineSettings:
    """Brief: Build a validated EngineSettings from a base plus overrides.

    Inputs:
      - base: Optional existing settings to start from (defaults when None).
      - overrides: Optional mapping of option name -> int value.

    Outputs:
      - EngineSettings: New validated instance.

    Raises:
      - ConfigurationError: Unknown option name or non-int/out-of-range value.

    Example:
      >>> build_settings(overrides={"send_retry": 3}).send_retry
      3
    """

    data: Dict[str, Any] = (base or EngineSettings()).model_dump()
    for key, value in (overrides or {}).items():
        if key not in EngineSettings.model_fields:
            raise ConfigurationError(f"Unknown engine option {key!r}")
        data[key] = value
    try:
        return EngineSettings(**data)
    except ValidationError as exc:
        raise ConfigurationError(
            f"Invalid engine option value: {_format_validation_error(exc)}"
        ) from exc
