"""Push-protocol type definitions and session constants.

The bridge speaks BPUP: newline-terminated JSON records over UDP, with a
single ``"\\n"`` datagram used for both the initial handshake and the
periodic keepalive.
"""

from __future__ import annotations

__all__ = [
    "DEFAULT_HANDSHAKE_TIMEOUT_S",
    "DEFAULT_KEEPALIVE_BUDGET_S",
    "DEFAULT_KEEPALIVE_INITIAL_BACKOFF_S",
    "DEFAULT_KEEPALIVE_PERIOD_S",
    "DEFAULT_PUSH_PORT",
    "MAX_HANDSHAKE_SIZE",
    "MAX_UPDATE_SIZE",
    "PROBE",
    "HttpMethod",
    "SessionState",
    "Update",
]

from enum import IntEnum, StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

# --- Wire constants ---

PROBE = b"\n"
MAX_UPDATE_SIZE = 512
MAX_HANDSHAKE_SIZE = 256
DEFAULT_PUSH_PORT = 30007

# --- Session timing ---

DEFAULT_HANDSHAKE_TIMEOUT_S = 5.0
DEFAULT_KEEPALIVE_PERIOD_S = 60.0
DEFAULT_KEEPALIVE_INITIAL_BACKOFF_S = 1.0
DEFAULT_KEEPALIVE_BUDGET_S = 120.0


class SessionState(StrEnum):
    """Lifecycle state of a push session."""

    CREATED = "created"
    HANDSHAKING = "handshaking"
    ACTIVE = "active"
    CLOSED = "closed"


class HttpMethod(IntEnum):
    """Verb that produced an update (the ``m`` field)."""

    GET = 0
    POST = 1
    PUT = 2
    DELETE = 3
    PATCH = 4


class Update(BaseModel):
    """One inbound message from the bridge.

    Exactly one of ``topic`` / ``error_msg`` is set on a meaningful
    message. Both empty means a no-op, e.g. the echo of a keepalive.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    # Strict: a string where a number belongs (or vice versa) is malformed.
    bond_id: str = Field(default="", alias="B", strict=True)
    topic: str = Field(default="", alias="t", strict=True)
    status_code: int = Field(default=0, alias="s", strict=True)
    http_method: int = Field(default=0, alias="m", strict=True)
    body: Any = Field(default=None, alias="b")
    error_id: int = Field(default=0, alias="err_id", strict=True)
    error_msg: str = Field(default="", alias="err_msg", strict=True)

    @field_validator("bond_id", "topic", "status_code", "http_method", "error_id", "error_msg", mode="before")
    @classmethod
    def _null_is_default(cls, value: Any, info: ValidationInfo) -> Any:
        """A JSON ``null`` leaves the field at its zero value."""
        if value is None:
            return cls.model_fields[info.field_name].default
        return value

    @property
    def is_error(self) -> bool:
        return not self.topic and bool(self.error_msg)

    @property
    def is_noop(self) -> bool:
        return not self.topic and not self.error_msg

    @property
    def method(self) -> HttpMethod | None:
        """Return ``http_method`` as an enum, or ``None`` if unknown."""
        try:
            return HttpMethod(self.http_method)
        except ValueError:
            return None
