"""Exceptions raised by the push-notification client."""

from __future__ import annotations

__all__ = [
    "ClosedError",
    "DecodeError",
    "HandshakeError",
    "KeepaliveExhaustedError",
    "PushError",
    "PushTransportError",
    "ReceiveTimeoutError",
]


class PushError(Exception):
    """Base class for all push-client errors."""


class HandshakeError(PushError):
    """The transport could not be opened or the bridge never answered the handshake."""


class ReceiveTimeoutError(PushError, TimeoutError):
    """No datagram arrived within the caller-supplied receive timeout."""


class DecodeError(PushError, ValueError):
    """A datagram arrived but was not a well-formed update.

    The underlying parse failure is chained as ``__cause__``.
    """

    def __init__(self, raw: str, reason: str) -> None:
        super().__init__(f"cannot decode update {raw!r}: {reason}")
        self.raw = raw
        self.reason = reason


class ClosedError(PushError):
    """The session is closed; the consumption loop must stop.

    ``reason`` holds the session-fatal error when the session was closed
    by keepalive exhaustion rather than by its owner.
    """

    def __init__(self, message: str = "push session is closed", reason: BaseException | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class KeepaliveExhaustedError(PushError):
    """Keepalive retries used up the whole backoff budget."""

    def __init__(self, attempts: int, elapsed_s: float, last_error: BaseException | None) -> None:
        super().__init__(
            f"keepalive failed {attempts} times over {elapsed_s:.1f}s; last error: {last_error}"
        )
        self.attempts = attempts
        self.elapsed_s = elapsed_s
        self.last_error = last_error


class PushTransportError(PushError):
    """The operating system reported an error on the push socket."""
