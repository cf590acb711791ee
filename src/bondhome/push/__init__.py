"""Client for the bridge's BPUP push-notification feed."""

from bondhome.push.decoder import decode_update, encode_update
from bondhome.push.errors import (
    ClosedError,
    DecodeError,
    HandshakeError,
    KeepaliveExhaustedError,
    PushError,
    PushTransportError,
    ReceiveTimeoutError,
)
from bondhome.push.keepalive import Backoff, KeepaliveResult, KeepaliveScheduler, KeepaliveStatus
from bondhome.push.session import PushSession, SessionObserver, open_session
from bondhome.push.types import HttpMethod, SessionState, Update

__all__ = [
    "Backoff",
    "ClosedError",
    "DecodeError",
    "HandshakeError",
    "HttpMethod",
    "KeepaliveExhaustedError",
    "KeepaliveResult",
    "KeepaliveScheduler",
    "KeepaliveStatus",
    "PushError",
    "PushSession",
    "PushTransportError",
    "ReceiveTimeoutError",
    "SessionObserver",
    "SessionState",
    "Update",
    "decode_update",
    "encode_update",
    "open_session",
]
