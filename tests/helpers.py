"""Reusable test helpers for bondhome tests.

Provides UdpTestPeer (a loopback stand-in for the bridge's BPUP endpoint),
FakeBus (in-memory MessageBus) and RecordingObserver.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from bondhome.push.session import PushSession
    from bondhome.push.types import SessionState

HANDSHAKE_REPLY = b'{"B":"ZZBL12345"}\n'


class _PeerProtocol(asyncio.DatagramProtocol):
    def __init__(self, peer: UdpTestPeer) -> None:
        self._peer = peer

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self._peer._on_datagram(data, addr)


class UdpTestPeer:
    """Loopback UDP server that plays the bridge.

    Args:
        reply_to_first: Datagram sent back for the first probe (the
            handshake), or ``None`` to never answer.
        reply_to_rest: Datagram sent back for every later probe, if any.
    """

    def __init__(self, reply_to_first: bytes | None = HANDSHAKE_REPLY, reply_to_rest: bytes | None = None) -> None:
        self._reply_first = reply_to_first
        self._reply_rest = reply_to_rest
        self._transport: asyncio.DatagramTransport | None = None
        self.received: list[bytes] = []
        self.client_addr: tuple[str, int] | None = None
        self._received_event = asyncio.Event()

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _PeerProtocol(self),
            local_addr=("127.0.0.1", 0),
        )
        self._transport = transport  # type: ignore[assignment]

    def stop(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    @property
    def address(self) -> tuple[str, int]:
        assert self._transport is not None
        return self._transport.get_extra_info("sockname")[:2]

    def send(self, data: bytes) -> None:
        """Push a datagram to the connected client."""
        assert self._transport is not None
        assert self.client_addr is not None
        self._transport.sendto(data, self.client_addr)

    async def wait_for_datagrams(self, count: int, timeout: float = 2.0) -> list[bytes]:
        async def _wait() -> None:
            while len(self.received) < count:
                self._received_event.clear()
                await self._received_event.wait()

        await asyncio.wait_for(_wait(), timeout=timeout)
        return list(self.received)

    def _on_datagram(self, data: bytes, addr: tuple[str, int]) -> None:
        self.received.append(data)
        self.client_addr = addr
        self._received_event.set()
        reply = self._reply_first if len(self.received) == 1 else self._reply_rest
        if reply is not None and self._transport is not None:
            self._transport.sendto(reply, addr)


class FakeBus:
    """In-memory MessageBus: records publishes and subscriptions."""

    def __init__(self, publish_error: Exception | None = None) -> None:
        self.published: list[tuple[str, bytes]] = []
        self.handlers: dict[str, Callable[[str, bytes], Awaitable[bool]]] = {}
        self._publish_error = publish_error
        self.publish_event = asyncio.Event()

    async def publish(self, topic: str, payload: bytes) -> None:
        if self._publish_error is not None:
            raise self._publish_error
        self.published.append((topic, payload))
        self.publish_event.set()

    async def subscribe(self, topic: str, handler: Callable[[str, bytes], Awaitable[bool]]) -> None:
        self.handlers[topic] = handler

    async def deliver(self, topic: str, payload: bytes) -> bool:
        """Simulate an inbound message; return the handler's ack decision."""
        return await self.handlers[topic](topic, payload)


class RecordingObserver:
    """SessionObserver that records every notification."""

    def __init__(self) -> None:
        self.transitions: list[tuple[SessionState, SessionState]] = []
        self.errors: list[BaseException] = []

    def on_state_change(self, session: PushSession, old: SessionState, new: SessionState) -> None:
        self.transitions.append((old, new))

    def on_error(self, session: PushSession, error: BaseException) -> None:
        self.errors.append(error)


def fast_session_kwargs(**overrides: Any) -> dict[str, Any]:
    """Session timings shrunk so tests run in well under a second."""
    kwargs: dict[str, Any] = {
        "handshake_timeout_s": 0.5,
        "keepalive_period_s": 0.05,
        "keepalive_initial_backoff_s": 0.01,
        "keepalive_budget_s": 0.1,
    }
    kwargs.update(overrides)
    return kwargs
