"""Push session: one subscription to a bridge's BPUP feed.

A session owns a connected UDP socket. ``start()`` sends the handshake
probe and waits for any reply, then arms the keepalive scheduler. The
caller drives ``receive()`` in its own loop while the scheduler keeps the
subscription alive in a background task. ``close()`` (or a fatal
keepalive failure) ends the session for good.

Example::

    async with await open_session("192.168.1.20:30007") as session:
        while True:
            try:
                update = await session.receive(10.0)
            except ReceiveTimeoutError:
                continue
            ...
"""

from __future__ import annotations

__all__ = [
    "PushSession",
    "SessionObserver",
    "open_session",
]

import asyncio
import socket
from typing import TYPE_CHECKING, Protocol

import structlog

from bondhome.push.decoder import decode_update
from bondhome.push.errors import (
    ClosedError,
    HandshakeError,
    KeepaliveExhaustedError,
    PushTransportError,
    ReceiveTimeoutError,
)
from bondhome.push.keepalive import KeepaliveScheduler
from bondhome.push.types import (
    DEFAULT_HANDSHAKE_TIMEOUT_S,
    DEFAULT_KEEPALIVE_BUDGET_S,
    DEFAULT_KEEPALIVE_INITIAL_BACKOFF_S,
    DEFAULT_KEEPALIVE_PERIOD_S,
    MAX_HANDSHAKE_SIZE,
    MAX_UPDATE_SIZE,
    PROBE,
    SessionState,
    Update,
)

if TYPE_CHECKING:
    from types import TracebackType

logger = structlog.get_logger(component="push")

MAX_QUEUE_SIZE = 1000

Address = str | tuple[str, int]

# Queue items: a datagram, an OS error reported by the transport, or None
# once the transport is closed.
_Item = bytes | OSError | None


class SessionObserver(Protocol):
    """Optional hooks notified of session transitions and errors."""

    def on_state_change(self, session: PushSession, old: SessionState, new: SessionState) -> None: ...

    def on_error(self, session: PushSession, error: BaseException) -> None: ...


def _split_address(address: Address) -> tuple[str, int]:
    if isinstance(address, tuple):
        return address
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit():
        msg = f"expected 'host:port', got {address!r}"
        raise ValueError(msg)
    return host.strip("[]"), int(port)


class _PushProtocol(asyncio.DatagramProtocol):
    """Feeds datagrams and transport events into the session's queue."""

    def __init__(self, queue: asyncio.Queue[_Item]) -> None:
        self._queue = queue

    def _put(self, item: _Item) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("push_queue_full", dropped=repr(item)[:80])

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self._put(data)

    def error_received(self, exc: Exception) -> None:
        if isinstance(exc, OSError):
            self._put(exc)

    def connection_lost(self, exc: Exception | None) -> None:
        self._put(None)


class PushSession:
    """Client side of one BPUP subscription.

    Args:
        address: Bridge push endpoint as ``"host:port"`` or ``(host, port)``.
        handshake_timeout_s: Deadline for the handshake reply.
        keepalive_period_s: Time between keepalive probes.
        keepalive_initial_backoff_s: First retry delay after a failed probe.
        keepalive_budget_s: Total retry wait before the session is failed.
        observer: Optional :class:`SessionObserver`.
    """

    def __init__(
        self,
        address: Address,
        *,
        handshake_timeout_s: float = DEFAULT_HANDSHAKE_TIMEOUT_S,
        keepalive_period_s: float = DEFAULT_KEEPALIVE_PERIOD_S,
        keepalive_initial_backoff_s: float = DEFAULT_KEEPALIVE_INITIAL_BACKOFF_S,
        keepalive_budget_s: float = DEFAULT_KEEPALIVE_BUDGET_S,
        observer: SessionObserver | None = None,
    ) -> None:
        self._host, self._port = _split_address(address)
        self._handshake_timeout = handshake_timeout_s
        self._observer = observer
        self._state = SessionState.CREATED
        self._sock: socket.socket | None = None
        self._transport: asyncio.DatagramTransport | None = None
        self._queue: asyncio.Queue[_Item] = asyncio.Queue(MAX_QUEUE_SIZE)
        self._cancelled = asyncio.Event()
        self._closed = asyncio.Event()
        self._fatal_error: KeepaliveExhaustedError | None = None
        self._keepalive = KeepaliveScheduler(
            self._send_probe,
            self._cancelled,
            self._on_keepalive_fatal,
            period_s=keepalive_period_s,
            initial_backoff_s=keepalive_initial_backoff_s,
            budget_s=keepalive_budget_s,
        )

    def __repr__(self) -> str:
        return f"PushSession({self._host}:{self._port}, state={self._state})"

    # --- Properties ---------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def address(self) -> tuple[str, int]:
        return self._host, self._port

    @property
    def local_address(self) -> tuple[str, int] | None:
        """Local socket address, once the transport is open."""
        if self._sock is None or self._sock.fileno() < 0:
            return None
        return self._sock.getsockname()[:2]

    @property
    def fatal_error(self) -> KeepaliveExhaustedError | None:
        """The keepalive failure that closed the session, if any."""
        return self._fatal_error

    # --- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Open the transport, perform the handshake and arm the keepalive.

        Raises:
            HandshakeError: If the transport cannot be opened or no reply
                arrives within the handshake deadline. The session is left
                unusable and should be closed.
        """
        if self._state is not SessionState.CREATED:
            msg = f"cannot start a session in state {self._state}"
            raise RuntimeError(msg)
        self._set_state(SessionState.HANDSHAKING)

        try:
            await self._open_transport()
            self._send_probe()
            item = await asyncio.wait_for(self._queue.get(), timeout=self._handshake_timeout)
        except HandshakeError as exc:
            self._notify_error(exc)
            raise
        except TimeoutError as exc:
            error = HandshakeError(
                f"no handshake reply from {self._host}:{self._port} "
                f"within {self._handshake_timeout}s"
            )
            self._notify_error(error)
            raise error from exc
        except OSError as exc:
            error = HandshakeError(f"handshake with {self._host}:{self._port} failed: {exc}")
            self._notify_error(error)
            raise error from exc

        if item is None:
            error = HandshakeError("session closed during handshake")
            self._notify_error(error)
            raise error
        if isinstance(item, OSError):
            error = HandshakeError(f"handshake with {self._host}:{self._port} failed: {item}")
            self._notify_error(error)
            raise error from item

        # Any reply counts as an ack; its content is not validated.
        logger.info(
            "push_handshake_complete",
            bridge=f"{self._host}:{self._port}",
            reply=item[:MAX_HANDSHAKE_SIZE].decode("utf-8", errors="replace").strip(),
        )
        self._set_state(SessionState.ACTIVE)
        self._keepalive.arm()

    async def close(self) -> None:
        """Stop the keepalive and release the transport. Idempotent."""
        self._shutdown()
        await self._keepalive.join()

    async def wait_closed(self) -> None:
        """Block until the session is closed by its owner or by a fatal error."""
        await self._closed.wait()

    async def __aenter__(self) -> PushSession:
        if self._state is SessionState.CREATED:
            await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    # --- Receive ------------------------------------------------------------

    async def receive(self, timeout: float) -> Update:
        """Wait up to *timeout* seconds for one update.

        A no-op update (no topic and no error) is returned like any other.

        Raises:
            ReceiveTimeoutError: Nothing arrived within *timeout*.
            DecodeError: A datagram arrived but was malformed. The session
                is unaffected.
            ClosedError: The session is closed, or was closed while waiting.
            PushTransportError: The OS reported an error on the socket.
        """
        if self._state is SessionState.CLOSED:
            raise self._closed_error()
        if self._state is not SessionState.ACTIVE:
            msg = f"cannot receive in state {self._state}"
            raise RuntimeError(msg)

        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except TimeoutError:
            raise ReceiveTimeoutError(f"no update within {timeout}s") from None

        if item is None:
            # Leave the marker for any other waiter.
            self._queue.put_nowait(None)
            raise self._closed_error()
        if isinstance(item, OSError):
            self._notify_error(item)
            raise PushTransportError(f"push socket error: {item}") from item

        if len(item) > MAX_UPDATE_SIZE:
            logger.warning("push_datagram_oversized", size=len(item), limit=MAX_UPDATE_SIZE)
        logger.debug("push_datagram_received", data=item.decode("utf-8", errors="replace"))
        return decode_update(item)

    # --- Internals ----------------------------------------------------------

    async def _open_transport(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(self._host, self._port, type=socket.SOCK_DGRAM)
        except OSError as exc:
            msg = f"cannot resolve {self._host}:{self._port}: {exc}"
            raise HandshakeError(msg) from exc
        family, type_, proto, _, sockaddr = infos[0]

        sock = socket.socket(family, type_, proto)
        try:
            sock.setblocking(False)
            sock.connect(sockaddr)
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _PushProtocol(self._queue),
                sock=sock,
            )
        except BaseException:
            sock.close()
            raise
        if self._state is SessionState.CLOSED:
            # close() ran while the address was being resolved or the endpoint created.
            transport.close()
            raise HandshakeError("session closed during handshake")
        self._sock = sock
        self._transport = transport  # type: ignore[assignment]
        logger.info(
            "push_transport_opened",
            bridge=f"{self._host}:{self._port}",
            local=str(sock.getsockname()),
        )

    def _send_probe(self) -> None:
        if self._sock is None or self._state is SessionState.CLOSED:
            raise ClosedError()
        self._sock.send(PROBE)

    def _on_keepalive_fatal(self, error: KeepaliveExhaustedError) -> None:
        self._fatal_error = error
        self._notify_error(error)
        self._shutdown()

    def _shutdown(self) -> None:
        if self._state is SessionState.CLOSED:
            return
        self._set_state(SessionState.CLOSED)
        self._cancelled.set()
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        elif self._sock is not None:
            self._sock.close()
        self._sock = None
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Drain so blocked receivers can see the close marker.
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(None)
        self._closed.set()
        logger.info("push_session_closed", bridge=f"{self._host}:{self._port}", fatal=self._fatal_error is not None)

    def _closed_error(self) -> ClosedError:
        if self._fatal_error is not None:
            return ClosedError(f"push session failed: {self._fatal_error}", reason=self._fatal_error)
        return ClosedError()

    def _set_state(self, new: SessionState) -> None:
        old = self._state
        self._state = new
        logger.debug("push_session_state", old=str(old), new=str(new))
        if self._observer is not None:
            self._observer.on_state_change(self, old, new)

    def _notify_error(self, error: BaseException) -> None:
        if self._observer is not None:
            self._observer.on_error(self, error)


async def open_session(address: Address, **kwargs: object) -> PushSession:
    """Create a session, handshake and arm the keepalive.

    The session is closed again if the handshake fails.

    Raises:
        HandshakeError: If the bridge cannot be reached.
    """
    session = PushSession(address, **kwargs)  # type: ignore[arg-type]
    try:
        await session.start()
    except BaseException:
        await session.close()
        raise
    return session
