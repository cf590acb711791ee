"""Shared test fixtures for bondhome tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
import structlog

from tests.helpers import UdpTestPeer

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


@pytest.fixture(autouse=True)
def _reset_structlog() -> None:
    """Keep structlog at its defaults between tests."""
    structlog.reset_defaults()


@pytest.fixture
async def udp_peer() -> AsyncIterator[UdpTestPeer]:
    """A bridge stand-in that answers the handshake once."""
    peer = UdpTestPeer()
    await peer.start()
    yield peer
    peer.stop()


@pytest.fixture
async def silent_peer() -> AsyncIterator[UdpTestPeer]:
    """A bridge stand-in that never answers."""
    peer = UdpTestPeer(reply_to_first=None)
    await peer.start()
    yield peer
    peer.stop()
