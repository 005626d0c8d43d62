"""Shared fixtures for tunnel tests."""

from __future__ import annotations

import pytest

from pytunnel.transport import MemoryNetwork, MemoryTransport
from pytunnel.tunnel import Tunnel
from pytunnel.types import DataHandler
from tests.pytunnel.helpers import Inbox, TunnelFactory


@pytest.fixture
def network() -> MemoryNetwork:
    """An empty in-memory network."""
    return MemoryNetwork()


@pytest.fixture
def transport(network: MemoryNetwork) -> MemoryTransport:
    """A memory transport on the `network` fixture."""
    return MemoryTransport(network)


@pytest.fixture
def make_tunnel(transport: MemoryTransport) -> TunnelFactory:
    """Factory creating tunnels on the shared memory transport."""

    async def factory(handler: DataHandler | None = None, **kwargs: object) -> Tunnel:
        if handler is None:
            handler = Inbox()
        return await Tunnel.create(handler, transport=transport, **kwargs)  # type: ignore[arg-type]

    return factory
