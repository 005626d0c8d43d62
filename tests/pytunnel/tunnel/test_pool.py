"""Tests for the outbound connection pool."""

from __future__ import annotations

import asyncio

import pytest

from pytunnel.exceptions import TunnelConnectionError
from pytunnel.identity import IdentityKeypair
from pytunnel.transport import MemoryEndpoint, MemoryNetwork, MemoryTransport
from pytunnel.tunnel import ConnectionPool
from pytunnel.types import ConnectionState


async def bind_pair(transport: MemoryTransport) -> tuple[MemoryEndpoint, MemoryEndpoint]:
    """Bind a dial-only endpoint and a listening peer."""
    local = await transport.bind(IdentityKeypair.generate(), listen=False)
    peer = await transport.bind(IdentityKeypair.generate(), listen=True)
    return local, peer


class TestGetOrConnect:
    """Tests for ConnectionPool.get_or_connect."""

    @pytest.mark.anyio
    async def test_connects_lazily(self, transport: MemoryTransport, network: MemoryNetwork) -> None:
        """Nothing is dialed until a connection is requested."""
        local, peer = await bind_pair(transport)
        pool = ConnectionPool(local)

        assert len(pool) == 0
        assert network.total_connect_attempts == 0

        connection = await pool.get_or_connect(peer.public_key)

        assert connection.remote_public_key == peer.public_key
        assert pool.state(peer.public_key) is ConnectionState.ACTIVE
        assert peer.public_key in pool
        assert network.connect_attempts[peer.public_key] == 1

    @pytest.mark.anyio
    async def test_reuses_active_connection(
        self, transport: MemoryTransport, network: MemoryNetwork
    ) -> None:
        """Later requests return the cached connection."""
        local, peer = await bind_pair(transport)
        pool = ConnectionPool(local)

        first = await pool.get_or_connect(peer.public_key)
        second = await pool.get_or_connect(peer.public_key)

        assert first is second
        assert network.connect_attempts[peer.public_key] == 1

    @pytest.mark.anyio
    async def test_concurrent_requests_share_attempt(
        self, transport: MemoryTransport, network: MemoryNetwork
    ) -> None:
        """Requests arriving while CONNECTING join the attempt in flight."""
        local, peer = await bind_pair(transport)
        pool = ConnectionPool(local)
        network.connect_delay_secs = 0.02

        connections = await asyncio.gather(
            *(pool.get_or_connect(peer.public_key) for _ in range(5))
        )

        assert all(c is connections[0] for c in connections)
        assert network.connect_attempts[peer.public_key] == 1
        assert len(pool) == 1

    @pytest.mark.anyio
    async def test_state_while_connecting(
        self, transport: MemoryTransport, network: MemoryNetwork
    ) -> None:
        """An attempt in flight is visible as CONNECTING."""
        local, peer = await bind_pair(transport)
        pool = ConnectionPool(local)
        network.connect_gate = asyncio.Event()

        task = asyncio.create_task(pool.get_or_connect(peer.public_key))
        await asyncio.sleep(0.01)
        assert pool.state(peer.public_key) is ConnectionState.CONNECTING

        network.connect_gate.set()
        await asyncio.wait_for(task, timeout=1.0)
        assert pool.state(peer.public_key) is ConnectionState.ACTIVE

    @pytest.mark.anyio
    async def test_unrelated_peers_do_not_wait(
        self, transport: MemoryTransport, network: MemoryNetwork
    ) -> None:
        """A stalled attempt to one peer does not block another peer."""
        local, slow_peer = await bind_pair(transport)
        fast_peer = await transport.bind(IdentityKeypair.generate(), listen=True)
        pool = ConnectionPool(local)

        network.connect_gate = asyncio.Event()
        slow = asyncio.create_task(pool.get_or_connect(slow_peer.public_key))
        await asyncio.sleep(0.01)
        network.connect_gate = None

        connection = await asyncio.wait_for(pool.get_or_connect(fast_peer.public_key), timeout=1.0)

        assert connection.remote_public_key == fast_peer.public_key
        assert not slow.done()

        await pool.close_all()
        with pytest.raises(TunnelConnectionError):
            await slow

    @pytest.mark.anyio
    async def test_failure_removes_entry(
        self, transport: MemoryTransport, network: MemoryNetwork
    ) -> None:
        """A failed attempt leaves no entry behind and is not retried."""
        local = await transport.bind(IdentityKeypair.generate(), listen=False)
        peer = IdentityKeypair.generate().public_key()
        pool = ConnectionPool(local)

        with pytest.raises(TunnelConnectionError, match="Failed to connect"):
            await pool.get_or_connect(peer)

        assert peer not in pool
        assert pool.state(peer) is ConnectionState.CLOSED
        assert network.connect_attempts[peer] == 1

    @pytest.mark.anyio
    async def test_retry_after_failure_starts_fresh(
        self, transport: MemoryTransport, network: MemoryNetwork
    ) -> None:
        """The next call after a failure dials again."""
        local = await transport.bind(IdentityKeypair.generate(), listen=False)
        peer_key = IdentityKeypair.generate()
        pool = ConnectionPool(local)

        with pytest.raises(TunnelConnectionError):
            await pool.get_or_connect(peer_key.public_key())

        await transport.bind(peer_key, listen=True)
        connection = await pool.get_or_connect(peer_key.public_key())

        assert connection.remote_public_key == peer_key.public_key()
        assert network.connect_attempts[peer_key.public_key()] == 2

    @pytest.mark.anyio
    async def test_failure_reaches_every_joiner(
        self, transport: MemoryTransport, network: MemoryNetwork
    ) -> None:
        """All callers sharing a failed attempt see the failure."""
        local = await transport.bind(IdentityKeypair.generate(), listen=False)
        peer = IdentityKeypair.generate().public_key()
        pool = ConnectionPool(local)
        network.connect_delay_secs = 0.02

        results = await asyncio.gather(
            *(pool.get_or_connect(peer) for _ in range(3)), return_exceptions=True
        )

        assert all(isinstance(r, TunnelConnectionError) for r in results)
        assert network.connect_attempts[peer] == 1

    @pytest.mark.anyio
    async def test_cancelled_waiter_keeps_attempt(
        self, transport: MemoryTransport, network: MemoryNetwork
    ) -> None:
        """Cancelling one caller does not cancel the shared attempt."""
        local, peer = await bind_pair(transport)
        pool = ConnectionPool(local)
        network.connect_gate = asyncio.Event()

        first = asyncio.create_task(pool.get_or_connect(peer.public_key))
        second = asyncio.create_task(pool.get_or_connect(peer.public_key))
        await asyncio.sleep(0.01)

        first.cancel()
        network.connect_gate.set()

        connection = await asyncio.wait_for(second, timeout=1.0)
        assert connection.remote_public_key == peer.public_key
        assert pool.state(peer.public_key) is ConnectionState.ACTIVE
        with pytest.raises(asyncio.CancelledError):
            await first

    @pytest.mark.anyio
    async def test_closed_connection_is_replaced(
        self, transport: MemoryTransport, network: MemoryNetwork
    ) -> None:
        """A cached connection the peer closed is dropped and redialed."""
        local, peer = await bind_pair(transport)
        pool = ConnectionPool(local)

        stale = await pool.get_or_connect(peer.public_key)
        await stale.close()

        fresh = await pool.get_or_connect(peer.public_key)

        assert fresh is not stale
        assert not fresh.is_closed
        assert network.connect_attempts[peer.public_key] == 2


class TestClose:
    """Tests for ConnectionPool.close and close_all."""

    @pytest.mark.anyio
    async def test_close_active(self, transport: MemoryTransport) -> None:
        """Closing releases the connection and removes the entry."""
        local, peer = await bind_pair(transport)
        pool = ConnectionPool(local)
        connection = await pool.get_or_connect(peer.public_key)

        await pool.close(peer.public_key)

        assert connection.is_closed
        assert peer.public_key not in pool
        assert pool.state(peer.public_key) is ConnectionState.CLOSED

    @pytest.mark.anyio
    async def test_close_unknown_is_noop(self, transport: MemoryTransport) -> None:
        """Closing a peer without an entry does nothing."""
        local = await transport.bind(IdentityKeypair.generate(), listen=False)
        pool = ConnectionPool(local)

        await pool.close(IdentityKeypair.generate().public_key())

        assert len(pool) == 0

    @pytest.mark.anyio
    async def test_close_then_reconnect(
        self, transport: MemoryTransport, network: MemoryNetwork
    ) -> None:
        """After close the next request establishes a fresh connection."""
        local, peer = await bind_pair(transport)
        pool = ConnectionPool(local)

        first = await pool.get_or_connect(peer.public_key)
        await pool.close(peer.public_key)
        second = await pool.get_or_connect(peer.public_key)

        assert second is not first
        assert network.connect_attempts[peer.public_key] == 2

    @pytest.mark.anyio
    async def test_close_cancels_connecting(
        self, transport: MemoryTransport, network: MemoryNetwork
    ) -> None:
        """Closing a CONNECTING entry fails its waiters."""
        local, peer = await bind_pair(transport)
        pool = ConnectionPool(local)
        network.connect_gate = asyncio.Event()

        waiters = [asyncio.create_task(pool.get_or_connect(peer.public_key)) for _ in range(2)]
        await asyncio.sleep(0.01)

        await pool.close(peer.public_key)

        for waiter in waiters:
            with pytest.raises(TunnelConnectionError, match="cancelled"):
                await waiter
        assert peer.public_key not in pool

    @pytest.mark.anyio
    async def test_close_all(self, transport: MemoryTransport, network: MemoryNetwork) -> None:
        """close_all handles ACTIVE and CONNECTING entries alike."""
        local, active_peer = await bind_pair(transport)
        pending_peer = await transport.bind(IdentityKeypair.generate(), listen=True)
        pool = ConnectionPool(local)

        active = await pool.get_or_connect(active_peer.public_key)
        network.connect_gate = asyncio.Event()
        pending = asyncio.create_task(pool.get_or_connect(pending_peer.public_key))
        await asyncio.sleep(0.01)

        await pool.close_all()

        assert active.is_closed
        with pytest.raises(TunnelConnectionError):
            await pending
        assert len(pool) == 0

    @pytest.mark.anyio
    async def test_close_all_empty(self, transport: MemoryTransport) -> None:
        """close_all on an empty pool is a no-op."""
        local = await transport.bind(IdentityKeypair.generate(), listen=False)
        pool = ConnectionPool(local)

        await pool.close_all()

        assert len(pool) == 0

    @pytest.mark.anyio
    async def test_cancel_pending_spares_active(
        self, transport: MemoryTransport, network: MemoryNetwork
    ) -> None:
        """cancel_pending only touches attempts in flight."""
        local, active_peer = await bind_pair(transport)
        pending_peer = await transport.bind(IdentityKeypair.generate(), listen=True)
        pool = ConnectionPool(local)

        active = await pool.get_or_connect(active_peer.public_key)
        network.connect_gate = asyncio.Event()
        pending = asyncio.create_task(pool.get_or_connect(pending_peer.public_key))
        await asyncio.sleep(0.01)

        await pool.cancel_pending()

        assert not active.is_closed
        assert pool.state(active_peer.public_key) is ConnectionState.ACTIVE
        assert pending_peer.public_key not in pool
        with pytest.raises(TunnelConnectionError):
            await pending
