"""
Per-peer pool of outbound connections.

Connections are created lazily on the first send to a peer and reused by every
later send. The pool keeps at most one entry per public key::

    absent --get_or_connect--> CONNECTING --success--> ACTIVE
                                   |                      |
                                failure                 close
                                   v                      v
                                 absent     <---------  CLOSED

Concurrent callers for a peer that is still CONNECTING join the attempt in
flight instead of dialing again. Each entry owns the task running its attempt,
so unrelated peers never wait on each other and no lock spans the whole pool.

A caller that gets cancelled while waiting does not cancel the shared attempt.
Only `close`, `close_all` and `cancel_pending` do that.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from ..exceptions import TunnelConnectionError
from ..identity import PublicKey
from ..transport.types import Connection, Endpoint
from ..types import ConnectionState

logger = logging.getLogger(__name__)


@dataclass(slots=True, eq=False)
class PoolEntry:
    """Pool slot for one remote public key."""

    public_key: PublicKey
    """Peer this entry connects to."""

    state: ConnectionState = ConnectionState.CONNECTING
    """Current state. Entries start out CONNECTING."""

    connection: Connection | None = None
    """Established connection, set once ACTIVE."""

    task: asyncio.Task[Connection] | None = field(default=None, repr=False)
    """Task running the connection attempt."""


def _retrieve_exception(task: asyncio.Task[Connection]) -> None:
    # Attempts can fail with every waiter gone. Mark the error as seen so
    # asyncio does not log it as unretrieved.
    if not task.cancelled():
        task.exception()


class ConnectionPool:
    """
    Outbound connections of one endpoint, keyed by remote public key.

    Example usage:
        pool = ConnectionPool(endpoint)
        connection = await pool.get_or_connect(peer)
        await connection.send(b"hello")
        await pool.close_all()
    """

    def __init__(self, endpoint: Endpoint) -> None:
        """
        Create an empty pool.

        Args:
            endpoint: Local endpoint used to dial peers.
        """
        self._endpoint = endpoint
        self._entries: dict[PublicKey, PoolEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, public_key: object) -> bool:
        return public_key in self._entries

    def state(self, public_key: PublicKey) -> ConnectionState:
        """
        Return the state of the entry for a peer.

        Peers without an entry report CLOSED.
        """
        entry = self._entries.get(public_key)
        return entry.state if entry is not None else ConnectionState.CLOSED

    async def get_or_connect(self, public_key: PublicKey) -> Connection:
        """
        Return a connection to the peer, dialing it if needed.

        An ACTIVE connection is returned as is. A CONNECTING attempt is joined.
        Otherwise a new attempt starts. A cached connection the transport
        reports as closed is dropped and replaced by a fresh attempt.

        Args:
            public_key: Peer to connect to.

        Returns:
            An established connection.

        Raises:
            TunnelConnectionError: If the attempt fails or is cancelled by
                `close`. The failed entry is removed, so the next call dials
                again.
        """
        entry = self._entries.get(public_key)
        stale: Connection | None = None

        if entry is not None and entry.state is ConnectionState.ACTIVE:
            assert entry.connection is not None
            if not entry.connection.is_closed:
                return entry.connection

            logger.debug("Dropping closed connection to %s", public_key)
            stale = entry.connection
            entry.state = ConnectionState.CLOSED
            del self._entries[public_key]
            entry = None

        if entry is None:
            entry = self._start_attempt(public_key)

        if stale is not None:
            await stale.close()

        return await self._join(entry)

    async def close(self, public_key: PublicKey) -> None:
        """
        Close and remove the entry for a peer.

        A CONNECTING attempt is cancelled and its waiters fail with
        `TunnelConnectionError`. No-op if the peer has no entry.
        """
        entry = self._entries.pop(public_key, None)
        if entry is None:
            return
        await self._close_entry(entry)

    async def close_all(self) -> None:
        """Close every entry, cancelling attempts still in flight."""
        entries = list(self._entries.values())
        self._entries.clear()

        for entry in entries:
            await self._close_entry(entry)

        if entries:
            logger.debug("Closed %d pooled connections", len(entries))

    async def cancel_pending(self) -> None:
        """Cancel every CONNECTING attempt. ACTIVE entries are left alone."""
        pending = [
            entry
            for entry in self._entries.values()
            if entry.state is ConnectionState.CONNECTING
        ]
        for entry in pending:
            del self._entries[entry.public_key]
            await self._close_entry(entry)

    def _start_attempt(self, public_key: PublicKey) -> PoolEntry:
        entry = PoolEntry(public_key=public_key)
        entry.task = asyncio.create_task(self._connect(entry))
        entry.task.add_done_callback(_retrieve_exception)
        self._entries[public_key] = entry

        logger.debug("Connecting to %s", public_key)
        return entry

    async def _connect(self, entry: PoolEntry) -> Connection:
        """Run one connection attempt for an entry."""
        try:
            connection = await self._endpoint.connect(entry.public_key)
        except asyncio.CancelledError:
            self._discard(entry)
            raise
        except Exception as e:
            self._discard(entry)
            logger.debug("Connection to %s failed: %s", entry.public_key, e)
            raise TunnelConnectionError(
                f"Failed to connect to {entry.public_key}: {e}"
            ) from e

        # The entry may have been closed while the dial was completing.
        if entry.state is ConnectionState.CLOSED:
            await connection.close()
            raise TunnelConnectionError(f"Connection to {entry.public_key} was closed")

        entry.connection = connection
        entry.state = ConnectionState.ACTIVE
        logger.debug("Connected to %s", entry.public_key)
        return connection

    async def _join(self, entry: PoolEntry) -> Connection:
        """Wait for an entry's attempt without taking ownership of it."""
        task = entry.task
        assert task is not None

        # asyncio.wait never cancels the task it waits on.
        await asyncio.wait({task})

        if task.cancelled():
            raise TunnelConnectionError(f"Connection attempt to {entry.public_key} was cancelled")
        return task.result()

    async def _close_entry(self, entry: PoolEntry) -> None:
        previous, entry.state = entry.state, ConnectionState.CLOSED

        if previous is ConnectionState.CONNECTING:
            assert entry.task is not None
            entry.task.cancel()
            await asyncio.wait({entry.task})
            logger.debug("Cancelled connection attempt to %s", entry.public_key)
        elif entry.connection is not None:
            await entry.connection.close()
            logger.debug("Closed connection to %s", entry.public_key)

    def _discard(self, entry: PoolEntry) -> None:
        entry.state = ConnectionState.CLOSED
        if self._entries.get(entry.public_key) is entry:
            del self._entries[entry.public_key]
