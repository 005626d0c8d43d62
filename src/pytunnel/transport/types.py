"""
Abstract interfaces for the transport layer.

The tunnel core never touches sockets. It consumes these Protocol classes,
which any transport can implement: QUIC for real networks, the in-memory
transport for tests.

The transport owns everything below the payload: addressing, encryption,
authentication and per-connection ordering. The core assumes that a
`Connection` is authenticated to `remote_public_key` and delivers payloads in
order.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..identity import IdentityKeypair, PublicKey


@runtime_checkable
class Connection(Protocol):
    """
    An authenticated connection to one remote endpoint.

    Example usage:
        connection = await endpoint.connect(peer)
        await connection.send(b"hello")
        await connection.close()
    """

    @property
    def remote_public_key(self) -> PublicKey:
        """Identity of the remote endpoint, verified by the transport."""
        ...

    @property
    def is_closed(self) -> bool:
        """Whether the connection is closed, locally or by the peer."""
        ...

    async def send(self, data: bytes) -> None:
        """
        Deliver one payload to the peer.

        Returns once the peer has received the whole payload.

        Raises:
            TransportError: If the connection failed or the peer rejected it.
        """
        ...

    async def receive(self) -> bytes | None:
        """
        Wait for the next payload sent by the peer.

        Returns:
            The payload, or None once the connection has ended.

        Raises:
            TransportError: If the connection failed mid-payload.
        """
        ...

    async def close(self) -> None:
        """Close the connection. Idempotent."""
        ...


@runtime_checkable
class Endpoint(Protocol):
    """A bound local endpoint, identified by its public key."""

    @property
    def public_key(self) -> PublicKey:
        """Our identity on this endpoint."""
        ...

    async def connect(self, public_key: PublicKey) -> Connection:
        """
        Open an authenticated connection to a remote endpoint.

        Raises:
            TransportError: If the peer is unknown, unreachable or fails
                authentication.
        """
        ...

    async def accept(self) -> Connection | None:
        """
        Wait for the next authenticated inbound connection.

        Returns:
            The connection, or None once the endpoint is closed.
        """
        ...

    async def close(self) -> None:
        """Stop accepting and release the endpoint. Idempotent."""
        ...


class Transport(Protocol):
    """Factory for endpoints."""

    async def bind(self, keypair: IdentityKeypair, *, listen: bool) -> Endpoint:
        """
        Bind a new endpoint for the given identity.

        Args:
            keypair: Identity of the endpoint.
            listen: Whether the endpoint accepts inbound connections. Dial-only
                endpoints never yield from `accept()`.

        Raises:
            TransportError: If the endpoint could not be bound.
        """
        ...
