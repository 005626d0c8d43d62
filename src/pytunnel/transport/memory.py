"""
In-process transport.

Endpoints bound on the same `MemoryNetwork` reach each other through asyncio
queues instead of sockets. Identities are trusted as given: there is no
handshake because both ends live in the same process.

Used by the test suite, and handy for wiring several tunnels together inside
one program. The network keeps counters of dials and payloads so tests can
assert exactly how much transport activity an operation caused.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field

from ..exceptions import TransportError
from ..identity import IdentityKeypair, PublicKey

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MemoryNetwork:
    """
    Registry of listening memory endpoints.

    The knobs below let tests shape dial behavior.
    """

    listeners: dict[PublicKey, MemoryEndpoint] = field(default_factory=dict)
    """Listening endpoints by public key."""

    connect_attempts: Counter[PublicKey] = field(default_factory=Counter)
    """Number of dials made towards each public key."""

    payloads_sent: int = 0
    """Total payloads handed to any memory connection."""

    connect_delay_secs: float = 0.0
    """Artificial latency added to every dial."""

    connect_gate: asyncio.Event | None = None
    """If set, dials block until the event is set."""

    unreachable: set[PublicKey] = field(default_factory=set)
    """Listening peers that refuse dials anyway."""

    @property
    def total_connect_attempts(self) -> int:
        """Dials made towards any peer."""
        return sum(self.connect_attempts.values())


@dataclass(slots=True)
class _Delivery:
    data: bytes
    ack: asyncio.Future[None]


@dataclass(slots=True, eq=False)
class MemoryConnection:
    """One side of an in-memory connection."""

    _network: MemoryNetwork
    _remote_public_key: PublicKey
    _inbox: asyncio.Queue[_Delivery | None] = field(default_factory=asyncio.Queue)
    _peer: MemoryConnection | None = None
    _closed: bool = False

    @property
    def remote_public_key(self) -> PublicKey:
        """Identity of the other side."""
        return self._remote_public_key

    @property
    def is_closed(self) -> bool:
        """Whether either side closed the connection."""
        return self._closed

    async def send(self, data: bytes) -> None:
        """Hand a payload to the peer and wait until it has been received."""
        if self._closed or self._peer is None or self._peer._closed:
            raise TransportError("Connection is closed")

        ack: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._network.payloads_sent += 1
        self._peer._inbox.put_nowait(_Delivery(data=bytes(data), ack=ack))
        await ack

    async def receive(self) -> bytes | None:
        """Return the next payload, or None once the connection is closed."""
        if self._closed:
            return None

        delivery = await self._inbox.get()
        if delivery is None:
            return None

        if not delivery.ack.done():
            delivery.ack.set_result(None)
        return delivery.data

    async def close(self) -> None:
        """Close both sides."""
        self._shutdown()
        if self._peer is not None:
            self._peer._shutdown()

    def _shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True

        # Payloads nobody will read fail on the sender's side.
        while not self._inbox.empty():
            delivery = self._inbox.get_nowait()
            if delivery is not None and not delivery.ack.done():
                delivery.ack.set_exception(TransportError("Connection closed before delivery"))

        self._inbox.put_nowait(None)


@dataclass(slots=True, eq=False)
class MemoryEndpoint:
    """A memory endpoint bound to one identity."""

    _network: MemoryNetwork
    _keypair: IdentityKeypair
    _public_key: PublicKey
    _listening: bool
    _incoming: asyncio.Queue[MemoryConnection | None] = field(default_factory=asyncio.Queue)
    _connections: list[MemoryConnection] = field(default_factory=list)
    _closed: bool = False

    @property
    def public_key(self) -> PublicKey:
        """Our identity."""
        return self._public_key

    @property
    def is_closed(self) -> bool:
        """Whether the endpoint has been closed."""
        return self._closed

    async def connect(self, public_key: PublicKey) -> MemoryConnection:
        """Dial a listening endpoint on the same network."""
        if self._closed:
            raise TransportError("Endpoint is closed")

        network = self._network
        network.connect_attempts[public_key] += 1

        if network.connect_delay_secs:
            await asyncio.sleep(network.connect_delay_secs)
        if network.connect_gate is not None:
            await network.connect_gate.wait()

        listener = network.listeners.get(public_key)
        if listener is None or listener._closed or public_key in network.unreachable:
            raise TransportError(f"Peer {public_key} is unreachable")

        outbound = MemoryConnection(_network=network, _remote_public_key=listener.public_key)
        inbound = MemoryConnection(_network=network, _remote_public_key=self._public_key)
        outbound._peer = inbound
        inbound._peer = outbound

        self._connections.append(outbound)
        listener._connections.append(inbound)
        listener._incoming.put_nowait(inbound)

        logger.debug("Memory connection %s -> %s", self._public_key, public_key)
        return outbound

    async def accept(self) -> MemoryConnection | None:
        """Wait for the next inbound connection."""
        if self._closed:
            return None
        return await self._incoming.get()

    async def close(self) -> None:
        """Unregister from the network and close every connection."""
        if self._closed:
            return
        self._closed = True

        if self._network.listeners.get(self._public_key) is self:
            del self._network.listeners[self._public_key]

        for connection in self._connections:
            await connection.close()
        self._connections.clear()

        self._incoming.put_nowait(None)


class MemoryTransport:
    """Binds memory endpoints on a shared network."""

    def __init__(self, network: MemoryNetwork | None = None) -> None:
        self.network = network if network is not None else MemoryNetwork()

    async def bind(self, keypair: IdentityKeypair, *, listen: bool) -> MemoryEndpoint:
        """Bind an endpoint. Listening endpoints become dialable immediately."""
        public_key = keypair.public_key()
        if listen and public_key in self.network.listeners:
            raise TransportError(f"Address {public_key} is already bound")

        endpoint = MemoryEndpoint(
            _network=self.network,
            _keypair=keypair,
            _public_key=public_key,
            _listening=listen,
        )
        if listen:
            self.network.listeners[public_key] = endpoint
        return endpoint
