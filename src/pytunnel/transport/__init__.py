"""
Transports move payloads between endpoints.

Layering::

    Tunnel (pool, listener, lifecycle)
        -> Endpoint (one per identity, dials and accepts)
            -> Connection (authenticated link to one peer)

Two implementations ship with the package:
    - quic/: QUIC over UDP, the default
    - memory.py: in-process queues, for tests and local wiring
"""

from .address_book import DEFAULT_ADDRESS_BOOK, AddressBook, SocketAddress
from .memory import MemoryConnection, MemoryEndpoint, MemoryNetwork, MemoryTransport
from .quic import QuicConnection, QuicEndpoint, QuicTransport
from .types import Connection, Endpoint, Transport

__all__ = [
    # Interfaces
    "Connection",
    "Endpoint",
    "Transport",
    # Addressing
    "AddressBook",
    "SocketAddress",
    "DEFAULT_ADDRESS_BOOK",
    # Memory
    "MemoryTransport",
    "MemoryNetwork",
    "MemoryEndpoint",
    "MemoryConnection",
    # QUIC
    "QuicTransport",
    "QuicEndpoint",
    "QuicConnection",
]
