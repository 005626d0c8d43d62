"""
pytunnel: a minimal peer-to-peer data tunnel.

Every tunnel has a sender and a receiver endpoint, each identified by an
Ed25519 public key. Applications push payloads to a peer's receiver address
and get the payloads pushed to them through a handler.

Example usage:
    from pytunnel import Tunnel

    tunnel = await Tunnel.create(lambda sender, data: print(sender, data))
    print("Send to", tunnel.receiver_address())
    await tunnel.send(peer_address, b"hello")
    await tunnel.destroy()
"""

from .config import TunnelConfig
from .exceptions import (
    AddressParseError,
    CreationError,
    DestroyedError,
    HandshakeError,
    SendError,
    TransportError,
    TunnelConnectionError,
    TunnelError,
)
from .identity import IdentityKeypair, PublicKey
from .transport import (
    AddressBook,
    MemoryNetwork,
    MemoryTransport,
    QuicTransport,
    SocketAddress,
)
from .tunnel import Tunnel
from .types import ConnectionState, DataHandler, HandlerErrorHook, SessionState

__all__ = [
    # Session
    "Tunnel",
    "TunnelConfig",
    "SessionState",
    "ConnectionState",
    "DataHandler",
    "HandlerErrorHook",
    # Identity
    "PublicKey",
    "IdentityKeypair",
    # Transports
    "QuicTransport",
    "MemoryTransport",
    "MemoryNetwork",
    "AddressBook",
    "SocketAddress",
    # Errors
    "TunnelError",
    "AddressParseError",
    "CreationError",
    "DestroyedError",
    "SendError",
    "TunnelConnectionError",
    "TransportError",
    "HandshakeError",
]
