"""
Tunnel core: session lifecycle, outbound connection pool, inbound listener.
"""

from .listener import InboundListener
from .pool import ConnectionPool, PoolEntry
from .session import LifecycleFlag, PeerAddress, Tunnel

__all__ = [
    "Tunnel",
    "PeerAddress",
    "LifecycleFlag",
    "ConnectionPool",
    "PoolEntry",
    "InboundListener",
]
