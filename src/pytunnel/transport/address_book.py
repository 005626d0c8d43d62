"""
Static mapping from public keys to socket addresses.

Public keys say who a peer is, not where it is. Resolving one to a host and
port is the job of a discovery service, which is out of scope here. The
address book is the local stand-in: listening endpoints publish their socket
address into it, and callers can add entries for remote peers by hand (the
CLI's ``--peer`` flag does this).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..identity import PublicKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SocketAddress:
    """A UDP host and port."""

    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"

    @classmethod
    def parse(cls, value: str) -> SocketAddress:
        """
        Parse ``host:port``.

        Raises:
            ValueError: If the port is missing or not a valid number.
        """
        host, sep, port_str = value.strip().rpartition(":")
        if not sep or not host:
            raise ValueError(f"Expected host:port, got {value!r}")

        try:
            port = int(port_str)
        except ValueError:
            raise ValueError(f"Invalid port in {value!r}") from None

        if not 0 < port <= 65535:
            raise ValueError(f"Port out of range in {value!r}")

        return cls(host=host.strip("[]"), port=port)


@dataclass(slots=True)
class AddressBook:
    """Known socket addresses by public key."""

    _entries: dict[PublicKey, SocketAddress] = field(default_factory=dict)

    def add(self, public_key: PublicKey, address: SocketAddress) -> None:
        """Record or replace the address of a peer."""
        self._entries[public_key] = address
        logger.debug("Address of %s is %s", public_key, address)

    def remove(self, public_key: PublicKey) -> None:
        """Forget a peer. No-op if unknown."""
        self._entries.pop(public_key, None)

    def resolve(self, public_key: PublicKey) -> SocketAddress | None:
        """Return the peer's address, or None if unknown."""
        return self._entries.get(public_key)

    def __contains__(self, public_key: object) -> bool:
        return public_key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


DEFAULT_ADDRESS_BOOK = AddressBook()
"""Process-wide address book shared by transports that are not given one."""
