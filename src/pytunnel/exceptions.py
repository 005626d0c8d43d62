"""
Exception hierarchy for the tunnel.

Every error raised by the public API derives from `TunnelError`, so callers can
catch the whole family with a single clause.

Propagation rules:

- Parse and lifecycle errors (`AddressParseError`, `DestroyedError`) are raised
  synchronously to the caller.
- Transport failures during `send` surface as `SendError`. The pool-level
  `TunnelConnectionError` is chained as its cause.
- Failures inside the inbound listener never reach senders. They are logged and
  reported to the diagnostics hook.

Nothing is retried automatically; every retry decision belongs to the caller.
"""

from __future__ import annotations


class TunnelError(Exception):
    """
    Base exception for all tunnel errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


class AddressParseError(TunnelError, ValueError):
    """
    Raised when a peer address cannot be parsed into a public key.

    Attributes:
        value: The rejected input (truncated for display).
        reason: What was wrong with it.
    """

    def __init__(self, value: object, reason: str) -> None:
        value_repr = repr(value)
        if len(value_repr) > 60:
            value_repr = value_repr[:57] + "..."

        self.value = value
        self.reason = reason

        super().__init__(f"Invalid peer address {value_repr}: {reason}")


class CreationError(TunnelError):
    """Raised when a tunnel could not be initialized."""


class DestroyedError(TunnelError):
    """Raised when a tunnel is used after `destroy()`."""


class SendError(TunnelError):
    """
    Raised when a payload could not be delivered to the transport.

    Attributes:
        address: Canonical address of the intended receiver.
    """

    def __init__(self, address: str, detail: str) -> None:
        self.address = address
        self.detail = detail

        super().__init__(f"Failed to send data to {address}: {detail}")


class TunnelConnectionError(TunnelError, ConnectionError):
    """Raised by the connection pool when a connection cannot be established."""


class TransportError(TunnelError, ConnectionError):
    """Raised by transport implementations on connect, send or receive failures."""


class HandshakeError(TransportError):
    """Raised when the identity handshake with a peer fails."""
