"""Test helpers for pytunnel unit tests."""

from collections.abc import Awaitable, Callable

from pytunnel.tunnel import Tunnel

from .recorders import ErrorLog, Inbox

TunnelFactory = Callable[..., Awaitable[Tunnel]]
"""Signature of the `make_tunnel` fixture."""

__all__ = [
    "ErrorLog",
    "Inbox",
    "TunnelFactory",
]
