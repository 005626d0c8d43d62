"""
Tunnel configuration.

Protocol constants live at module level. `TunnelConfig` bundles the runtime
knobs, each defaulting to the matching constant.
"""

from __future__ import annotations

from typing import Final

from pydantic import Field

from .types import StrictBaseModel

ALPN: Final = "brasonite/tunnel/v1"
"""Application protocol negotiated on every tunnel connection."""

LISTEN_HOST: Final = "127.0.0.1"
"""Default bind host for the receiver endpoint."""

LISTEN_PORT: Final = 0
"""Default bind port for the receiver endpoint. Zero picks an ephemeral port."""

CONNECT_TIMEOUT_SECS: Final = 5.0
"""Upper bound for dialing a peer, including the identity handshake."""

SEND_TIMEOUT_SECS: Final = 10.0
"""Upper bound for a peer to acknowledge a single payload."""

IDLE_TIMEOUT_SECS: Final = 60.0
"""QUIC idle timeout. Connections without traffic for this long are dropped."""

MAX_PAYLOAD_SIZE: Final = 16 * 1024 * 1024
"""Largest inbound payload accepted, in bytes. Larger streams are reset."""

DELIVERY_QUEUE_SIZE: Final = 64
"""Payloads buffered per inbound connection before reads apply backpressure."""


class TunnelConfig(StrictBaseModel):
    """Runtime configuration for a tunnel session and its transport."""

    alpn: str = ALPN
    """ALPN protocol identifier."""

    listen_host: str = LISTEN_HOST
    """Host the receiver endpoint binds to."""

    listen_port: int = Field(default=LISTEN_PORT, ge=0, le=65535)
    """Port the receiver endpoint binds to."""

    connect_timeout_secs: float = Field(default=CONNECT_TIMEOUT_SECS, gt=0)
    """Timeout for establishing an outbound connection."""

    send_timeout_secs: float = Field(default=SEND_TIMEOUT_SECS, gt=0)
    """Timeout for the receiver to acknowledge a payload."""

    idle_timeout_secs: float = Field(default=IDLE_TIMEOUT_SECS, gt=0)
    """Idle timeout for transport connections."""

    max_payload_size: int = Field(default=MAX_PAYLOAD_SIZE, gt=0)
    """Maximum size of a single inbound payload."""

    delivery_queue_size: int = Field(default=DELIVERY_QUEUE_SIZE, ge=0)
    """Bound of the per-connection delivery queue. Zero means unbounded."""
