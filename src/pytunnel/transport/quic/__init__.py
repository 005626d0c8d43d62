"""
QUIC transport.

TLS 1.3 comes built into QUIC, so there is no separate security or
multiplexing layer to negotiate. The tunnel adds an Ed25519 identity
handshake on the first stream and then sends each payload on its own
bidirectional stream.
"""

from .connection import (
    PAYLOAD_ACCEPTED,
    PAYLOAD_TIMEOUT,
    PAYLOAD_TOO_LARGE,
    QuicConnection,
    QuicEndpoint,
    QuicStream,
    QuicTransport,
)
from .handshake import (
    HANDSHAKE_ACCEPTED,
    perform_handshake_dialer,
    perform_handshake_listener,
)
from .tls import generate_certificate

__all__ = [
    # Transport
    "QuicTransport",
    "QuicEndpoint",
    "QuicConnection",
    "QuicStream",
    # Payload stream codes
    "PAYLOAD_ACCEPTED",
    "PAYLOAD_TOO_LARGE",
    "PAYLOAD_TIMEOUT",
    # Handshake
    "HANDSHAKE_ACCEPTED",
    "perform_handshake_dialer",
    "perform_handshake_listener",
    # TLS
    "generate_certificate",
]
