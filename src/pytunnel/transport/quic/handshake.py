"""
Identity handshake over the first stream of a QUIC connection.

TLS encrypts the connection but says nothing about who is on the other end.
Before any payload flows, both sides prove ownership of their Ed25519 identity
key by signing a nonce chosen by the other side.

Message flow on the first bidirectional stream (opened by the dialer)::

    Dialer                                    Listener
      |  public_key(32) || nonce_d(32)          |
      |---------------------------------------->|
      |                                         |
      |  public_key(32) || nonce_l(32) || sig_l |
      |<----------------------------------------|
      |                                         |
      |  sig_d(64)                              |
      |---------------------------------------->|
      |                                         |
      |  0x00 (accepted)                        |
      |<----------------------------------------|

    sig_l proves the listener's key over (nonce_d, dialer key).
    sig_d proves the dialer's key over (nonce_l, listener key).

The dialer also checks that the listener's key is the one it dialed. A mismatch
means the address book pointed at the wrong endpoint.
"""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Final, Protocol

from ...exceptions import HandshakeError
from ...identity import (
    NONCE_SIZE,
    PUBLIC_KEY_SIZE,
    SIGNATURE_SIZE,
    PublicKey,
    create_identity_proof,
    verify_identity_proof,
)

if TYPE_CHECKING:
    from ...identity import IdentityKeypair

HANDSHAKE_ACCEPTED: Final = b"\x00"
"""Status byte the listener sends once the dialer is authenticated."""

HELLO_SIZE: Final = PUBLIC_KEY_SIZE + NONCE_SIZE
"""Size of the dialer's opening message."""

CHALLENGE_SIZE: Final = PUBLIC_KEY_SIZE + NONCE_SIZE + SIGNATURE_SIZE
"""Size of the listener's reply."""


class HandshakeStream(Protocol):
    """Byte stream the handshake runs over."""

    async def readexactly(self, n: int) -> bytes:
        """Read exactly n bytes. Raises TransportError on early EOF."""
        ...

    async def write(self, data: bytes, end_stream: bool = False) -> None:
        """Write data, optionally closing our side."""
        ...


async def perform_handshake_dialer(
    stream: HandshakeStream,
    identity_key: IdentityKeypair,
    expected: PublicKey,
) -> None:
    """
    Run the dialer side of the handshake.

    Args:
        stream: Fresh bidirectional stream.
        identity_key: Our identity keypair.
        expected: The identity we meant to reach.

    Raises:
        HandshakeError: If the listener is not `expected`, its proof is invalid,
            or it rejected our proof.
        TransportError: If the stream fails.
    """
    local = identity_key.public_key()
    nonce = secrets.token_bytes(NONCE_SIZE)

    await stream.write(local.to_bytes() + nonce)

    reply = await stream.readexactly(CHALLENGE_SIZE)
    remote = PublicKey(key_bytes=reply[:PUBLIC_KEY_SIZE])
    remote_nonce = reply[PUBLIC_KEY_SIZE:HELLO_SIZE]
    signature = reply[HELLO_SIZE:]

    if remote != expected:
        raise HandshakeError(f"Dialed {expected} but reached {remote}")

    if not verify_identity_proof(remote, nonce, local, signature):
        raise HandshakeError(f"Invalid identity proof from {remote}")

    await stream.write(create_identity_proof(identity_key, remote_nonce, remote), end_stream=True)

    status = await stream.readexactly(1)
    if status != HANDSHAKE_ACCEPTED:
        raise HandshakeError(f"Peer {remote} rejected the handshake")


async def perform_handshake_listener(
    stream: HandshakeStream,
    identity_key: IdentityKeypair,
) -> PublicKey:
    """
    Run the listener side of the handshake.

    Args:
        stream: The first stream opened by the dialer.
        identity_key: Our identity keypair.

    Returns:
        The dialer's verified identity.

    Raises:
        HandshakeError: If the dialer's proof is invalid.
        TransportError: If the stream fails.
    """
    local = identity_key.public_key()

    hello = await stream.readexactly(HELLO_SIZE)
    remote = PublicKey(key_bytes=hello[:PUBLIC_KEY_SIZE])
    remote_nonce = hello[PUBLIC_KEY_SIZE:]

    nonce = secrets.token_bytes(NONCE_SIZE)
    proof = create_identity_proof(identity_key, remote_nonce, remote)
    await stream.write(local.to_bytes() + nonce + proof)

    signature = await stream.readexactly(SIGNATURE_SIZE)
    if not verify_identity_proof(remote, nonce, local, signature):
        raise HandshakeError(f"Invalid identity proof from {remote}")

    await stream.write(HANDSHAKE_ACCEPTED, end_stream=True)
    return remote
