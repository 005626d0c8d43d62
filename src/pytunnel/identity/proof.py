"""
Identity proofs for the connection handshake.

Each side of a new connection picks a random nonce. The other side proves it
owns its claimed identity key by signing that nonce together with the
challenger's public key:

    message = "tunnel-identity-proof:" || nonce || challenger_public_key
    signature = Ed25519(identity_private_key, message)

The nonce makes each proof single-use. Binding the challenger's key stops a
proof made for one peer from being relayed to another.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Final

from .keypair import verify_signature

if TYPE_CHECKING:
    from .keypair import IdentityKeypair
    from .public_key import PublicKey

__all__ = [
    "IDENTITY_PROOF_PREFIX",
    "NONCE_SIZE",
    "SIGNATURE_SIZE",
    "create_identity_proof",
    "verify_identity_proof",
]


IDENTITY_PROOF_PREFIX: Final[bytes] = b"tunnel-identity-proof:"
"""Domain separation prefix for the signed message."""

NONCE_SIZE: Final = 32
"""Size of the challenge nonce."""

SIGNATURE_SIZE: Final = 64
"""Size of an Ed25519 signature."""


def _proof_message(nonce: bytes, challenger: PublicKey) -> bytes:
    return IDENTITY_PROOF_PREFIX + nonce + challenger.to_bytes()


def create_identity_proof(
    identity_key: IdentityKeypair,
    nonce: bytes,
    challenger: PublicKey,
) -> bytes:
    """
    Sign a challenge from a peer.

    Args:
        identity_key: Our identity keypair.
        nonce: The nonce chosen by the peer.
        challenger: The peer's public key.

    Returns:
        64-byte Ed25519 signature.
    """
    return identity_key.sign(_proof_message(nonce, challenger))


def verify_identity_proof(
    claimed: PublicKey,
    nonce: bytes,
    challenger: PublicKey,
    signature: bytes,
) -> bool:
    """
    Verify a peer's answer to our challenge.

    Args:
        claimed: The identity the peer claims.
        nonce: The nonce we sent.
        challenger: Our own public key.
        signature: The signature the peer returned.

    Returns:
        True if the peer owns the claimed identity key.
    """
    if len(signature) != SIGNATURE_SIZE:
        return False
    return verify_signature(claimed, _proof_message(nonce, challenger), signature)
