"""
Ed25519 identity keypair.

Each tunnel endpoint owns one keypair. The public half is the endpoint's
address; the private half signs identity proofs during the connection
handshake.
"""

from __future__ import annotations

from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .public_key import PUBLIC_KEY_SIZE, PublicKey

__all__ = [
    "IdentityKeypair",
    "verify_signature",
]


@dataclass(frozen=True, slots=True)
class IdentityKeypair:
    """
    Ed25519 keypair for endpoint identity.

    Attributes:
        private_key: The Ed25519 private key.
    """

    private_key: Ed25519PrivateKey

    @classmethod
    def generate(cls) -> IdentityKeypair:
        """Generate a new random keypair."""
        return cls(private_key=Ed25519PrivateKey.generate())

    @classmethod
    def from_bytes(cls, data: bytes) -> IdentityKeypair:
        """
        Load a keypair from the raw 32-byte private key.

        Raises:
            ValueError: If data is not 32 bytes.
        """
        if len(data) != 32:
            raise ValueError(f"Expected 32 bytes, got {len(data)}")

        return cls(private_key=Ed25519PrivateKey.from_private_bytes(data))

    def private_key_bytes(self) -> bytes:
        """Return the raw 32-byte private key."""
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def public_key_bytes(self) -> bytes:
        """Return the raw 32-byte public key."""
        return self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    def public_key(self) -> PublicKey:
        """Return the public key as a tunnel address."""
        return PublicKey(key_bytes=self.public_key_bytes())

    def sign(self, message: bytes) -> bytes:
        """Sign a message. Ed25519 signatures are always 64 bytes."""
        return self.private_key.sign(message)


def verify_signature(
    public_key: PublicKey | bytes,
    message: bytes,
    signature: bytes,
) -> bool:
    """
    Verify an Ed25519 signature.

    Args:
        public_key: Signer's public key, as a `PublicKey` or 32 raw bytes.
        message: Original message that was signed.
        signature: 64-byte signature.

    Returns:
        True if the signature is valid, False otherwise.
    """
    if isinstance(public_key, bytes):
        if len(public_key) != PUBLIC_KEY_SIZE:
            return False
        public_key = PublicKey(key_bytes=public_key)

    try:
        public_key.to_cryptography().verify(signature, message)
        return True
    except InvalidSignature:
        return False
