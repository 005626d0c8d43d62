"""
Tunnel identities.

Every endpoint is identified by an Ed25519 public key. The key doubles as the
endpoint's address: peers send to a `PublicKey`, and received payloads are
tagged with the sender's `PublicKey`.
"""

from .keypair import IdentityKeypair, verify_signature
from .proof import (
    IDENTITY_PROOF_PREFIX,
    NONCE_SIZE,
    SIGNATURE_SIZE,
    create_identity_proof,
    verify_identity_proof,
)
from .public_key import (
    MAX_ADDRESS_LENGTH,
    PUBLIC_KEY_SIZE,
    Base58,
    KeyType,
    Multihash,
    MultihashCode,
    PublicKey,
    PublicKeyProto,
    is_ed25519_point,
)

__all__ = [
    # Addresses
    "PublicKey",
    "PUBLIC_KEY_SIZE",
    "MAX_ADDRESS_LENGTH",
    "is_ed25519_point",
    # Keypair
    "IdentityKeypair",
    "verify_signature",
    # Identity proofs
    "IDENTITY_PROOF_PREFIX",
    "NONCE_SIZE",
    "SIGNATURE_SIZE",
    "create_identity_proof",
    "verify_identity_proof",
    # Encodings
    "Base58",
    "Multihash",
    "MultihashCode",
    "KeyType",
    "PublicKeyProto",
]
