"""
TLS certificates for the QUIC listener.

QUIC mandates TLS 1.3, so every listening endpoint needs a certificate. There is
no certificate authority in a peer-to-peer tunnel: the certificate only carries
the ephemeral key that encrypts the session, and peers do not validate it.
Identity is proven afterwards by the handshake in `handshake.py`, which signs
fresh nonces with the Ed25519 identity key.

Each listener generates:
    1. An ephemeral P-256 key pair
    2. A self-signed certificate over it with a random subject
"""

from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

CERTIFICATE_VALIDITY = timedelta(days=365)
"""How long generated certificates remain valid."""

CLOCK_SKEW_ALLOWANCE = timedelta(days=1)
"""Backdating applied to `not_valid_before` to tolerate skewed peer clocks."""


def generate_certificate() -> tuple[ec.EllipticCurvePrivateKey, x509.Certificate]:
    """
    Generate an ephemeral key and a self-signed certificate for it.

    Why P-256? It is the curve every TLS 1.3 stack, aioquic included, is
    required to support. The key lives only as long as the listener.

    Returns:
        (private_key, certificate) tuple, ready for `QuicConfiguration`.
    """
    tls_private = ec.generate_private_key(ec.SECP256R1())
    tls_public = tls_private.public_key()

    tls_public_bytes = tls_public.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )

    # Random subject so the certificate says nothing about the endpoint.
    subject = issuer = x509.Name(
        [x509.NameAttribute(NameOID.COMMON_NAME, secrets.token_hex(8))],
    )

    # SKI is the truncated SHA-256 of the public key, as webpki expects for
    # self-signed certificates.
    ski_digest = hashlib.sha256(tls_public_bytes).digest()[:20]

    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(tls_public)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - CLOCK_SKEW_ALLOWANCE)
        .not_valid_after(now + CERTIFICATE_VALIDITY)
        .add_extension(x509.SubjectKeyIdentifier(ski_digest), critical=False)
        .sign(tls_private, hashes.SHA256())
    )

    return tls_private, certificate
