"""
Public keys as tunnel addresses.

Every tunnel endpoint is addressed by its Ed25519 public key. The canonical text
form follows the libp2p PeerId derivation:

    1. Encode the public key as protobuf (libp2p-crypto format)
    2. Wrap it in an identity multihash (the encoding is only 36 bytes)
    3. Base58-encode the multihash

Protobuf wire format (from crypto.proto):
    message PublicKey {
        required KeyType Type = 1;  // Field 1, varint
        required bytes Data = 2;    // Field 2, length-delimited
    }

Wire format:
    [0x08][type_varint][0x12][length_varint][key_bytes]

For an Ed25519 key the full multihash is 38 bytes::

    [0x00][0x24] [0x08][0x01][0x12][0x20] [32 key bytes]
     ^ identity  ^ protobuf header

so every canonical address starts with "12D3KooW".

Parsing checks each layer: Base58 alphabet, multihash code and length, protobuf
tags, key type, key length, and that the key decodes to a curve point. Nothing
else is accepted, so a string that parses is always a well-formed address.

References:
    - https://github.com/libp2p/specs/blob/master/peer-ids/peer-ids.md
    - https://github.com/multiformats/multihash
"""

from __future__ import annotations

import hashlib
import string
from dataclasses import dataclass
from enum import IntEnum
from typing import Final

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from .. import varint
from ..exceptions import AddressParseError

__all__ = [
    "PublicKey",
    "PublicKeyProto",
    "Multihash",
    "KeyType",
    "MultihashCode",
    "Base58",
    "PUBLIC_KEY_SIZE",
    "MAX_ADDRESS_LENGTH",
    "is_ed25519_point",
]


PUBLIC_KEY_SIZE: Final = 32
"""Length of a raw Ed25519 public key."""

MAX_ADDRESS_LENGTH: Final = 52
"""Length of a canonical Base58 address. Longer text is rejected before decoding."""

# Curve parameters for edwards25519 (RFC 8032, section 5.1).
_P: Final = 2**255 - 19
_D: Final = -121665 * pow(121666, -1, _P) % _P
_SQRT_M1: Final = pow(2, (_P - 1) // 4, _P)


def is_ed25519_point(key_bytes: bytes) -> bool:
    """
    Check that 32 bytes decode to a point on the Ed25519 curve.

    Follows the decoding steps of RFC 8032, section 5.1.3: recover x from y,
    reject y >= p, a missing square root, and a negative zero x.
    """
    if len(key_bytes) != PUBLIC_KEY_SIZE:
        return False

    y = int.from_bytes(key_bytes, "little")
    sign = y >> 255
    y &= (1 << 255) - 1
    if y >= _P:
        return False

    # x^2 = (y^2 - 1) / (d * y^2 + 1)
    u = (y * y - 1) % _P
    v = (_D * y * y + 1) % _P
    x = u * pow(v, 3, _P) * pow(u * pow(v, 7, _P), (_P - 5) // 8, _P) % _P

    vx2 = v * x * x % _P
    if vx2 == (-u) % _P and vx2 != u:
        x = x * _SQRT_M1 % _P
    elif vx2 != u:
        return False

    return not (x == 0 and sign)


class KeyType(IntEnum):
    """libp2p-crypto key type codes (from crypto.proto KeyType enum)."""

    RSA = 0
    ED25519 = 1
    SECP256K1 = 2
    ECDSA = 3


class MultihashCode(IntEnum):
    """
    Multihash function codes.

    Multihash is a self-describing hash format: [code][length][digest].
    """

    IDENTITY = 0x00
    """Identity "hash" - no hashing, just wraps the data."""

    SHA256 = 0x12
    """SHA-256 hash (32-byte output)."""


class _ProtobufTag(IntEnum):
    """
    Protobuf field tags for the PublicKey message.

    Tag format: (field_number << 3) | wire_type
    """

    TYPE = 0x08  # field 1, varint
    DATA = 0x12  # field 2, length-delimited


class Base58:
    """
    Base58 encoding/decoding (Bitcoin-style alphabet).

    The alphabet excludes visually ambiguous characters (0, O, I, l).
    """

    ALPHABET: Final[str] = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

    @classmethod
    def encode(cls, data: bytes) -> str:
        """
        Encode bytes as a Base58 string.

        Leading zero bytes become leading '1' characters.
        """
        leading_zeros = len(data) - len(data.lstrip(b"\x00"))

        num = int.from_bytes(data, "big")
        result: list[str] = []

        while num > 0:
            num, remainder = divmod(num, 58)
            result.append(cls.ALPHABET[remainder])

        result.extend([cls.ALPHABET[0]] * leading_zeros)
        return "".join(reversed(result))

    @classmethod
    def decode(cls, s: str) -> bytes:
        """
        Decode a Base58 string to bytes.

        Leading '1' characters become leading zero bytes.

        Raises:
            ValueError: If the string contains characters outside the alphabet.
        """
        leading_ones = len(s) - len(s.lstrip("1"))

        num = 0
        for char in s:
            index = cls.ALPHABET.find(char)
            if index < 0:
                raise ValueError(f"Invalid Base58 character: {char!r}")
            num = num * 58 + index

        if num == 0:
            result = b""
        else:
            result = num.to_bytes((num.bit_length() + 7) // 8, "big")

        return b"\x00" * leading_ones + result


_IDENTITY_THRESHOLD: Final[int] = 42
"""Encodings up to this size use the identity multihash (libp2p peer ID rules)."""


@dataclass(frozen=True, slots=True)
class Multihash:
    """
    A self-describing hash in multihash format.

    Format: [code][length][digest], with single-byte code and length since the
    digests handled here never exceed 127 bytes.
    """

    code: MultihashCode
    """Hash function used."""

    digest: bytes
    """Hash output or identity data."""

    def encode(self) -> bytes:
        """
        Encode as multihash bytes.

        Raises:
            ValueError: If the digest exceeds single-byte length encoding.
        """
        if len(self.digest) > 127:
            raise ValueError(f"Digest too large for single-byte length: {len(self.digest)}")

        return bytes([self.code, len(self.digest)]) + self.digest

    @classmethod
    def decode(cls, data: bytes) -> Multihash:
        """
        Decode multihash bytes.

        Raises:
            ValueError: If the code is unknown or the length does not match.
        """
        if len(data) < 2:
            raise ValueError("Multihash too short")

        try:
            code = MultihashCode(data[0])
        except ValueError:
            raise ValueError(f"Unknown multihash code: {data[0]:#04x}") from None

        length = data[1]
        digest = data[2:]
        if len(digest) != length:
            raise ValueError(f"Multihash length mismatch: header says {length}, got {len(digest)}")

        return cls(code=code, digest=digest)

    @classmethod
    def from_data(cls, data: bytes) -> Multihash:
        """
        Create a multihash using libp2p's size-based selection.

        Identity for data up to 42 bytes, SHA256 above.
        """
        if len(data) <= _IDENTITY_THRESHOLD:
            return cls(code=MultihashCode.IDENTITY, digest=data)
        return cls(code=MultihashCode.SHA256, digest=hashlib.sha256(data).digest())


@dataclass(frozen=True, slots=True)
class PublicKeyProto:
    """
    A public key in libp2p-crypto protobuf format.

    Attributes:
        key_type: Cryptographic algorithm identifier.
        key_data: Raw public key bytes.
    """

    key_type: KeyType
    key_data: bytes

    def encode(self) -> bytes:
        """
        Encode as deterministic protobuf.

        Fields are minimally encoded and written in tag order.
        """
        type_field = bytes([_ProtobufTag.TYPE]) + varint.encode(self.key_type)
        data_field = bytes([_ProtobufTag.DATA]) + varint.encode(len(self.key_data)) + self.key_data
        return type_field + data_field

    @classmethod
    def decode(cls, data: bytes) -> PublicKeyProto:
        """
        Decode a protobuf PublicKey message.

        Only the exact canonical layout is accepted: Type then Data, no
        unknown fields, no trailing bytes.

        Raises:
            ValueError: If the message is malformed.
        """
        if not data or data[0] != _ProtobufTag.TYPE:
            raise ValueError("Missing key type field")

        try:
            raw_type, consumed = varint.decode(data, 1)
        except varint.VarintError as e:
            raise ValueError(f"Bad key type: {e}") from e

        pos = 1 + consumed
        if pos >= len(data) or data[pos] != _ProtobufTag.DATA:
            raise ValueError("Missing key data field")

        try:
            length, consumed = varint.decode(data, pos + 1)
        except varint.VarintError as e:
            raise ValueError(f"Bad key length: {e}") from e

        pos += 1 + consumed
        key_data = data[pos:]
        if len(key_data) != length:
            raise ValueError(f"Key length mismatch: header says {length}, got {len(key_data)}")

        try:
            key_type = KeyType(raw_type)
        except ValueError:
            raise ValueError(f"Unknown key type: {raw_type}") from None

        return cls(key_type=key_type, key_data=key_data)


@dataclass(frozen=True, slots=True)
class PublicKey:
    """
    An Ed25519 public key used as a tunnel address.

    Immutable. Equality and hashing are defined over the 32 raw key bytes, so
    instances key dictionaries directly.

    Use `PublicKey.parse` for untrusted input. Direct construction only checks
    the length.
    """

    key_bytes: bytes
    """Raw 32-byte Ed25519 public key (the canonical byte form)."""

    def __post_init__(self) -> None:
        if not isinstance(self.key_bytes, bytes):
            raise AddressParseError(self.key_bytes, "public key must be bytes")
        if len(self.key_bytes) != PUBLIC_KEY_SIZE:
            raise AddressParseError(
                self.key_bytes,
                f"expected {PUBLIC_KEY_SIZE} bytes, got {len(self.key_bytes)}",
            )

    def __str__(self) -> str:
        """Return the canonical Base58 address."""
        return self.to_base58()

    def __repr__(self) -> str:
        return f"PublicKey({self!s})"

    @classmethod
    def parse(cls, value: PublicKey | str | bytes | bytearray | memoryview) -> PublicKey:
        """
        Parse an external representation into a public key.

        Accepted forms:

        - `PublicKey`: returned unchanged
        - canonical Base58 address (``"12D3KooW..."``)
        - 64-character hex string of the raw key
        - 32 raw key bytes
        - multihash bytes of the canonical address

        Args:
            value: The representation to parse.

        Returns:
            The parsed public key.

        Raises:
            AddressParseError: If the value is malformed.
        """
        if isinstance(value, PublicKey):
            return value

        if isinstance(value, (bytearray, memoryview)):
            value = bytes(value)

        if isinstance(value, bytes):
            if len(value) == PUBLIC_KEY_SIZE:
                return cls._on_curve(value, original=value)
            return cls._from_multihash(value, original=value)

        if not isinstance(value, str):
            raise AddressParseError(value, f"unsupported type {type(value).__name__}")

        text = value.strip()
        if not text:
            raise AddressParseError(value, "empty address")

        if len(text) == 2 * PUBLIC_KEY_SIZE and all(c in string.hexdigits for c in text):
            return cls._on_curve(bytes.fromhex(text), original=value)

        if len(text) > MAX_ADDRESS_LENGTH:
            raise AddressParseError(value, f"longer than {MAX_ADDRESS_LENGTH} characters")

        try:
            decoded = Base58.decode(text)
        except ValueError as e:
            raise AddressParseError(value, str(e)) from e

        return cls._from_multihash(decoded, original=value)

    @classmethod
    def _from_multihash(cls, data: bytes, *, original: object) -> PublicKey:
        """Unwrap multihash and protobuf layers down to the raw key."""
        try:
            multihash = Multihash.decode(data)
        except ValueError as e:
            raise AddressParseError(original, str(e)) from e

        if multihash.code is not MultihashCode.IDENTITY:
            raise AddressParseError(original, "Ed25519 addresses use the identity multihash")

        try:
            proto = PublicKeyProto.decode(multihash.digest)
        except ValueError as e:
            raise AddressParseError(original, str(e)) from e

        if proto.key_type is not KeyType.ED25519:
            raise AddressParseError(original, f"unsupported key type {proto.key_type.name}")

        return cls._on_curve(proto.key_data, original=original)

    @classmethod
    def _on_curve(cls, key_bytes: bytes, *, original: object) -> PublicKey:
        key = cls(key_bytes=key_bytes)
        if not is_ed25519_point(key_bytes):
            raise AddressParseError(original, "not a point on the Ed25519 curve")
        return key

    def to_proto(self) -> PublicKeyProto:
        """Return the protobuf form of this key."""
        return PublicKeyProto(key_type=KeyType.ED25519, key_data=self.key_bytes)

    def to_multihash(self) -> bytes:
        """Return the multihash bytes of the canonical address."""
        return Multihash.from_data(self.to_proto().encode()).encode()

    def to_base58(self) -> str:
        """Return the canonical Base58 address."""
        return Base58.encode(self.to_multihash())

    def to_bytes(self) -> bytes:
        """Return the raw 32-byte key."""
        return self.key_bytes

    def to_hex(self) -> str:
        """Return the raw key as lowercase hex."""
        return self.key_bytes.hex()

    def to_cryptography(self) -> Ed25519PublicKey:
        """Return the key as a `cryptography` object for signature checks."""
        return Ed25519PublicKey.from_public_bytes(self.key_bytes)
