"""
Unsigned LEB128 varint encoding and decoding.

Varints encode small integers in few bytes. Each byte carries 7 bits of the
value, low-order group first, and the MSB marks that more bytes follow::

    [C|D D D D D D D]
     ^-- Continuation bit (1 = more bytes, 0 = last byte)

Examples::

    0      -> [0x00]
    127    -> [0x7F]
    300    -> [0xAC, 0x02]

The tunnel uses varints for the protobuf framing of public keys inside the
canonical address format (tags and the key length).

Only unsigned values up to 2^64 - 1 (10 bytes) are supported. The 10-byte limit
matches protobuf and stops malformed input from looping forever.

References:
    - https://protobuf.dev/programming-guides/encoding/#varints
"""

from __future__ import annotations


class VarintError(Exception):
    """Raised when varint decoding fails."""


def encode(value: int) -> bytes:
    """
    Encode an unsigned integer as LEB128 varint.

    Args:
        value: Non-negative integer to encode.

    Returns:
        Varint-encoded bytes (1 to 10 bytes).

    Raises:
        ValueError: If value is negative.
    """
    if value < 0:
        raise ValueError("Varint must be non-negative")

    result = bytearray()

    # Emit 7-bit groups with the continuation bit until the rest fits in 7 bits.
    while value >= 0x80:
        result.append((value & 0x7F) | 0x80)
        value >>= 7

    result.append(value)
    return bytes(result)


def decode(data: bytes, offset: int = 0) -> tuple[int, int]:
    """
    Decode a varint from bytes at the given offset.

    Args:
        data: Input bytes containing the varint.
        offset: Starting position in data.

    Returns:
        Tuple of (decoded_value, bytes_consumed).

    Raises:
        VarintError: If the input is truncated or longer than 10 bytes.
    """
    result = 0
    shift = 0
    pos = offset

    while True:
        if pos >= len(data):
            raise VarintError("Truncated varint")

        byte = data[pos]
        pos += 1

        result |= (byte & 0x7F) << shift
        shift += 7

        if not (byte & 0x80):
            break

        # 10 bytes carry 70 bits, more than any 64-bit value needs.
        if shift >= 70:
            raise VarintError("Varint too long")

    return result, pos - offset
