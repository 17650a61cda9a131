"""Encoding helpers for 32-byte drive keys.

Keys travel in URLs either as 64 hex characters or as 52 z-base-32
characters; the canonical form produced here is z-base-32.
"""

from __future__ import annotations

import base64
import binascii

KEY_LENGTH = 32

_ZBASE32 = "ybndrfg8ejkmcpqxot1uwisza345h769"
_RFC4648 = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
_TO_ZBASE32 = str.maketrans(_RFC4648, _ZBASE32)
_FROM_ZBASE32 = str.maketrans(_ZBASE32, _RFC4648)


class InvalidKey(ValueError):
    """Raised when a value cannot be decoded into a drive key."""


def encode_key(key: bytes) -> str:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        raise InvalidKey("drive keys must be 32 bytes")
    encoded = base64.b32encode(bytes(key)).decode("ascii").rstrip("=")
    return encoded.translate(_TO_ZBASE32)


def decode_key(value: str | bytes) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        if len(value) != KEY_LENGTH:
            raise InvalidKey("drive keys must be 32 bytes")
        return bytes(value)
    if not isinstance(value, str):
        raise InvalidKey(f"unsupported key type: {type(value).__name__}")

    if len(value) == KEY_LENGTH * 2:
        try:
            return bytes.fromhex(value)
        except ValueError as exc:
            raise InvalidKey("invalid hex key") from exc

    if len(value) == 52:
        lowered = value.lower()
        if any(char not in _ZBASE32 for char in lowered):
            raise InvalidKey("invalid z-base-32 key")
        padded = lowered.translate(_FROM_ZBASE32) + "=" * 4
        try:
            decoded = base64.b32decode(padded)
        except binascii.Error as exc:
            raise InvalidKey("invalid z-base-32 key") from exc
        if len(decoded) == KEY_LENGTH:
            return decoded

    raise InvalidKey("drive keys must be 64 hex or 52 z-base-32 characters")


def normalize_key(value: str | bytes) -> str:
    """Return the canonical z-base-32 form of any accepted key encoding."""

    return encode_key(decode_key(value))
