"""
auth/codec.py -- Byte/text encodings shared by every engine component.

base64 (standard alphabet, padded) is used inside stored values
("salt:digest", "iv:ciphertext"); base64url without padding is used for
anything that travels in a header or cookie (access-token segments, refresh
tokens); hex is used for token hashes and password-reset tokens.

Decoders raise MalformedInput on bad input so callers deal with one error type
instead of binascii.Error / UnicodeDecodeError / ValueError.
"""

from __future__ import annotations

import base64
import binascii

from auth.errors import MalformedInput


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise MalformedInput("Invalid base64 data") from exc


def b64url_encode(data: bytes) -> str:
    """URL-safe base64 with the trailing '=' padding stripped (RFC 7515 §2)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    """Inverse of b64url_encode. Restores padding before decoding."""
    if any(c not in _B64URL_ALPHABET for c in text):
        raise MalformedInput("Invalid base64url data")
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, ValueError) as exc:
        raise MalformedInput("Invalid base64url data") from exc


def hex_encode(data: bytes) -> str:
    return data.hex()


def hex_decode(text: str) -> bytes:
    try:
        return bytes.fromhex(text)
    except ValueError as exc:
        raise MalformedInput("Invalid hex data") from exc


_B64URL_ALPHABET = frozenset("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")
