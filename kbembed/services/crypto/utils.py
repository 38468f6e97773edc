from __future__ import annotations

import base64
import binascii
import re

from kbembed.core.errors import InvalidByteaError


_HEX_RE = re.compile(r"^[0-9a-fA-F]*$")


def decode_key_material(value: str) -> bytes:
    """Decode standard base64 key material into raw bytes."""
    stripped = value.strip()
    if not stripped:
        raise ValueError("key material is empty")
    try:
        return base64.b64decode(stripped, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("key material must be base64") from exc


def b64url_encode(value: bytes) -> str:
    # Unpadded URL-safe base64 keeps tokens and state query-string friendly.
    return base64.urlsafe_b64encode(value).decode("ascii").rstrip("=")


def b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("ascii"))


def to_bytea(value: bytes) -> str:
    # Postgres bytea hex literal form.
    return "\\x" + value.hex()


def from_bytea(value: str) -> bytes:
    hex_value = value[2:] if value.startswith("\\x") else value
    if len(hex_value) % 2 != 0 or not _HEX_RE.match(hex_value):
        raise InvalidByteaError("Invalid bytea hex string.")
    return bytes.fromhex(hex_value)
