from __future__ import annotations

import binascii
import hashlib
import hmac
import json
from typing import Literal

from pydantic import BaseModel, ConfigDict, StrictInt, StrictStr, ValidationError

from kbembed.services.crypto.utils import b64url_decode, b64url_encode


TOKEN_VERSION = 1


class EmbedTokenPayload(BaseModel):
    # Stateless capability binding a project to one canonical origin.
    model_config = ConfigDict(frozen=True, extra="ignore")

    v: Literal[1] = TOKEN_VERSION
    project_id: StrictStr
    project_handle: StrictStr
    origin: StrictStr
    iat: StrictInt
    exp: StrictInt
    jti: StrictStr


class InvalidEmbedToken(ValueError):
    """Token is malformed, tampered with, or of an unknown version."""


def _sign(secret: str, payload_b64: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).digest()
    return b64url_encode(digest)


def sign_embed_token(payload: EmbedTokenPayload, secret: str) -> str:
    body = json.dumps(payload.model_dump(), separators=(",", ":")).encode("utf-8")
    payload_b64 = b64url_encode(body)
    return f"{payload_b64}.{_sign(secret, payload_b64)}"


def verify_embed_token(token: str, secret: str) -> EmbedTokenPayload:
    # Signature first; payload bytes are untrusted until the HMAC matches.
    parts = token.split(".")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise InvalidEmbedToken("malformed token")
    payload_b64, signature = parts
    try:
        payload_b64.encode("ascii")
        signature.encode("ascii")
    except UnicodeEncodeError as exc:
        raise InvalidEmbedToken("malformed token") from exc
    expected = _sign(secret, payload_b64)
    if not hmac.compare_digest(expected, signature):
        raise InvalidEmbedToken("signature mismatch")
    try:
        raw = json.loads(b64url_decode(payload_b64))
        return EmbedTokenPayload.model_validate(raw)
    except (binascii.Error, ValueError, ValidationError) as exc:
        raise InvalidEmbedToken("invalid payload") from exc


def is_expired(payload: EmbedTokenPayload, now_epoch: int) -> bool:
    return payload.exp <= now_epoch
