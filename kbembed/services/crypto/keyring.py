from __future__ import annotations

from dataclasses import dataclass
import os
from types import MappingProxyType
from typing import Mapping

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from kbembed.core.config import Settings
from kbembed.core.errors import KeyringConfigurationError, UnknownKeyVersionError
from kbembed.services.crypto.utils import decode_key_material


KEY_BYTES = 32
NONCE_BYTES = 12

_ENTRY_FORMAT_MESSAGE = "TOKEN_ENCRYPTION_KEYS must use 'version:base64Key' entries."


@dataclass(frozen=True)
class KeyringConfig:
    # Immutable key material indexed by version; built once from settings.
    keys: Mapping[int, bytes]

    @property
    def current_version(self) -> int:
        return max(self.keys)


@dataclass(frozen=True)
class EncryptedSecret:
    ciphertext: bytes
    nonce: bytes
    key_version: int


def _parse_version(raw: str) -> int:
    if not (raw.isascii() and raw.isdigit()):
        raise KeyringConfigurationError(_ENTRY_FORMAT_MESSAGE)
    version = int(raw)
    if version <= 0:
        raise KeyringConfigurationError(_ENTRY_FORMAT_MESSAGE)
    return version


def _decode_key(raw: str, version: int) -> bytes:
    try:
        key = decode_key_material(raw)
    except ValueError as exc:
        raise KeyringConfigurationError(
            f"Encryption key version {version} is not valid base64."
        ) from exc
    if len(key) != KEY_BYTES:
        raise KeyringConfigurationError(
            f"Encryption key version {version} must decode to {KEY_BYTES} bytes."
        )
    return key


def parse_key_entries(raw: str) -> dict[int, bytes]:
    # Parse "1:base64,2:base64" while rejecting malformed or duplicate versions.
    keys: dict[int, bytes] = {}
    for entry in (part.strip() for part in raw.split(",")):
        if not entry:
            continue
        version_raw, sep, key_raw = entry.partition(":")
        if not sep or not key_raw.strip():
            raise KeyringConfigurationError(_ENTRY_FORMAT_MESSAGE)
        version = _parse_version(version_raw.strip())
        if version in keys:
            raise KeyringConfigurationError(f"Duplicate encryption key version: {version}")
        keys[version] = _decode_key(key_raw.strip(), version)
    if not keys:
        raise KeyringConfigurationError(_ENTRY_FORMAT_MESSAGE)
    return keys


def build_keyring_config(settings: Settings) -> KeyringConfig:
    if settings.token_encryption_keys and settings.token_encryption_keys.strip():
        keys = parse_key_entries(settings.token_encryption_keys)
    elif settings.token_encryption_key and settings.token_encryption_key.strip():
        version = settings.token_encryption_key_version
        keys = {version: _decode_key(settings.token_encryption_key, version)}
    else:
        raise KeyringConfigurationError(
            "Missing TOKEN_ENCRYPTION_KEYS (or legacy TOKEN_ENCRYPTION_KEY)."
        )
    return KeyringConfig(keys=MappingProxyType(dict(keys)))


class Keyring:
    def __init__(self, config: KeyringConfig) -> None:
        self._config = config
        self._ciphers = {version: AESGCM(key) for version, key in config.keys.items()}

    @classmethod
    def from_settings(cls, settings: Settings) -> Keyring:
        return cls(build_keyring_config(settings))

    @property
    def current_version(self) -> int:
        return self._config.current_version

    @property
    def versions(self) -> tuple[int, ...]:
        return tuple(sorted(self._ciphers))

    def encrypt(self, plaintext: str | bytes) -> EncryptedSecret:
        # Fresh random nonce per call; ciphertext carries the GCM tag.
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
        version = self.current_version
        nonce = os.urandom(NONCE_BYTES)
        ciphertext = self._ciphers[version].encrypt(nonce, data, None)
        return EncryptedSecret(ciphertext=ciphertext, nonce=nonce, key_version=version)

    def decrypt(self, ciphertext: bytes, nonce: bytes, key_version: int) -> bytes:
        cipher = self._ciphers.get(key_version)
        if cipher is None:
            raise UnknownKeyVersionError(f"Unknown encryption key version: {key_version}")
        return cipher.decrypt(nonce, ciphertext, None)

    def decrypt_text(self, secret: EncryptedSecret) -> str:
        return self.decrypt(secret.ciphertext, secret.nonce, secret.key_version).decode("utf-8")
