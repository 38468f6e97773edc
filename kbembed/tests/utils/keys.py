from __future__ import annotations

import base64
import os

from kbembed.core.config import Settings
from kbembed.services.crypto.keyring import Keyring


def random_key_b64() -> str:
    return base64.b64encode(os.urandom(32)).decode("ascii")


def keyring_from_entries(entries: str) -> Keyring:
    return Keyring.from_settings(Settings(_env_file=None, token_encryption_keys=entries))


def make_keyring(*versions: int) -> tuple[Keyring, dict[int, str]]:
    # Returns the keyring plus the raw base64 keys so tests can rebuild subsets.
    keys = {version: random_key_b64() for version in versions or (1,)}
    entries = ",".join(f"{version}:{key}" for version, key in keys.items())
    return keyring_from_entries(entries), keys
