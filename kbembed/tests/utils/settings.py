from __future__ import annotations

from typing import Any

from kbembed.core.config import Settings


SIGNING_SECRET = "test-signing-secret"


def make_settings(**overrides: Any) -> Settings:
    # Ignore any developer .env so tests see only explicit values.
    values: dict[str, Any] = {
        "embed_token_signing_secret": SIGNING_SECRET,
        "rate_limit_backend": "memory",
        "audit_sample_rate_chat_called": 1.0,
        "audit_sample_rate_rate_limited": 1.0,
        "llm_provider": "fake",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)
