from __future__ import annotations

import logging

import httpx

from kbembed.core.config import Settings
from kbembed.core.errors import ProviderConfigError


logger = logging.getLogger(__name__)


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class OwnerSessionVerifier:
    """Resolves an owner session token to its account id via the auth service."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.ext_call_timeout_ms / 1000.0)
        return self._client

    async def resolve_account_id(self, session_token: str) -> str | None:
        base_url = self._settings.auth_base_url
        if not base_url:
            raise ProviderConfigError("AUTH_BASE_URL is required to validate owner sessions")
        headers = {"Authorization": f"Bearer {session_token}"}
        if self._settings.auth_api_key:
            headers["apikey"] = self._settings.auth_api_key
        try:
            response = await self._get_client().get(f"{base_url.rstrip('/')}/user", headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("owner_session_lookup_failed", exc_info=exc)
            return None
        if response.status_code >= 400:
            return None
        try:
            body = response.json()
        except ValueError:
            return None
        account_id = body.get("id") if isinstance(body, dict) else None
        return account_id if isinstance(account_id, str) and account_id else None
