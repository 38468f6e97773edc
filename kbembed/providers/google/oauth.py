from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

import httpx
import jwt

from kbembed.core.config import Settings
from kbembed.core.errors import OAuthProviderError, ProviderConfigError, ProviderRequestError


logger = logging.getLogger(__name__)

PROVIDER_UNAVAILABLE = "provider_unavailable"


@dataclass(frozen=True)
class OAuthErrorInfo:
    status_code: int
    code: str
    message: str
    retryable: bool


_PROVIDER_ERRORS: dict[str, OAuthErrorInfo] = {
    "invalid_grant": OAuthErrorInfo(
        400, "expired_oauth_code", "Google authorization code expired or was already used.", True
    ),
    "invalid_client": OAuthErrorInfo(500, "oauth_client_misconfigured", "Google OAuth client is misconfigured.", False),
    "access_denied": OAuthErrorInfo(400, "consent_revoked", "Google authorization was denied or revoked.", True),
}
_UNAVAILABLE = OAuthErrorInfo(503, PROVIDER_UNAVAILABLE, "Google OAuth provider is temporarily unavailable.", True)


def map_provider_error(error_code: str | None) -> OAuthErrorInfo:
    # Raw provider error strings never leave this module.
    return _PROVIDER_ERRORS.get(error_code or "", _UNAVAILABLE)


@dataclass(frozen=True)
class TokenGrant:
    access_token: str | None
    refresh_token: str | None
    id_token: str | None
    scopes: tuple[str, ...]


def _optional_str(body: dict[str, Any], key: str) -> str | None:
    value = body.get(key)
    return value if isinstance(value, str) and value else None


def subject_from_id_token(id_token: str | None) -> str | None:
    # Only the subject claim is read; the signature is not verified here.
    if not id_token:
        return None
    try:
        claims = jwt.decode(id_token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    subject = claims.get("sub")
    return subject if isinstance(subject, str) and subject else None


class GoogleOAuthClient:
    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.ext_call_timeout_ms / 1000.0)
        return self._client

    def _credentials(self) -> tuple[str, str]:
        client_id = self._settings.google_oauth_client_id
        client_secret = self._settings.google_oauth_client_secret
        if not client_id or not client_secret:
            raise ProviderConfigError("Missing Google OAuth client configuration.")
        return client_id, client_secret

    async def _post_token(self, form: dict[str, str], *, operation: str) -> tuple[int, dict[str, Any]]:
        try:
            response = await self._get_client().post(self._settings.google_token_url, data=form)
        except httpx.HTTPError as exc:
            logger.warning("google_token_request_failed operation=%s", operation, exc_info=exc)
            raise OAuthProviderError(PROVIDER_UNAVAILABLE) from exc
        try:
            body = response.json()
        except ValueError:
            body = {}
        return response.status_code, body if isinstance(body, dict) else {}

    async def exchange_code(self, code: str) -> TokenGrant:
        client_id, client_secret = self._credentials()
        redirect_uri = self._settings.google_oauth_redirect_uri
        if not redirect_uri:
            raise ProviderConfigError("Missing Google OAuth redirect URI.")
        status_code, body = await self._post_token(
            {
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            operation="authorization_code",
        )
        if status_code >= 400:
            error_code = body.get("error") if isinstance(body.get("error"), str) else None
            mapped = map_provider_error(error_code)
            logger.warning("google_code_exchange_rejected status=%s mapped=%s", status_code, mapped.code)
            raise OAuthProviderError(mapped.code)
        scope_text = body.get("scope") if isinstance(body.get("scope"), str) else ""
        return TokenGrant(
            access_token=_optional_str(body, "access_token"),
            refresh_token=_optional_str(body, "refresh_token"),
            id_token=_optional_str(body, "id_token"),
            scopes=tuple(scope for scope in scope_text.split(" ") if scope),
        )

    async def refresh_access_token(self, refresh_token: str) -> str:
        client_id, client_secret = self._credentials()
        try:
            status_code, body = await self._post_token(
                {
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                operation="refresh_token",
            )
        except OAuthProviderError as exc:
            raise ProviderRequestError("Failed to refresh Drive access token.") from exc
        access_token = _optional_str(body, "access_token")
        if status_code >= 400 or access_token is None:
            raise ProviderRequestError("Failed to refresh Drive access token.", status_code=status_code)
        return access_token

    async def fetch_subject(self, access_token: str) -> str | None:
        # Identity lookup is best-effort; callers decide how to treat a missing subject.
        try:
            response = await self._get_client().get(
                self._settings.google_userinfo_url,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("google_userinfo_failed", exc_info=exc)
            return None
        if response.status_code >= 400:
            return None
        try:
            body = response.json()
        except ValueError:
            return None
        subject = body.get("sub") if isinstance(body, dict) else None
        return subject if isinstance(subject, str) and subject else None
