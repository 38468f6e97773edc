from __future__ import annotations

import binascii
from dataclasses import dataclass
import json
import logging
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, StrictStr, ValidationError

from kbembed.core.config import Settings
from kbembed.core.errors import (
    OAuthProviderError,
    ServiceError,
    StoreError,
    invalid_request,
    missing_configuration,
)
from kbembed.domain.records import GoogleConnectionRecord
from kbembed.persistence.store import KnowledgeStore
from kbembed.providers.google.oauth import GoogleOAuthClient, map_provider_error, subject_from_id_token
from kbembed.services.auth.owner_sessions import OwnerSessionVerifier
from kbembed.services.crypto.keyring import Keyring
from kbembed.services.crypto.utils import b64url_decode


logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


class OAuthState(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    user_id: StrictStr
    session_token: StrictStr
    # Parsed for compatibility; redirects always target the settings page.
    return_to: str | None = None


def decode_state(raw_state: str) -> OAuthState:
    try:
        payload = json.loads(b64url_decode(raw_state))
    except (binascii.Error, ValueError) as exc:
        raise ServiceError(status_code=400, code="invalid_state", message="Invalid OAuth state payload.") from exc
    try:
        return OAuthState.model_validate(payload)
    except ValidationError as exc:
        raise ServiceError(
            status_code=400,
            code="invalid_state",
            message="OAuth state payload is missing required fields.",
        ) from exc


@dataclass(frozen=True)
class CaptureOutcome:
    status: str
    reason: str | None = None


class DriveConnectService:
    """Captures a Google Drive grant for an owner account.

    Browser-facing failures become redirect outcomes with a stable reason
    code. Malformed callbacks and session problems raise ``ServiceError``.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        keyring: Keyring,
        oauth: GoogleOAuthClient,
        sessions: OwnerSessionVerifier,
        settings: Settings,
    ) -> None:
        self._store = store
        self._keyring = keyring
        self._oauth = oauth
        self._sessions = sessions
        self._settings = settings

    def redirect_url(self, outcome: CaptureOutcome) -> str:
        params = {"status": outcome.status}
        if outcome.reason:
            params["reason"] = outcome.reason
        base = self._settings.owner_app_url.rstrip("/")
        return f"{base}{self._settings.owner_settings_path}?{urlencode(params)}"

    def _require_configuration(self) -> None:
        settings = self._settings
        if not (
            settings.google_oauth_client_id
            and settings.google_oauth_client_secret
            and settings.google_oauth_redirect_uri
            and settings.auth_base_url
        ):
            raise missing_configuration("Required environment variables are missing.")

    async def capture(self, *, code: str | None, state: str | None, error: str | None) -> CaptureOutcome:
        self._require_configuration()
        if error:
            return CaptureOutcome(STATUS_ERROR, map_provider_error(error).code)
        if not code or not state:
            raise invalid_request("Missing OAuth callback parameters.", {"required": ["code", "state"]})

        oauth_state = decode_state(state)
        account_id = await self._sessions.resolve_account_id(oauth_state.session_token)
        if account_id is None or account_id != oauth_state.user_id:
            raise ServiceError(
                status_code=401,
                code="invalid_owner_session",
                message="Unable to validate owner session for Drive connection.",
            )

        try:
            grant = await self._oauth.exchange_code(code)
        except OAuthProviderError as exc:
            return CaptureOutcome(STATUS_ERROR, exc.code)

        if self._settings.google_drive_scope not in grant.scopes:
            return CaptureOutcome(STATUS_ERROR, "insufficient_scopes")
        if not grant.refresh_token and not grant.access_token:
            return CaptureOutcome(STATUS_ERROR, "oauth_missing_tokens")

        subject = subject_from_id_token(grant.id_token)
        if subject is None and grant.access_token:
            subject = await self._oauth.fetch_subject(grant.access_token)
        if subject is None:
            return CaptureOutcome(STATUS_ERROR, "google_identity_unavailable")

        try:
            existing = await self._store.get_google_connection(account_id)
        except StoreError as exc:
            raise ServiceError(
                status_code=500,
                code="connection_read_failed",
                message="Failed to read existing Google connection state.",
            ) from exc

        # Re-consent may omit the refresh token; keep the stored one in that case.
        if grant.refresh_token:
            secret = self._keyring.encrypt(grant.refresh_token)
        elif existing is not None:
            secret = existing.refresh_token
        else:
            return CaptureOutcome(STATUS_ERROR, "missing_refresh_token")

        record = GoogleConnectionRecord(
            account_id=account_id,
            google_subject=subject,
            refresh_token=secret,
            scopes=grant.scopes,
        )
        try:
            await self._store.upsert_google_connection(record)
        except StoreError as exc:
            raise ServiceError(
                status_code=500,
                code="connection_write_failed",
                message="Failed to persist Google connection.",
            ) from exc
        logger.info(
            "drive_connection_saved account_id=%s key_version=%s rotated=%s",
            account_id,
            secret.key_version,
            bool(grant.refresh_token),
        )
        return CaptureOutcome(STATUS_SUCCESS)
