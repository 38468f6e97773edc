from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse

from kbembed.apps.api.deps import get_keyring, get_oauth_client, get_session_verifier, get_store
from kbembed.core.config import Settings, get_settings
from kbembed.persistence.store import KnowledgeStore
from kbembed.providers.google.oauth import GoogleOAuthClient
from kbembed.services.auth.owner_sessions import OwnerSessionVerifier
from kbembed.services.crypto.keyring import Keyring
from kbembed.services.drive_connect import DriveConnectService

router = APIRouter(tags=["drive"])


@router.get("/oauth/google/callback")
async def google_oauth_callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    store: KnowledgeStore = Depends(get_store),
    keyring: Keyring = Depends(get_keyring),
    oauth: GoogleOAuthClient = Depends(get_oauth_client),
    sessions: OwnerSessionVerifier = Depends(get_session_verifier),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    service = DriveConnectService(store, keyring, oauth, sessions, settings)
    outcome = await service.capture(code=code, state=state, error=error)
    return RedirectResponse(service.redirect_url(outcome), status_code=302)
