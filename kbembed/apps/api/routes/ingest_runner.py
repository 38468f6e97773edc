from __future__ import annotations

import hmac

from fastapi import APIRouter, Depends, Header, Request

from kbembed.apps.api.deps import (
    audit_logger,
    get_extractor,
    get_keyring,
    get_oauth_client,
    get_provider,
    get_store,
)
from kbembed.apps.api.response import success_response
from kbembed.core.config import Settings, get_settings
from kbembed.core.errors import ServiceError
from kbembed.ingestion.extraction import SourceExtractor
from kbembed.persistence.store import KnowledgeStore
from kbembed.providers.google.oauth import GoogleOAuthClient
from kbembed.providers.llm.base import GenerativeProvider
from kbembed.services.audit import AuditLogger
from kbembed.services.auth.owner_sessions import bearer_token
from kbembed.services.crypto.keyring import Keyring
from kbembed.services.ingest.runner import IngestRunner

router = APIRouter(tags=["ingestion"])


def require_runner_secret(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    # Unset secret leaves the entrypoint open for local development.
    expected = settings.ingest_runner_secret
    if not expected:
        return
    provided = bearer_token(authorization) or ""
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise ServiceError(status_code=401, code="unauthorized", message="Invalid ingestion runner secret.")


@router.post("/ingest/run", dependencies=[Depends(require_runner_secret)])
async def run_ingestion(
    request: Request,
    store: KnowledgeStore = Depends(get_store),
    keyring: Keyring = Depends(get_keyring),
    oauth: GoogleOAuthClient = Depends(get_oauth_client),
    extractor: SourceExtractor = Depends(get_extractor),
    provider: GenerativeProvider = Depends(get_provider),
    audit: AuditLogger = Depends(audit_logger("ingest_runner")),
    settings: Settings = Depends(get_settings),
) -> dict:
    runner = IngestRunner(store, keyring, oauth, extractor, provider, audit, settings)
    result = await runner.run_batch()
    return success_response(request=request, data=result)
