from __future__ import annotations

from functools import lru_cache
import json
from typing import Any

from fastapi import Depends, Request

from kbembed.core.config import Settings, get_settings
from kbembed.core.errors import invalid_request
from kbembed.ingestion.extraction import SourceExtractor
from kbembed.persistence.db import SessionLocal
from kbembed.persistence.sql_store import SqlKnowledgeStore
from kbembed.persistence.store import KnowledgeStore
from kbembed.providers.google.drive import GoogleDriveClient
from kbembed.providers.google.oauth import GoogleOAuthClient
from kbembed.providers.llm.base import GenerativeProvider
from kbembed.providers.llm.factory import get_generative_provider
from kbembed.services.audit import AuditLogger, get_request_context
from kbembed.services.auth.owner_sessions import OwnerSessionVerifier
from kbembed.services.crypto.keyring import Keyring
from kbembed.services.rate_limit import ProjectRateLimiter, get_rate_limiter


@lru_cache
def _sql_store() -> SqlKnowledgeStore:
    return SqlKnowledgeStore(SessionLocal)


def get_store() -> KnowledgeStore:
    return _sql_store()


@lru_cache
def _keyring() -> Keyring:
    # Built once per process; key material is immutable after startup.
    return Keyring.from_settings(get_settings())


def get_keyring() -> Keyring:
    return _keyring()


def get_provider(settings: Settings = Depends(get_settings)) -> GenerativeProvider:
    return get_generative_provider(settings)


def get_limiter(settings: Settings = Depends(get_settings)) -> ProjectRateLimiter:
    return get_rate_limiter(settings)


def get_oauth_client(settings: Settings = Depends(get_settings)) -> GoogleOAuthClient:
    return GoogleOAuthClient(settings)


def get_drive_client(settings: Settings = Depends(get_settings)) -> GoogleDriveClient:
    return GoogleDriveClient(settings)


def get_session_verifier(settings: Settings = Depends(get_settings)) -> OwnerSessionVerifier:
    return OwnerSessionVerifier(settings)


def get_extractor(
    drive: GoogleDriveClient = Depends(get_drive_client),
    provider: GenerativeProvider = Depends(get_provider),
    settings: Settings = Depends(get_settings),
) -> SourceExtractor:
    return SourceExtractor(drive, provider, settings)


def audit_logger(function_name: str):
    # Bind the audit function name per route; the request supplies the context.
    def _dependency(
        request: Request,
        store: KnowledgeStore = Depends(get_store),
        settings: Settings = Depends(get_settings),
    ) -> AuditLogger:
        return AuditLogger(
            store,
            function_name=function_name,
            context=get_request_context(request),
            settings=settings,
        )

    return _dependency


async def json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    try:
        payload = json.loads(raw) if raw else None
    except ValueError as exc:
        raise invalid_request("Request body must be valid JSON.") from exc
    if not isinstance(payload, dict):
        raise invalid_request("Request body must be valid JSON.")
    return payload


def reset_dependency_caches() -> None:
    _sql_store.cache_clear()
    _keyring.cache_clear()
