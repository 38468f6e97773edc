from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from kbembed.apps.api.deps import audit_logger, get_store, json_body
from kbembed.apps.api.response import success_response
from kbembed.core.config import Settings, get_settings
from kbembed.persistence.store import KnowledgeStore
from kbembed.services.audit import AuditLogger
from kbembed.services.embed.session import EmbedSessionIssuer

router = APIRouter(tags=["embed"])


@router.post("/embed/session")
async def create_embed_session(
    request: Request,
    body: dict[str, Any] = Depends(json_body),
    store: KnowledgeStore = Depends(get_store),
    audit: AuditLogger = Depends(audit_logger("embed_session")),
    settings: Settings = Depends(get_settings),
) -> dict:
    issuer = EmbedSessionIssuer(
        store,
        audit,
        signing_secret=settings.embed_token_signing_secret,
        ttl_seconds=settings.effective_embed_token_ttl(),
    )
    session = await issuer.issue(
        project_handle=body.get("project_handle"),
        origin_header=request.headers.get("origin"),
    )
    return success_response(request=request, data=session.as_dict())
