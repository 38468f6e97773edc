from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from kbembed.apps.api.deps import audit_logger, get_limiter, get_provider, get_store, json_body
from kbembed.apps.api.response import success_response
from kbembed.core.config import Settings, get_settings
from kbembed.persistence.store import KnowledgeStore
from kbembed.providers.llm.base import GenerativeProvider
from kbembed.services.audit import AuditLogger
from kbembed.services.chat.gateway import ChatGateway
from kbembed.services.rate_limit import ProjectRateLimiter

router = APIRouter(tags=["chat"])


@router.post("/chat")
async def chat(
    request: Request,
    body: dict[str, Any] = Depends(json_body),
    store: KnowledgeStore = Depends(get_store),
    audit: AuditLogger = Depends(audit_logger("chat")),
    limiter: ProjectRateLimiter = Depends(get_limiter),
    provider: GenerativeProvider = Depends(get_provider),
    settings: Settings = Depends(get_settings),
) -> dict:
    gateway = ChatGateway(store, audit, limiter, provider, settings)
    result = await gateway.handle(
        embed_token=body.get("embed_token"),
        message=body.get("message"),
        origin_header=request.headers.get("origin"),
    )
    return success_response(request=request, data=result)
