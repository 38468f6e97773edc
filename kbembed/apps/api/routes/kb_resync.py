from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request

from kbembed.apps.api.deps import audit_logger, get_session_verifier, get_store, json_body
from kbembed.apps.api.response import success_response
from kbembed.core.config import Settings, get_settings
from kbembed.core.errors import ServiceError, invalid_request
from kbembed.persistence.store import KnowledgeStore
from kbembed.services.audit import AuditLogger
from kbembed.services.auth.owner_sessions import OwnerSessionVerifier, bearer_token
from kbembed.services.ingest.resync import ResyncTrigger

router = APIRouter(tags=["ingestion"])


def _invalid_session(message: str) -> ServiceError:
    return ServiceError(status_code=401, code="invalid_owner_session", message=message)


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@router.post("/kb/resync")
async def kb_resync(
    request: Request,
    authorization: str | None = Header(default=None),
    store: KnowledgeStore = Depends(get_store),
    audit: AuditLogger = Depends(audit_logger("kb_resync")),
    sessions: OwnerSessionVerifier = Depends(get_session_verifier),
    settings: Settings = Depends(get_settings),
) -> dict:
    # The owner session is checked before the body is read.
    token = bearer_token(authorization)
    if token is None:
        raise _invalid_session("Missing bearer token.")
    account_id = await sessions.resolve_account_id(token)
    if account_id is None:
        raise _invalid_session("Unable to validate owner session.")

    body = await json_body(request)
    project_id = _optional_str(body.get("project_id"))
    if project_id is None:
        raise invalid_request("project_id is required.")
    trigger = ResyncTrigger(store, audit, settings)
    result = await trigger.trigger(
        account_id=account_id,
        project_id=project_id,
        source_id=_optional_str(body.get("source_id")),
    )
    return success_response(request=request, data=result)
