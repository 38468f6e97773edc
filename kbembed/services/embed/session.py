from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time
from typing import Callable
from uuid import uuid4

from kbembed.core.errors import (
    blocked_origin,
    invalid_origin_format,
    invalid_request,
    missing_configuration,
    project_not_found,
)
from kbembed.persistence.store import KnowledgeStore
from kbembed.services.audit import EVENT_BLOCKED_ORIGIN, EVENT_EMBED_SESSION_CREATED, AuditLogger
from kbembed.services.embed.origin import canonicalize_origin, is_origin_allowed
from kbembed.services.embed.tokens import EmbedTokenPayload, sign_embed_token


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmbedSession:
    embed_token: str
    expires_at: datetime
    project_handle: str

    def as_dict(self) -> dict[str, str]:
        return {
            "embed_token": self.embed_token,
            "expires_at": self.expires_at.isoformat().replace("+00:00", "Z"),
            "project_handle": self.project_handle,
        }


def normalize_handle(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


class EmbedSessionIssuer:
    def __init__(
        self,
        store: KnowledgeStore,
        audit: AuditLogger,
        *,
        signing_secret: str | None,
        ttl_seconds: int,
        time_provider: Callable[[], float] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._secret = signing_secret
        self._ttl_seconds = ttl_seconds
        # Allow injecting time and ids for deterministic tests.
        self._time_provider = time_provider or time.time
        self._id_factory = id_factory or (lambda: str(uuid4()))

    async def issue(self, *, project_handle: object, origin_header: str | None) -> EmbedSession:
        if not self._secret:
            raise missing_configuration("Embed token signing secret is not configured.")
        handle = normalize_handle(project_handle)
        if not handle:
            raise invalid_request("project_handle is required.")
        origin = canonicalize_origin(origin_header)
        if origin is None:
            raise invalid_origin_format()

        project = await self._store.get_project_by_handle(handle)
        if project is None:
            raise project_not_found()

        if not is_origin_allowed(origin, project.allowed_origins):
            await self._audit.record(
                EVENT_BLOCKED_ORIGIN,
                project_id=project.id,
                origin=origin,
                metadata={"project_handle": handle},
            )
            logger.info("embed_session_blocked project_id=%s origin=%s", project.id, origin)
            raise blocked_origin(handle)

        issued_at = int(self._time_provider())
        expires_at = issued_at + self._ttl_seconds
        payload = EmbedTokenPayload(
            project_id=project.id,
            project_handle=project.handle,
            origin=origin,
            iat=issued_at,
            exp=expires_at,
            jti=self._id_factory(),
        )
        token = sign_embed_token(payload, self._secret)
        await self._audit.record(
            EVENT_EMBED_SESSION_CREATED,
            project_id=project.id,
            origin=origin,
            metadata={
                "status": "issued",
                "origin": origin,
                "project_handle": project.handle,
                "ttl_seconds": self._ttl_seconds,
                "jti": payload.jti,
            },
        )
        return EmbedSession(
            embed_token=token,
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
            project_handle=project.handle,
        )
