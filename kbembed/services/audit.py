from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import logging
import random
from typing import Any, Callable
from uuid import uuid4

from starlette.requests import Request

from kbembed.core.config import Settings, get_settings
from kbembed.domain.records import AuditRecord
from kbembed.persistence.store import KnowledgeStore


logger = logging.getLogger(__name__)

AUDIT_SCHEMA_VERSION = 1

EVENT_EMBED_SESSION_CREATED = "embed_session_created"
EVENT_BLOCKED_ORIGIN = "blocked_origin"
EVENT_RATE_LIMITED = "rate_limited"
EVENT_QUOTA_EXCEEDED = "quota_exceeded"
EVENT_VALIDATION_FAILED = "validation_failed"
EVENT_INJECTION_PATTERN_DETECTED = "injection_pattern_detected"
EVENT_CHAT_CALLED = "chat_called"
EVENT_INGESTION_STARTED = "ingestion_started"
EVENT_INGESTION_COMPLETED = "ingestion_completed"
EVENT_INGESTION_FAILED = "ingestion_failed"
EVENT_GUARDRAIL_ENFORCED = "guardrail_enforced"

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "secret", "password", "refresh_token", "access_token"]
_REDACTED_VALUE = "[REDACTED]"


@dataclass(frozen=True)
class RequestContext:
    # Request identifiers and client hints captured once per inbound call.
    request_id: str
    trace_id: str
    ip_hash: str | None = None
    user_agent: str | None = None


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub credential-shaped fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def client_ip(request: Request) -> str | None:
    # Prefer the CDN-provided address, then the first proxy hop, then the socket peer.
    cf_ip = (request.headers.get("cf-connecting-ip") or "").strip()
    if cf_ip:
        return cf_ip
    forwarded = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    return request.client.host if request.client else None


def hash_ip(ip: str | None) -> str | None:
    if not ip:
        return None
    return hashlib.sha256(ip.encode("utf-8")).hexdigest()


def get_request_context(request: Request) -> RequestContext:
    request_id = getattr(request.state, "request_id", None) or str(uuid4())
    trace_id = (
        getattr(request.state, "trace_id", None)
        or request.headers.get("x-trace-id")
        or request.headers.get("x-request-id")
        or request_id
    )
    return RequestContext(
        request_id=request_id,
        trace_id=trace_id,
        ip_hash=hash_ip(client_ip(request)),
        user_agent=request.headers.get("user-agent"),
    )


def _sample_rate(settings: Settings, event_type: str) -> float:
    if event_type == EVENT_CHAT_CALLED:
        return settings.audit_sample_rate_chat_called
    if event_type == EVENT_RATE_LIMITED:
        return settings.audit_sample_rate_rate_limited
    return 1.0


class AuditLogger:
    def __init__(
        self,
        store: KnowledgeStore,
        *,
        function_name: str,
        context: RequestContext | None = None,
        settings: Settings | None = None,
        sampler: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._function_name = function_name
        self._context = context
        self._settings = settings or get_settings()
        # Allow injecting the sampler for deterministic tests.
        self._sampler = sampler or random.random

    @property
    def context(self) -> RequestContext | None:
        return self._context

    async def record(
        self,
        event_type: str,
        *,
        project_id: str | None = None,
        origin: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        # Audit writes are best-effort; a failed insert never breaks the caller.
        rate = _sample_rate(self._settings, event_type)
        if rate < 1.0 and self._sampler() >= rate:
            return
        context = self._context
        payload = {
            "schema_version": AUDIT_SCHEMA_VERSION,
            "function_name": self._function_name,
            "trace_id": context.trace_id if context else None,
            "sample_rate": rate,
            **sanitize_metadata(metadata or {}),
        }
        record = AuditRecord(
            event_type=event_type,
            project_id=project_id,
            origin=origin,
            ip_hash=context.ip_hash if context else None,
            user_agent=context.user_agent if context else None,
            request_id=context.request_id if context else None,
            metadata=payload,
            created_at=datetime.now(timezone.utc),
        )
        try:
            await self._store.insert_audit_event(record)
        except Exception as exc:  # noqa: BLE001 - audit failures must not surface
            logger.warning(
                "audit_event_write_failed event_type=%s request_id=%s",
                event_type,
                record.request_id,
                exc_info=exc,
            )
