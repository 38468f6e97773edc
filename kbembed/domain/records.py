from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from kbembed.services.crypto.keyring import EncryptedSecret


JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_DONE = "done"
JOB_FAILED = "failed"


@dataclass(frozen=True)
class ProjectRecord:
    id: str
    handle: str
    owner_account_id: str
    allowed_origins: tuple[str, ...] = ()
    rate_limit_rpm: int = 60
    rate_limit_burst: int = 10
    quota_daily_requests: int = 1000
    quota_monthly_requests: int = 20000
    quota_daily_tokens: int | None = None
    quota_monthly_tokens: int | None = None
    input_validation_policy: str | None = None
    output_validation_policy: str | None = None
    max_total_chunks: int = 5000
    max_ocr_pages_per_sync: int = 50


@dataclass(frozen=True)
class SourceRecord:
    id: str
    project_id: str
    source_type: str
    drive_file_id: str
    title: str | None = None
    status: str = "pending"
    last_error: str | None = None


@dataclass(frozen=True)
class IngestJobClaim:
    # Snapshot returned by a claim; attempts already includes this claim.
    id: str
    project_id: str
    source_id: str
    attempts: int


@dataclass(frozen=True)
class GoogleConnectionRecord:
    account_id: str
    google_subject: str
    refresh_token: EncryptedSecret
    scopes: tuple[str, ...] = ()


@dataclass(frozen=True)
class ChunkMatch:
    id: int
    source_id: str
    chunk_index: int
    content: str
    metadata: dict[str, Any]
    similarity: float


@dataclass(frozen=True)
class NewChunk:
    chunk_index: int
    content: str
    metadata: dict[str, Any]
    embedding: list[float]


@dataclass(frozen=True)
class UsageLimits:
    daily_requests: int
    monthly_requests: int
    daily_tokens: int | None = None
    monthly_tokens: int | None = None


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    reason: str | None
    daily_requests: int
    monthly_requests: int
    daily_tokens: int
    monthly_tokens: int
    daily_reset_at: datetime
    monthly_reset_at: datetime


@dataclass(frozen=True)
class AuditRecord:
    event_type: str
    project_id: str | None = None
    origin: str | None = None
    ip_hash: str | None = None
    user_agent: str | None = None
    request_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
