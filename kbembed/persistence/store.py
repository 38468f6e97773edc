from __future__ import annotations

from datetime import datetime
from typing import Protocol, Sequence

from kbembed.domain.records import (
    AuditRecord,
    ChunkMatch,
    GoogleConnectionRecord,
    IngestJobClaim,
    NewChunk,
    ProjectRecord,
    SourceRecord,
    UsageDecision,
    UsageLimits,
)


class KnowledgeStore(Protocol):
    """Transactional operations the services rely on.

    Every method is a single atomic unit against the backing store. The
    contracts that matter under concurrency:

    - ``reserve_usage`` reads and updates the day and month counters under
      row locks; a denied reservation changes nothing.
    - ``claim_ingest_job`` hands a job to at most one caller. It picks the
      oldest job that is queued, or running with an expired lease, whose
      attempts are below ``max_attempts``; it sets status running, increments
      attempts and stamps the lease in the same statement.
    - ``fail_abandoned_ingest_jobs`` fails running jobs whose lease lapsed on
      the final attempt and marks their sources failed, in one transaction.
    - ``replace_source_chunks`` deletes and inserts a source's chunks in one
      transaction, so readers see either the old set or the new one.
    """

    # Projects
    async def get_project(self, project_id: str) -> ProjectRecord | None: ...

    async def get_project_by_handle(self, handle: str) -> ProjectRecord | None: ...

    async def get_owned_project(self, account_id: str, project_id: str) -> ProjectRecord | None: ...

    # Usage and retrieval
    async def reserve_usage(
        self,
        project_id: str,
        limits: UsageLimits,
        *,
        requests: int,
        tokens_in: int,
        tokens_out: int,
        now: datetime,
    ) -> UsageDecision: ...

    async def match_source_chunks(
        self, project_id: str, embedding: Sequence[float], count: int
    ) -> list[ChunkMatch]: ...

    # Sources
    async def get_source(self, source_id: str) -> SourceRecord | None: ...

    async def list_owned_sources(
        self, account_id: str, project_id: str, source_id: str | None = None
    ) -> list[SourceRecord]: ...

    async def mark_source_processing(self, source_id: str) -> None: ...

    async def mark_source_ready(self, source_id: str, ingested_at: datetime) -> None: ...

    async def mark_source_failed(self, source_id: str, error: str) -> None: ...

    async def reset_sources_pending(self, source_ids: Sequence[str]) -> None: ...

    # Chunks
    async def count_project_chunks_excluding_source(self, project_id: str, source_id: str) -> int: ...

    async def replace_source_chunks(
        self, project_id: str, source_id: str, new_chunks: Sequence[NewChunk]
    ) -> None: ...

    # Jobs
    async def claim_ingest_job(
        self, *, lease_seconds: int, max_attempts: int, now: datetime
    ) -> IngestJobClaim | None: ...

    async def fail_abandoned_ingest_jobs(
        self, *, max_attempts: int, now: datetime, error: str
    ) -> list[IngestJobClaim]: ...

    async def complete_job(self, job_id: str, completed_at: datetime) -> None: ...

    async def requeue_job(self, job_id: str, error: str) -> None: ...

    async def fail_job(self, job_id: str, error: str, completed_at: datetime) -> None: ...

    async def count_jobs(self, project_id: str, status: str) -> int: ...

    async def active_job_source_ids(self, project_id: str, source_ids: Sequence[str]) -> set[str]: ...

    async def enqueue_jobs(self, project_id: str, source_ids: Sequence[str]) -> list[str]: ...

    # OAuth connections
    async def get_google_connection(self, account_id: str) -> GoogleConnectionRecord | None: ...

    async def upsert_google_connection(self, record: GoogleConnectionRecord) -> None: ...

    # Audit
    async def insert_audit_event(self, record: AuditRecord) -> None: ...
