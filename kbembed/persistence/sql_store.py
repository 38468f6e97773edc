from __future__ import annotations

from datetime import datetime
import logging
from typing import Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kbembed.core.errors import StoreError
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
from kbembed.persistence.repos import audit, chunks, connections, jobs, projects, sources, usage


logger = logging.getLogger(__name__)


class SqlKnowledgeStore:
    """Postgres-backed KnowledgeStore; each call runs in its own transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _run(self, operation: str, func, *args, **kwargs):
        # Convert DB errors into a controlled store error for API mapping.
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    return await func(session, *args, **kwargs)
        except SQLAlchemyError as exc:
            logger.warning("store_operation_failed operation=%s", operation, exc_info=exc)
            raise StoreError(f"{operation} failed") from exc

    async def get_project(self, project_id: str) -> ProjectRecord | None:
        return await self._run("get_project", projects.get_project, project_id)

    async def get_project_by_handle(self, handle: str) -> ProjectRecord | None:
        return await self._run("get_project_by_handle", projects.get_project_by_handle, handle)

    async def get_owned_project(self, account_id: str, project_id: str) -> ProjectRecord | None:
        return await self._run("get_owned_project", projects.get_owned_project, account_id, project_id)

    async def reserve_usage(
        self,
        project_id: str,
        limits: UsageLimits,
        *,
        requests: int,
        tokens_in: int,
        tokens_out: int,
        now: datetime,
    ) -> UsageDecision:
        return await self._run(
            "reserve_usage",
            usage.reserve_usage,
            project_id,
            limits,
            requests=requests,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            now=now,
        )

    async def match_source_chunks(
        self, project_id: str, embedding: Sequence[float], count: int
    ) -> list[ChunkMatch]:
        return await self._run("match_source_chunks", chunks.match_source_chunks, project_id, embedding, count)

    async def get_source(self, source_id: str) -> SourceRecord | None:
        return await self._run("get_source", sources.get_source, source_id)

    async def list_owned_sources(
        self, account_id: str, project_id: str, source_id: str | None = None
    ) -> list[SourceRecord]:
        return await self._run(
            "list_owned_sources", sources.list_owned_sources, account_id, project_id, source_id
        )

    async def mark_source_processing(self, source_id: str) -> None:
        await self._run("mark_source_processing", sources.update_status, source_id, status="processing")

    async def mark_source_ready(self, source_id: str, ingested_at: datetime) -> None:
        await self._run(
            "mark_source_ready",
            sources.update_status,
            source_id,
            status="ready",
            last_ingested_at=ingested_at,
        )

    async def mark_source_failed(self, source_id: str, error: str) -> None:
        await self._run("mark_source_failed", sources.update_status, source_id, status="failed", last_error=error)

    async def reset_sources_pending(self, source_ids: Sequence[str]) -> None:
        await self._run("reset_sources_pending", sources.reset_pending, source_ids)

    async def count_project_chunks_excluding_source(self, project_id: str, source_id: str) -> int:
        return await self._run(
            "count_project_chunks_excluding_source",
            chunks.count_project_chunks_excluding_source,
            project_id,
            source_id,
        )

    async def replace_source_chunks(
        self, project_id: str, source_id: str, new_chunks: Sequence[NewChunk]
    ) -> None:
        await self._run("replace_source_chunks", chunks.replace_source_chunks, project_id, source_id, new_chunks)

    async def claim_ingest_job(
        self, *, lease_seconds: int, max_attempts: int, now: datetime
    ) -> IngestJobClaim | None:
        return await self._run(
            "claim_ingest_job",
            jobs.claim_ingest_job,
            lease_seconds=lease_seconds,
            max_attempts=max_attempts,
            now=now,
        )

    async def fail_abandoned_ingest_jobs(
        self, *, max_attempts: int, now: datetime, error: str
    ) -> list[IngestJobClaim]:
        return await self._run(
            "fail_abandoned_ingest_jobs",
            jobs.fail_abandoned_jobs,
            max_attempts=max_attempts,
            now=now,
            error=error,
        )

    async def complete_job(self, job_id: str, completed_at: datetime) -> None:
        await self._run("complete_job", jobs.complete_job, job_id, completed_at)

    async def requeue_job(self, job_id: str, error: str) -> None:
        await self._run("requeue_job", jobs.requeue_job, job_id, error)

    async def fail_job(self, job_id: str, error: str, completed_at: datetime) -> None:
        await self._run("fail_job", jobs.fail_job, job_id, error, completed_at)

    async def count_jobs(self, project_id: str, status: str) -> int:
        return await self._run("count_jobs", jobs.count_jobs, project_id, status)

    async def active_job_source_ids(self, project_id: str, source_ids: Sequence[str]) -> set[str]:
        return await self._run("active_job_source_ids", jobs.active_job_source_ids, project_id, source_ids)

    async def enqueue_jobs(self, project_id: str, source_ids: Sequence[str]) -> list[str]:
        return await self._run("enqueue_jobs", jobs.enqueue_jobs, project_id, source_ids)

    async def get_google_connection(self, account_id: str) -> GoogleConnectionRecord | None:
        return await self._run("get_google_connection", connections.get_connection, account_id)

    async def upsert_google_connection(self, record: GoogleConnectionRecord) -> None:
        await self._run("upsert_google_connection", connections.upsert_connection, record)

    async def insert_audit_event(self, record: AuditRecord) -> None:
        await self._run("insert_audit_event", audit.insert_event, record)
