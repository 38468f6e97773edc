from __future__ import annotations

import asyncio
from datetime import datetime
import logging
from typing import Any, Awaitable, Callable

from kbembed.core.config import Settings
from kbembed.core.errors import IngestionError
from kbembed.domain.records import JOB_FAILED, JOB_QUEUED, IngestJobClaim, NewChunk, ProjectRecord, SourceRecord
from kbembed.ingestion.chunking import chunk_text
from kbembed.ingestion.embeddings import embed_in_batches
from kbembed.ingestion.extraction import SOURCE_GPDF, FallbackBudget, SourceExtractor
from kbembed.persistence.store import KnowledgeStore
from kbembed.providers.google.oauth import GoogleOAuthClient
from kbembed.providers.llm.base import GenerativeProvider
from kbembed.services.audit import (
    EVENT_GUARDRAIL_ENFORCED,
    EVENT_INGESTION_COMPLETED,
    EVENT_INGESTION_FAILED,
    AuditLogger,
)
from kbembed.services.crypto.keyring import Keyring
from kbembed.services.quota import utc_now


logger = logging.getLogger(__name__)

GUARDRAIL_TOTAL_CHUNKS = "max_total_chunks"
SOURCE_ERROR_MAX_CHARS = 500
ABANDONED_JOB_ERROR = "Ingestion lease expired on the final attempt."


def retry_backoff_ms(attempts: int, *, base_ms: int = 250, max_ms: int = 5000) -> int:
    # Capped exponential backoff keyed on the attempt that just failed.
    return min(max_ms, base_ms * 2 ** max(0, attempts - 1))


def _error_message(exc: Exception) -> str:
    message = str(exc).strip()
    return message or exc.__class__.__name__


async def fail_abandoned_jobs(
    store: KnowledgeStore,
    audit: AuditLogger,
    *,
    max_attempts: int,
    now: datetime,
) -> int:
    reaped = await store.fail_abandoned_ingest_jobs(max_attempts=max_attempts, now=now, error=ABANDONED_JOB_ERROR)
    for job in reaped:
        logger.warning("ingest_job_abandoned job_id=%s source_id=%s attempts=%s", job.id, job.source_id, job.attempts)
        await audit.record(
            EVENT_INGESTION_FAILED,
            project_id=job.project_id,
            metadata={
                "status": JOB_FAILED,
                "job_id": job.id,
                "source_id": job.source_id,
                "error": ABANDONED_JOB_ERROR,
                "attempts": job.attempts,
                "max_attempts": max_attempts,
            },
        )
    return len(reaped)


class IngestRunner:
    """Claims ingest jobs and turns Drive sources into embedded chunks.

    One job is processed at a time. A failure requeues the job after a
    backoff until ``ingest_max_attempts`` is reached, then fails it.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        keyring: Keyring,
        oauth: GoogleOAuthClient,
        extractor: SourceExtractor,
        provider: GenerativeProvider,
        audit: AuditLogger,
        settings: Settings,
        *,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._keyring = keyring
        self._oauth = oauth
        self._extractor = extractor
        self._provider = provider
        self._audit = audit
        self._settings = settings
        # Allow injecting sleep and clock for deterministic tests.
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or utc_now

    async def run_batch(self) -> dict[str, int]:
        budget = FallbackBudget(limit=self._settings.pdf_max_fallbacks_per_run)
        await fail_abandoned_jobs(
            self._store,
            self._audit,
            max_attempts=self._settings.ingest_max_attempts,
            now=self._clock(),
        )
        processed = 0
        for _ in range(self._settings.ingest_runner_max_jobs_per_invocation):
            if not await self.run_one(budget):
                break
            processed += 1
        logger.info("ingest_batch_finished processed_jobs=%s pdf_fallbacks_used=%s", processed, budget.used)
        return {"processed_jobs": processed, "pdf_fallbacks_used": budget.used}

    async def run_one(self, budget: FallbackBudget) -> bool:
        # Returns False when the queue had nothing claimable.
        job = await self._store.claim_ingest_job(
            lease_seconds=self._settings.ingest_job_lease_seconds,
            max_attempts=self._settings.ingest_max_attempts,
            now=self._clock(),
        )
        if job is None:
            return False
        logger.info("ingest_job_claimed job_id=%s source_id=%s attempts=%s", job.id, job.source_id, job.attempts)
        try:
            await self._process(job, budget)
        except Exception as exc:  # noqa: BLE001 - every job failure goes through retry accounting
            await self._handle_failure(job, exc)
        return True

    async def _load(self, job: IngestJobClaim) -> tuple[SourceRecord, ProjectRecord]:
        source = await self._store.get_source(job.source_id)
        if source is None or source.project_id != job.project_id:
            raise IngestionError("Source not found for ingestion job.")
        project = await self._store.get_project(job.project_id)
        if project is None:
            raise IngestionError("Project not found for ingestion job.")
        return source, project

    async def _guardrail(self, project_id: str, guardrail: str, details: dict[str, Any]) -> None:
        logger.info("ingest_guardrail_enforced project_id=%s guardrail=%s", project_id, guardrail)
        await self._audit.record(
            EVENT_GUARDRAIL_ENFORCED,
            project_id=project_id,
            metadata={"guardrail": guardrail, **details},
        )

    async def _process(self, job: IngestJobClaim, budget: FallbackBudget) -> None:
        settings = self._settings
        source, project = await self._load(job)
        connection = await self._store.get_google_connection(project.owner_account_id)
        if connection is None:
            raise IngestionError("Google Drive connection not found for project owner.")

        await self._store.mark_source_processing(source.id)
        refresh_token = self._keyring.decrypt_text(connection.refresh_token)
        access_token = await self._oauth.refresh_access_token(refresh_token)

        extraction = await self._extractor.extract(
            access_token=access_token,
            source=source,
            project=project,
            budget=budget,
        )
        for hit in extraction.guardrails:
            await self._guardrail(project.id, hit.guardrail, hit.details)
        if not extraction.text.strip():
            raise IngestionError("No extractable text found for source.")

        existing = await self._store.count_project_chunks_excluding_source(project.id, source.id)
        remaining = max(0, project.max_total_chunks - existing)
        if remaining <= 0:
            raise IngestionError("Project reached max_total_chunks cap.")
        max_chunks = min(settings.ingest_max_chunks_per_source, remaining)
        chunks = chunk_text(
            extraction.text,
            chunk_size=settings.ingest_chunk_size_chars,
            chunk_overlap=settings.ingest_chunk_overlap_chars,
            max_chunks=max_chunks,
        )
        if not chunks:
            raise IngestionError("Chunking yielded no content.")
        if max_chunks < settings.ingest_max_chunks_per_source:
            await self._guardrail(
                project.id,
                GUARDRAIL_TOTAL_CHUNKS,
                {
                    "max_total_chunks": project.max_total_chunks,
                    "existing_chunks_other_sources": existing,
                    "effective_max_chunks_for_source": max_chunks,
                    "source_id": source.id,
                },
            )

        vectors = await embed_in_batches(
            self._provider,
            model=settings.openai_embedding_model,
            texts=[chunk.content for chunk in chunks],
            batch_size=settings.openai_embedding_batch_size,
        )
        metadata = {
            "title": source.title,
            "file_id": source.drive_file_id,
            "source_type": source.source_type,
            "citation_anchor": "page_unknown" if source.source_type == SOURCE_GPDF else "document",
            "extraction_strategy": extraction.strategy,
        }
        new_chunks = [
            NewChunk(chunk_index=chunk.chunk_index, content=chunk.content, metadata=dict(metadata), embedding=vector)
            for chunk, vector in zip(chunks, vectors)
        ]
        await self._store.replace_source_chunks(project.id, source.id, new_chunks)

        now = self._clock()
        await self._store.mark_source_ready(source.id, now)
        await self._store.complete_job(job.id, now)
        await self._audit.record(
            EVENT_INGESTION_COMPLETED,
            project_id=project.id,
            metadata={
                "status": "done",
                "job_id": job.id,
                "source_id": source.id,
                "source_type": source.source_type,
                "chunk_count": len(new_chunks),
                "extraction_strategy": extraction.strategy,
            },
        )
        logger.info(
            "ingest_job_done job_id=%s source_id=%s chunks=%s strategy=%s",
            job.id,
            source.id,
            len(new_chunks),
            extraction.strategy,
        )

    async def _handle_failure(self, job: IngestJobClaim, exc: Exception) -> str:
        settings = self._settings
        message = _error_message(exc)
        if job.attempts < settings.ingest_max_attempts:
            delay_ms = retry_backoff_ms(
                job.attempts,
                base_ms=settings.ingest_retry_base_ms,
                max_ms=settings.ingest_retry_max_ms,
            )
            await self._sleep(delay_ms / 1000.0)
            await self._store.requeue_job(job.id, message)
            outcome = JOB_QUEUED
        else:
            await self._store.fail_job(job.id, message, self._clock())
            outcome = JOB_FAILED
        await self._store.mark_source_failed(job.source_id, message[:SOURCE_ERROR_MAX_CHARS])
        logger.warning(
            "ingest_job_failed job_id=%s attempts=%s max_attempts=%s outcome=%s",
            job.id,
            job.attempts,
            settings.ingest_max_attempts,
            outcome,
            exc_info=exc,
        )
        await self._audit.record(
            EVENT_INGESTION_FAILED,
            project_id=job.project_id,
            metadata={
                "status": outcome,
                "job_id": job.id,
                "source_id": job.source_id,
                "error": message,
                "attempts": job.attempts,
                "max_attempts": settings.ingest_max_attempts,
            },
        )
        return outcome
