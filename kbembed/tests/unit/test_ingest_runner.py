from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from kbembed.core.errors import ProviderRequestError
from kbembed.domain.records import (
    JOB_DONE,
    JOB_FAILED,
    JOB_QUEUED,
    JOB_RUNNING,
    GoogleConnectionRecord,
    ProjectRecord,
    SourceRecord,
)
from kbembed.ingestion.extraction import FallbackBudget, SourceExtractor
from kbembed.services.audit import (
    EVENT_GUARDRAIL_ENFORCED,
    EVENT_INGESTION_COMPLETED,
    EVENT_INGESTION_FAILED,
    AuditLogger,
)
from kbembed.services.ingest.runner import IngestRunner, retry_backoff_ms
from kbembed.tests.utils.google import FakeDrive, FakeOAuth
from kbembed.tests.utils.keys import make_keyring
from kbembed.tests.utils.providers import ScriptedProvider
from kbembed.tests.utils.settings import make_settings
from kbembed.tests.utils.store import InMemoryStore, StoredChunk


NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
DOC_TEXT = "Our support desk is open weekdays from nine to five.\n\nRefunds take five business days."


class Harness:
    def __init__(self, *, project: ProjectRecord | None = None, with_connection: bool = True, **settings) -> None:
        self.settings = make_settings(**settings)
        self.store = InMemoryStore()
        self.keyring, _keys = make_keyring(1)
        self.oauth = FakeOAuth()
        self.drive = FakeDrive(texts={"file-1": DOC_TEXT})
        self.provider = ScriptedProvider()
        self.sleeps: list[float] = []
        self.project = self.store.add_project(
            project or ProjectRecord(id="p-1", handle="acme", owner_account_id="owner-1")
        )
        self.source = self.store.add_source(
            SourceRecord(id="s-1", project_id="p-1", source_type="gdoc", drive_file_id="file-1", title="Handbook")
        )
        if with_connection:
            self.store.connections["owner-1"] = GoogleConnectionRecord(
                account_id="owner-1",
                google_subject="google-sub",
                refresh_token=self.keyring.encrypt("stored-refresh-token"),
            )

    async def _sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def runner(self) -> IngestRunner:
        audit = AuditLogger(self.store, function_name="ingest_runner", settings=self.settings)
        return IngestRunner(
            self.store,
            self.keyring,
            self.oauth,
            SourceExtractor(self.drive, self.provider, self.settings),
            self.provider,
            audit,
            self.settings,
            sleep=self._sleep,
            clock=lambda: NOW,
        )


def test_retry_backoff_is_capped_exponential() -> None:
    assert retry_backoff_ms(1) == 250
    assert retry_backoff_ms(2) == 500
    assert retry_backoff_ms(3) == 1000
    assert retry_backoff_ms(10) == 5000


@pytest.mark.asyncio
async def test_successful_job_replaces_chunks_and_marks_ready() -> None:
    harness = Harness()
    job = harness.store.add_job("p-1", "s-1")
    harness.store.chunks.append(
        StoredChunk(id=999, project_id="p-1", source_id="s-1", chunk_index=0, content="stale", metadata={}, embedding=[])
    )

    result = await harness.runner().run_batch()

    assert result == {"processed_jobs": 1, "pdf_fallbacks_used": 0}
    assert harness.oauth.refreshed_with == ["stored-refresh-token"]
    chunks = harness.store.source_chunks("s-1")
    assert [chunk.content for chunk in chunks] == [DOC_TEXT]
    assert chunks[0].metadata == {
        "title": "Handbook",
        "file_id": "file-1",
        "source_type": "gdoc",
        "citation_anchor": "document",
        "extraction_strategy": "drive_export_text",
    }
    assert harness.store.sources["s-1"].status == "ready"
    assert harness.store.jobs[job.id].status == JOB_DONE
    completed = harness.store.events(EVENT_INGESTION_COMPLETED)
    assert completed[0].metadata["chunk_count"] == 1


@pytest.mark.asyncio
async def test_empty_queue_processes_nothing() -> None:
    harness = Harness()
    assert await harness.runner().run_batch() == {"processed_jobs": 0, "pdf_fallbacks_used": 0}


@pytest.mark.asyncio
async def test_failure_below_max_attempts_requeues_after_backoff() -> None:
    harness = Harness()
    harness.drive.errors["file-1"] = ProviderRequestError("Drive export failed (500).")
    job = harness.store.add_job("p-1", "s-1", attempts=1)

    await harness.runner().run_batch()

    row = harness.store.jobs[job.id]
    assert row.status == JOB_QUEUED
    assert row.attempts == 2
    assert row.last_error == "Drive export failed (500)."
    assert harness.sleeps == [0.5]
    assert harness.store.sources["s-1"].status == "failed"
    failed = harness.store.events(EVENT_INGESTION_FAILED)[0]
    assert failed.metadata["status"] == JOB_QUEUED
    assert failed.metadata["attempts"] == 2
    assert failed.metadata["max_attempts"] == 5


@pytest.mark.asyncio
async def test_failure_at_max_attempts_fails_job_without_sleeping() -> None:
    harness = Harness()
    harness.drive.errors["file-1"] = ProviderRequestError("Drive export failed (500).")
    job = harness.store.add_job("p-1", "s-1", attempts=4)

    await harness.runner().run_batch()

    row = harness.store.jobs[job.id]
    assert row.status == JOB_FAILED
    assert row.attempts == 5
    assert row.completed_at == NOW
    assert harness.sleeps == []
    assert harness.store.events(EVENT_INGESTION_FAILED)[0].metadata["status"] == JOB_FAILED


@pytest.mark.asyncio
async def test_exhausted_jobs_are_not_claimed() -> None:
    harness = Harness()
    harness.store.add_job("p-1", "s-1", attempts=5)
    assert (await harness.runner().run_batch())["processed_jobs"] == 0


@pytest.mark.asyncio
async def test_crashed_final_attempt_is_failed_once_its_lease_lapses() -> None:
    harness = Harness()
    stuck = harness.store.add_job(
        "p-1", "s-1", status=JOB_RUNNING, attempts=5, lease_expires_at=NOW - timedelta(hours=1)
    )
    live = harness.store.add_job(
        "p-1", "s-1", status=JOB_RUNNING, attempts=5, lease_expires_at=NOW + timedelta(minutes=1)
    )

    result = await harness.runner().run_batch()

    assert result["processed_jobs"] == 0
    row = harness.store.jobs[stuck.id]
    assert row.status == JOB_FAILED
    assert row.completed_at == NOW
    assert row.lease_expires_at is None
    assert harness.store.jobs[live.id].status == JOB_RUNNING
    assert harness.store.sources["s-1"].status == "failed"
    failed = harness.store.events(EVENT_INGESTION_FAILED)
    assert [event.metadata["job_id"] for event in failed] == [stuck.id]
    assert failed[0].metadata["status"] == JOB_FAILED


@pytest.mark.asyncio
async def test_missing_connection_fails_the_attempt() -> None:
    harness = Harness(with_connection=False)
    job = harness.store.add_job("p-1", "s-1")
    await harness.runner().run_batch()
    assert harness.store.jobs[job.id].last_error == "Google Drive connection not found for project owner."


@pytest.mark.asyncio
async def test_project_chunk_cap_reached_fails_the_attempt() -> None:
    harness = Harness(project=ProjectRecord(id="p-1", handle="acme", owner_account_id="owner-1", max_total_chunks=1))
    harness.store.chunks.append(
        StoredChunk(id=1, project_id="p-1", source_id="other", chunk_index=0, content="x", metadata={}, embedding=[])
    )
    job = harness.store.add_job("p-1", "s-1")
    await harness.runner().run_batch()
    assert harness.store.jobs[job.id].last_error == "Project reached max_total_chunks cap."


@pytest.mark.asyncio
async def test_partial_chunk_budget_records_guardrail() -> None:
    harness = Harness(
        project=ProjectRecord(id="p-1", handle="acme", owner_account_id="owner-1", max_total_chunks=3),
        ingest_chunk_size_chars=60,
        ingest_chunk_overlap_chars=0,
    )
    harness.drive.texts["file-1"] = "\n\n".join(f"Paragraph number {i} " + "x" * 40 for i in range(5))
    harness.store.chunks.append(
        StoredChunk(id=1, project_id="p-1", source_id="other", chunk_index=0, content="x", metadata={}, embedding=[])
    )
    job = harness.store.add_job("p-1", "s-1")

    await harness.runner().run_batch()

    assert harness.store.jobs[job.id].status == JOB_DONE
    assert len(harness.store.source_chunks("s-1")) == 2
    guardrail = harness.store.events(EVENT_GUARDRAIL_ENFORCED)[0]
    assert guardrail.metadata["guardrail"] == "max_total_chunks"
    assert guardrail.metadata["effective_max_chunks_for_source"] == 2


@pytest.mark.asyncio
async def test_run_one_shares_fallback_budget() -> None:
    harness = Harness()
    harness.store.add_job("p-1", "s-1")
    budget = FallbackBudget(limit=0)
    assert await harness.runner().run_one(budget) is True
    assert budget.used == 0
