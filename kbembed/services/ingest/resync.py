from __future__ import annotations

import logging

from kbembed.core.config import Settings
from kbembed.core.errors import ServiceError, project_not_found
from kbembed.domain.records import JOB_QUEUED, JOB_RUNNING
from kbembed.persistence.store import KnowledgeStore
from kbembed.services.audit import EVENT_INGESTION_STARTED, AuditLogger
from kbembed.services.ingest.runner import fail_abandoned_jobs
from kbembed.services.quota import utc_now


logger = logging.getLogger(__name__)


def _resync_in_progress(message: str, details: dict[str, int]) -> ServiceError:
    return ServiceError(
        status_code=409,
        code="resync_in_progress",
        message=message,
        retryable=True,
        details=details,
    )


class ResyncTrigger:
    """Enqueues ingest jobs for an owner's project sources.

    Sources that already have a queued or running job are skipped, so
    repeated triggers do not pile up duplicate work.
    """

    def __init__(self, store: KnowledgeStore, audit: AuditLogger, settings: Settings) -> None:
        self._store = store
        self._audit = audit
        self._settings = settings

    async def trigger(self, *, account_id: str, project_id: str, source_id: str | None = None) -> dict[str, object]:
        project = await self._store.get_owned_project(account_id, project_id)
        if project is None:
            raise project_not_found()
        sources = await self._store.list_owned_sources(account_id, project.id, source_id)
        if not sources:
            raise ServiceError(
                status_code=404,
                code="source_not_found",
                message="No matching source found for project.",
            )

        # Close out crashed final attempts so they stop counting as in flight.
        await fail_abandoned_jobs(
            self._store,
            self._audit,
            max_attempts=self._settings.ingest_max_attempts,
            now=utc_now(),
        )
        max_running = self._settings.resync_max_running_jobs
        running = await self._store.count_jobs(project.id, JOB_RUNNING)
        if running >= max_running:
            raise _resync_in_progress(
                "Project has reached max concurrent ingestion jobs.",
                {"running_jobs": running, "max_running_jobs": max_running},
            )
        max_queued = self._settings.resync_max_queued_jobs
        queued = await self._store.count_jobs(project.id, JOB_QUEUED)
        if queued >= max_queued:
            raise _resync_in_progress(
                "Project has too many queued ingestion jobs.",
                {"queued_jobs": queued, "max_queued_jobs": max_queued},
            )

        source_ids = [source.id for source in sources]
        in_flight = await self._store.active_job_source_ids(project.id, source_ids)
        to_enqueue = [sid for sid in source_ids if sid not in in_flight]
        job_ids: list[str] = []
        if to_enqueue:
            job_ids = await self._store.enqueue_jobs(project.id, to_enqueue)
            await self._store.reset_sources_pending(to_enqueue)

        skipped = len(source_ids) - len(job_ids)
        await self._audit.record(
            EVENT_INGESTION_STARTED,
            project_id=project.id,
            metadata={
                "owner_user_id": account_id,
                "requested_source_id": source_id,
                "selected_source_count": len(source_ids),
                "enqueued_count": len(job_ids),
                "skipped_existing_count": skipped,
            },
        )
        logger.info(
            "resync_triggered project_id=%s enqueued=%s skipped=%s",
            project.id,
            len(job_ids),
            skipped,
        )
        return {
            "project_id": project.id,
            "job_ids": job_ids,
            "enqueued_count": len(job_ids),
            "skipped_existing_count": skipped,
            "selected_source_count": len(source_ids),
        }
