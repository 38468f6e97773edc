from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence
from uuid import uuid4

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kbembed.domain.models import IngestJob, ProjectSource
from kbembed.domain.records import JOB_DONE, JOB_FAILED, JOB_QUEUED, JOB_RUNNING, IngestJobClaim


async def claim_ingest_job(
    session: AsyncSession,
    *,
    lease_seconds: int,
    max_attempts: int,
    now: datetime,
) -> IngestJobClaim | None:
    # SKIP LOCKED lets concurrent runners claim different jobs without blocking.
    candidate = (
        select(IngestJob.id)
        .where(
            IngestJob.attempts < max_attempts,
            or_(
                IngestJob.status == JOB_QUEUED,
                and_(IngestJob.status == JOB_RUNNING, IngestJob.lease_expires_at < now),
            ),
        )
        .order_by(IngestJob.created_at, IngestJob.id)
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    stmt = (
        update(IngestJob)
        .where(IngestJob.id == candidate)
        .values(
            status=JOB_RUNNING,
            attempts=IngestJob.attempts + 1,
            started_at=now,
            lease_expires_at=now + timedelta(seconds=lease_seconds),
        )
        .returning(IngestJob.id, IngestJob.project_id, IngestJob.source_id, IngestJob.attempts)
    )
    result = await session.execute(stmt)
    row = result.first()
    if row is None:
        return None
    return IngestJobClaim(id=row.id, project_id=row.project_id, source_id=row.source_id, attempts=row.attempts)


async def fail_abandoned_jobs(
    session: AsyncSession,
    *,
    max_attempts: int,
    now: datetime,
    error: str,
) -> list[IngestJobClaim]:
    # A lapsed lease on the final attempt can never be claimed again; close it out with its source.
    result = await session.execute(
        update(IngestJob)
        .where(
            IngestJob.status == JOB_RUNNING,
            IngestJob.lease_expires_at < now,
            IngestJob.attempts >= max_attempts,
        )
        .values(status=JOB_FAILED, last_error=error, completed_at=now, lease_expires_at=None)
        .returning(IngestJob.id, IngestJob.project_id, IngestJob.source_id, IngestJob.attempts)
    )
    reaped = [
        IngestJobClaim(id=row.id, project_id=row.project_id, source_id=row.source_id, attempts=row.attempts)
        for row in result.all()
    ]
    if reaped:
        await session.execute(
            update(ProjectSource)
            .where(ProjectSource.id.in_([job.source_id for job in reaped]))
            .values(status="failed", last_error=error)
        )
    return reaped


async def complete_job(session: AsyncSession, job_id: str, completed_at: datetime) -> None:
    await session.execute(
        update(IngestJob)
        .where(IngestJob.id == job_id)
        .values(status=JOB_DONE, completed_at=completed_at, last_error=None, lease_expires_at=None)
    )


async def requeue_job(session: AsyncSession, job_id: str, error: str) -> None:
    await session.execute(
        update(IngestJob)
        .where(IngestJob.id == job_id)
        .values(status=JOB_QUEUED, last_error=error, started_at=None, lease_expires_at=None)
    )


async def fail_job(session: AsyncSession, job_id: str, error: str, completed_at: datetime) -> None:
    await session.execute(
        update(IngestJob)
        .where(IngestJob.id == job_id)
        .values(status=JOB_FAILED, last_error=error, completed_at=completed_at, lease_expires_at=None)
    )


async def count_jobs(session: AsyncSession, project_id: str, status: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(IngestJob)
        .where(IngestJob.project_id == project_id, IngestJob.status == status)
    )
    return int(result.scalar() or 0)


async def active_job_source_ids(
    session: AsyncSession, project_id: str, source_ids: Sequence[str]
) -> set[str]:
    if not source_ids:
        return set()
    result = await session.execute(
        select(IngestJob.source_id).where(
            IngestJob.project_id == project_id,
            IngestJob.source_id.in_(list(source_ids)),
            IngestJob.status.in_([JOB_QUEUED, JOB_RUNNING]),
        )
    )
    return set(result.scalars().all())


async def enqueue_jobs(session: AsyncSession, project_id: str, source_ids: Sequence[str]) -> list[str]:
    if not source_ids:
        return []
    result = await session.execute(
        insert(IngestJob)
        .values(
            [
                {
                    "id": str(uuid4()),
                    "project_id": project_id,
                    "source_id": source_id,
                    "status": JOB_QUEUED,
                    "attempts": 0,
                }
                for source_id in source_ids
            ]
        )
        .returning(IngestJob.id)
    )
    return list(result.scalars().all())
