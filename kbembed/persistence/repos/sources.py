from __future__ import annotations

from datetime import datetime
from typing import Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kbembed.domain.models import Project, ProjectSource
from kbembed.domain.records import SourceRecord


def to_record(source: ProjectSource) -> SourceRecord:
    return SourceRecord(
        id=source.id,
        project_id=source.project_id,
        source_type=source.source_type,
        drive_file_id=source.drive_file_id,
        title=source.title,
        status=source.status,
        last_error=source.last_error,
    )


async def get_source(session: AsyncSession, source_id: str) -> SourceRecord | None:
    source = await session.get(ProjectSource, source_id)
    return to_record(source) if source else None


async def list_owned_sources(
    session: AsyncSession,
    account_id: str,
    project_id: str,
    source_id: str | None = None,
) -> list[SourceRecord]:
    # Owner scoping happens in the join so foreign sources never surface.
    stmt = (
        select(ProjectSource)
        .join(Project, Project.id == ProjectSource.project_id)
        .where(ProjectSource.project_id == project_id, Project.owner_account_id == account_id)
    )
    if source_id:
        stmt = stmt.where(ProjectSource.id == source_id)
    result = await session.execute(stmt.order_by(ProjectSource.created_at, ProjectSource.id))
    return [to_record(source) for source in result.scalars().all()]


async def update_status(
    session: AsyncSession,
    source_id: str,
    *,
    status: str,
    last_error: str | None = None,
    last_ingested_at: datetime | None = None,
) -> None:
    values: dict[str, object] = {"status": status, "last_error": last_error}
    if last_ingested_at is not None:
        values["last_ingested_at"] = last_ingested_at
    await session.execute(
        update(ProjectSource).where(ProjectSource.id == source_id).values(**values)
    )


async def reset_pending(session: AsyncSession, source_ids: Sequence[str]) -> None:
    if not source_ids:
        return
    await session.execute(
        update(ProjectSource)
        .where(ProjectSource.id.in_(list(source_ids)))
        .values(status="pending", last_error=None)
    )
