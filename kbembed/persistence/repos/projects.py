from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kbembed.domain.models import Project
from kbembed.domain.records import ProjectRecord


def to_record(project: Project) -> ProjectRecord:
    return ProjectRecord(
        id=project.id,
        handle=project.handle,
        owner_account_id=project.owner_account_id,
        allowed_origins=tuple(project.allowed_origins or ()),
        rate_limit_rpm=project.rate_limit_rpm,
        rate_limit_burst=project.rate_limit_burst,
        quota_daily_requests=project.quota_daily_requests,
        quota_monthly_requests=project.quota_monthly_requests,
        quota_daily_tokens=project.quota_daily_tokens,
        quota_monthly_tokens=project.quota_monthly_tokens,
        input_validation_policy=project.input_validation_policy,
        output_validation_policy=project.output_validation_policy,
        max_total_chunks=project.max_total_chunks,
        max_ocr_pages_per_sync=project.max_ocr_pages_per_sync,
    )


async def get_project(session: AsyncSession, project_id: str) -> ProjectRecord | None:
    project = await session.get(Project, project_id)
    return to_record(project) if project else None


async def get_project_by_handle(session: AsyncSession, handle: str) -> ProjectRecord | None:
    result = await session.execute(select(Project).where(Project.handle == handle))
    project = result.scalar_one_or_none()
    return to_record(project) if project else None


async def get_owned_project(
    session: AsyncSession, account_id: str, project_id: str
) -> ProjectRecord | None:
    # Return None for owner mismatch to keep 404 semantics.
    result = await session.execute(
        select(Project).where(Project.id == project_id, Project.owner_account_id == account_id)
    )
    project = result.scalar_one_or_none()
    return to_record(project) if project else None
