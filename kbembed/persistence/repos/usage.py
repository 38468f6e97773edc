from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from kbembed.domain.models import ProjectUsageCounter
from kbembed.domain.records import UsageDecision, UsageLimits
from kbembed.services.quota import (
    PERIOD_DAY,
    PERIOD_MONTH,
    UsageCounts,
    day_start,
    evaluate_usage,
    month_start,
)


async def _lock_counter(
    session: AsyncSession,
    project_id: str,
    period_type: str,
    period_start: datetime,
) -> ProjectUsageCounter:
    # Create the row if missing, then lock it so concurrent increments serialize.
    await session.execute(
        insert(ProjectUsageCounter)
        .values(
            project_id=project_id,
            period_type=period_type,
            period_start=period_start,
            requests_count=0,
            tokens_in=0,
            tokens_out=0,
        )
        .on_conflict_do_nothing()
    )
    result = await session.execute(
        select(ProjectUsageCounter)
        .where(
            ProjectUsageCounter.project_id == project_id,
            ProjectUsageCounter.period_type == period_type,
            ProjectUsageCounter.period_start == period_start,
        )
        .with_for_update()
    )
    return result.scalar_one()


def _counts(counter: ProjectUsageCounter) -> UsageCounts:
    return UsageCounts(
        requests=int(counter.requests_count or 0),
        tokens_in=int(counter.tokens_in or 0),
        tokens_out=int(counter.tokens_out or 0),
    )


def _apply(counter: ProjectUsageCounter, counts: UsageCounts) -> None:
    counter.requests_count = counts.requests
    counter.tokens_in = counts.tokens_in
    counter.tokens_out = counts.tokens_out


async def reserve_usage(
    session: AsyncSession,
    project_id: str,
    limits: UsageLimits,
    *,
    requests: int,
    tokens_in: int,
    tokens_out: int,
    now: datetime,
) -> UsageDecision:
    # Caller owns the transaction so both counters commit or roll back together.
    day_counter = await _lock_counter(session, project_id, PERIOD_DAY, day_start(now))
    month_counter = await _lock_counter(session, project_id, PERIOD_MONTH, month_start(now))
    decision, day_after, month_after = evaluate_usage(
        limits=limits,
        day=_counts(day_counter),
        month=_counts(month_counter),
        requests=requests,
        tokens_in=tokens_in,
        tokens_out=tokens_out,
        now=now,
    )
    if decision.allowed:
        _apply(day_counter, day_after)
        _apply(month_counter, month_after)
    return decision
