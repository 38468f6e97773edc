from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from kbembed.domain.models import AuditLogEvent
from kbembed.domain.records import AuditRecord


async def insert_event(session: AsyncSession, record: AuditRecord) -> None:
    session.add(
        AuditLogEvent(
            project_id=record.project_id,
            event_type=record.event_type,
            origin=record.origin,
            ip_hash=record.ip_hash,
            user_agent=record.user_agent,
            request_id=record.request_id,
            metadata_json=record.metadata,
            created_at=record.created_at or datetime.now(timezone.utc),
        )
    )
