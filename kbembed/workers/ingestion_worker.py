from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from kbembed.core.config import get_settings
from kbembed.core.logging import configure_logging
from kbembed.persistence.db import SessionLocal
from kbembed.persistence.sql_store import SqlKnowledgeStore
from kbembed.services.ingest.factory import build_ingest_runner


logger = logging.getLogger(__name__)


async def run_ingestion(ctx) -> dict[str, int]:
    # Each tick drains up to the configured number of claimable jobs.
    runner = ctx["ingest_runner"]
    result = await runner.run_batch()
    logger.info(
        "ingest_cron_tick processed_jobs=%s pdf_fallbacks_used=%s",
        result["processed_jobs"],
        result["pdf_fallbacks_used"],
    )
    return result


async def _startup(ctx) -> None:
    configure_logging()
    ctx["ingest_runner"] = build_ingest_runner(SqlKnowledgeStore(SessionLocal), function_name="ingest_cron")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    functions = [run_ingestion]
    # Fires at second 0 of every minute; overlapping ticks are de-duplicated by arq.
    cron_jobs = [cron(run_ingestion, unique=True)] if settings.ingest_cron_enabled else []
    on_startup = _startup
