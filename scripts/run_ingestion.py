from __future__ import annotations

import asyncio

from kbembed.core.logging import configure_logging
from kbembed.persistence.db import SessionLocal
from kbembed.persistence.sql_store import SqlKnowledgeStore
from kbembed.services.ingest.factory import build_ingest_runner


async def _main() -> None:
    configure_logging()
    runner = build_ingest_runner(SqlKnowledgeStore(SessionLocal), function_name="ingest_script")
    result = await runner.run_batch()
    print(f"processed_jobs={result['processed_jobs']} pdf_fallbacks_used={result['pdf_fallbacks_used']}")


if __name__ == "__main__":
    asyncio.run(_main())
