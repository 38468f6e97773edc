from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker

from kbembed.core.config import Settings, get_settings


def build_engine(settings: Settings) -> AsyncEngine:
    options: dict[str, Any] = {"pool_pre_ping": True}
    # sqlite (local experiments) uses a static pool without sizing knobs.
    if not settings.database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_recycle=1800,
        )
    return create_async_engine(settings.database_url, **options)


engine = build_engine(get_settings())
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
