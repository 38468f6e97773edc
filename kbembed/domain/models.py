from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from pgvector.sqlalchemy import Vector

from kbembed.core.config import EMBED_DIM


def _uuid_str() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid_str)
    # Public, URL-safe handle the widget embeds; stored lower-cased.
    handle: Mapped[str] = mapped_column(String, unique=True)
    owner_account_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String, default="")
    allowed_origins: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)
    rate_limit_rpm: Mapped[int] = mapped_column(Integer, default=60)
    rate_limit_burst: Mapped[int] = mapped_column(Integer, default=10)
    quota_daily_requests: Mapped[int] = mapped_column(Integer, default=1000)
    quota_monthly_requests: Mapped[int] = mapped_column(Integer, default=20000)
    # Null token ceilings mean unlimited.
    quota_daily_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    quota_monthly_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    input_validation_policy: Mapped[str | None] = mapped_column(Text, nullable=True)
    output_validation_policy: Mapped[str | None] = mapped_column(Text, nullable=True)
    max_total_chunks: Mapped[int] = mapped_column(Integer, default=5000)
    max_ocr_pages_per_sync: Mapped[int] = mapped_column(Integer, default=50)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ProjectSource(Base):
    __tablename__ = "project_sources"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid_str)
    project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    # gdoc, gslides or gpdf.
    source_type: Mapped[str] = mapped_column(String)
    drive_file_id: Mapped[str] = mapped_column(String)
    title: Mapped[str | None] = mapped_column(String, nullable=True)
    # pending -> processing -> ready | failed, reset to pending by resync.
    status: Mapped[str] = mapped_column(String, default="pending")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_ingested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class IngestJob(Base):
    __tablename__ = "ingest_jobs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid_str)
    project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.id", ondelete="CASCADE"))
    source_id: Mapped[str] = mapped_column(String, ForeignKey("project_sources.id", ondelete="CASCADE"))
    # queued -> running -> done | failed, running -> queued on retry.
    status: Mapped[str] = mapped_column(String, default="queued")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class GoogleConnection(Base):
    __tablename__ = "google_connections"

    # One connection per owning account, shared by all of its projects.
    account_id: Mapped[str] = mapped_column(String, primary_key=True)
    google_subject: Mapped[str] = mapped_column(String)
    # Ciphertext and nonce are stored in the "\x<hex>" bytea literal form.
    refresh_token_ciphertext: Mapped[str] = mapped_column(Text)
    refresh_token_nonce: Mapped[str] = mapped_column(Text)
    key_version: Mapped[int] = mapped_column(Integer)
    scopes: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SourceChunk(Base):
    __tablename__ = "source_chunks"
    __table_args__ = (
        UniqueConstraint("source_id", "chunk_index", name="uq_source_chunks_source_index"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.id", ondelete="CASCADE"))
    source_id: Mapped[str] = mapped_column(String, ForeignKey("project_sources.id", ondelete="CASCADE"))
    chunk_index: Mapped[int] = mapped_column(Integer)
    content: Mapped[str] = mapped_column(Text)
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JSONB, default=dict)
    # Keep vector dimension aligned with the embedding model.
    embedding: Mapped[list[float]] = mapped_column(Vector(EMBED_DIM))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ProjectUsageCounter(Base):
    __tablename__ = "project_usage_counters"

    # Track per-project usage within UTC day/month boundaries.
    project_id: Mapped[str] = mapped_column(String, primary_key=True)
    period_type: Mapped[str] = mapped_column(String, primary_key=True)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    requests_count: Mapped[int] = mapped_column(Integer, default=0)
    tokens_in: Mapped[int] = mapped_column(BigInteger, default=0)
    tokens_out: Mapped[int] = mapped_column(BigInteger, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AuditLogEvent(Base):
    __tablename__ = "audit_log_events"

    # Append-only; high-volume event types are sampled before insert.
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    project_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String)
    origin: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


Index("ix_project_sources_project_status", ProjectSource.project_id, ProjectSource.status)
Index("ix_ingest_jobs_status_created_at", IngestJob.status, IngestJob.created_at)
Index("ix_ingest_jobs_project_status", IngestJob.project_id, IngestJob.status)
Index("ix_source_chunks_project_id", SourceChunk.project_id)
Index(
    "ix_audit_log_events_project_created_at",
    AuditLogEvent.project_id,
    AuditLogEvent.created_at.desc(),
)
Index(
    "ix_audit_log_events_event_type_created_at",
    AuditLogEvent.event_type,
    AuditLogEvent.created_at.desc(),
)
