"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from pgvector.sqlalchemy import Vector

from kbembed.core.config import EMBED_DIM

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Ensure pgvector is enabled for every environment, not just manual setup.
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        "projects",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("handle", sa.String(), nullable=False, unique=True),
        sa.Column("owner_account_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False, server_default=""),
        sa.Column("allowed_origins", postgresql.ARRAY(sa.String()), nullable=False, server_default="{}"),
        sa.Column("rate_limit_rpm", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("rate_limit_burst", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("quota_daily_requests", sa.Integer(), nullable=False, server_default="1000"),
        sa.Column("quota_monthly_requests", sa.Integer(), nullable=False, server_default="20000"),
        sa.Column("quota_daily_tokens", sa.Integer(), nullable=True),
        sa.Column("quota_monthly_tokens", sa.Integer(), nullable=True),
        sa.Column("input_validation_policy", sa.Text(), nullable=True),
        sa.Column("output_validation_policy", sa.Text(), nullable=True),
        sa.Column("max_total_chunks", sa.Integer(), nullable=False, server_default="5000"),
        sa.Column("max_ocr_pages_per_sync", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("handle = lower(handle)", name="ck_projects_handle_lower"),
    )
    op.create_index("ix_projects_owner_account_id", "projects", ["owner_account_id"])

    op.create_table(
        "project_sources",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "project_id",
            sa.String(),
            sa.ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("source_type", sa.String(), nullable=False),
        sa.Column("drive_file_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_ingested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "source_type IN ('gdoc', 'gslides', 'gpdf')", name="ck_project_sources_source_type"
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'ready', 'failed')",
            name="ck_project_sources_status",
        ),
    )
    op.create_index("ix_project_sources_project_id", "project_sources", ["project_id"])
    op.create_index(
        "ix_project_sources_project_status", "project_sources", ["project_id", "status"]
    )

    op.create_table(
        "ingest_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "project_id",
            sa.String(),
            sa.ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "source_id",
            sa.String(),
            sa.ForeignKey("project_sources.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('queued', 'running', 'done', 'failed')", name="ck_ingest_jobs_status"
        ),
    )
    op.create_index("ix_ingest_jobs_status_created_at", "ingest_jobs", ["status", "created_at"])
    op.create_index("ix_ingest_jobs_project_status", "ingest_jobs", ["project_id", "status"])

    op.create_table(
        "google_connections",
        sa.Column("account_id", sa.String(), primary_key=True),
        sa.Column("google_subject", sa.String(), nullable=False),
        sa.Column("refresh_token_ciphertext", sa.Text(), nullable=False),
        sa.Column("refresh_token_nonce", sa.Text(), nullable=False),
        sa.Column("key_version", sa.Integer(), nullable=False),
        sa.Column("scopes", postgresql.ARRAY(sa.String()), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "source_chunks",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "project_id",
            sa.String(),
            sa.ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "source_id",
            sa.String(),
            sa.ForeignKey("project_sources.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("embedding", Vector(EMBED_DIM), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("source_id", "chunk_index", name="uq_source_chunks_source_index"),
    )
    op.create_index("ix_source_chunks_project_id", "source_chunks", ["project_id"])
    # HNSW keeps cosine top-k queries sublinear as projects grow.
    op.execute(
        "CREATE INDEX ix_source_chunks_embedding_hnsw ON source_chunks "
        "USING hnsw (embedding vector_cosine_ops)"
    )

    op.create_table(
        "project_usage_counters",
        sa.Column("project_id", sa.String(), primary_key=True),
        sa.Column("period_type", sa.String(), primary_key=True),
        sa.Column("period_start", sa.DateTime(timezone=True), primary_key=True),
        sa.Column("requests_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tokens_in", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("tokens_out", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "audit_log_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("origin", sa.String(), nullable=True),
        sa.Column("ip_hash", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_audit_log_events_project_created_at",
        "audit_log_events",
        ["project_id", sa.text("created_at DESC")],
    )
    op.create_index(
        "ix_audit_log_events_event_type_created_at",
        "audit_log_events",
        ["event_type", sa.text("created_at DESC")],
    )


def downgrade() -> None:
    op.drop_index("ix_audit_log_events_event_type_created_at", table_name="audit_log_events")
    op.drop_index("ix_audit_log_events_project_created_at", table_name="audit_log_events")
    op.drop_table("audit_log_events")
    op.drop_table("project_usage_counters")
    op.execute("DROP INDEX IF EXISTS ix_source_chunks_embedding_hnsw")
    op.drop_index("ix_source_chunks_project_id", table_name="source_chunks")
    op.drop_table("source_chunks")
    op.drop_table("google_connections")
    op.drop_index("ix_ingest_jobs_project_status", table_name="ingest_jobs")
    op.drop_index("ix_ingest_jobs_status_created_at", table_name="ingest_jobs")
    op.drop_table("ingest_jobs")
    op.drop_index("ix_project_sources_project_status", table_name="project_sources")
    op.drop_index("ix_project_sources_project_id", table_name="project_sources")
    op.drop_table("project_sources")
    op.drop_index("ix_projects_owner_account_id", table_name="projects")
    op.drop_table("projects")
