"""Create artifact, embedding and storage-attempt tables

Revision ID: a3c1e7f04b21
Revises:
Create Date: 2026-10-19

Adds:
- artifacts, unique on (ticket_ref, agent_role, title)
- embedding_jobs, with a partial unique index on (artifact_id, chunk_hash)
  while the job is queued or processing
- artifact_chunks, unique on (artifact_id, chunk_hash)
- artifact_storage_attempts
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "a3c1e7f04b21"
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_JOB_PREDICATE = sa.text("status IN ('queued', 'processing')")


def upgrade() -> None:
    op.create_table(
        "artifacts",
        sa.Column("artifact_id", sa.String(length=36), primary_key=True),
        sa.Column("ticket_ref", sa.String(length=128), nullable=False),
        sa.Column("repo_ref", sa.String(length=256), nullable=False, server_default=""),
        sa.Column(
            "agent_role",
            sa.Enum("implementation", "qa", name="agent_role", create_constraint=True),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=512), nullable=False),
        sa.Column("body", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("ticket_ref", "agent_role", "title", name="uq_artifacts_ticket_role_title"),
    )
    op.create_index("ix_artifacts_ticket_ref", "artifacts", ["ticket_ref"])
    op.create_index("ix_artifacts_repo_ref", "artifacts", ["repo_ref"])
    op.create_index("ix_artifacts_created_at", "artifacts", ["created_at"])
    op.create_index("ix_artifacts_ticket_role", "artifacts", ["ticket_ref", "agent_role"])
    op.create_index("ix_artifacts_repo_created", "artifacts", ["repo_ref", "created_at"])

    op.create_table(
        "embedding_jobs",
        sa.Column("job_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "artifact_id",
            sa.String(length=36),
            sa.ForeignKey("artifacts.artifact_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("chunk_hash", sa.String(length=64), nullable=False),
        sa.Column("chunk_text", sa.Text(), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("atom_type", sa.String(length=16), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "queued", "processing", "succeeded", "failed",
                name="embedding_job_status",
                create_constraint=True,
            ),
            nullable=False,
            server_default="queued",
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_embedding_jobs_artifact_id", "embedding_jobs", ["artifact_id"])
    op.create_index("ix_embedding_jobs_status", "embedding_jobs", ["status"])
    op.create_index("ix_embedding_jobs_status_created", "embedding_jobs", ["status", "created_at"])
    op.create_index(
        "uq_embedding_jobs_active_chunk",
        "embedding_jobs",
        ["artifact_id", "chunk_hash"],
        unique=True,
        sqlite_where=ACTIVE_JOB_PREDICATE,
        postgresql_where=ACTIVE_JOB_PREDICATE,
    )

    op.create_table(
        "artifact_chunks",
        sa.Column("chunk_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "artifact_id",
            sa.String(length=36),
            sa.ForeignKey("artifacts.artifact_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("chunk_hash", sa.String(length=64), nullable=False),
        sa.Column("chunk_text", sa.Text(), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("atom_type", sa.String(length=16), nullable=True),
        sa.Column("embedding", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("artifact_id", "chunk_hash", name="uq_artifact_chunks_artifact_hash"),
    )
    op.create_index("ix_artifact_chunks_artifact_id", "artifact_chunks", ["artifact_id"])

    op.create_table(
        "artifact_storage_attempts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("ticket_ref", sa.String(length=128), nullable=False),
        sa.Column("repo_ref", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("artifact_type", sa.String(length=64), nullable=False),
        sa.Column("agent_role", sa.String(length=32), nullable=False),
        sa.Column("endpoint", sa.String(length=128), nullable=False, server_default="store"),
        sa.Column(
            "outcome",
            sa.Enum(
                "stored", "rejected by validation", "request failed",
                name="storage_outcome",
                create_constraint=True,
            ),
            nullable=False,
        ),
        sa.Column("artifact_id", sa.String(length=36), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("validation_reason", sa.Text(), nullable=True),
    )
    op.create_index("ix_artifact_storage_attempts_ts", "artifact_storage_attempts", ["ts"])
    op.create_index("ix_artifact_storage_attempts_ticket_ref", "artifact_storage_attempts", ["ticket_ref"])
    op.create_index("ix_artifact_storage_attempts_outcome", "artifact_storage_attempts", ["outcome"])
    op.create_index("ix_storage_attempts_ticket_ts", "artifact_storage_attempts", ["ticket_ref", "ts"])


def downgrade() -> None:
    op.drop_table("artifact_storage_attempts")
    op.drop_table("artifact_chunks")
    op.drop_table("embedding_jobs")
    op.drop_table("artifacts")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute("DROP TYPE IF EXISTS storage_outcome")
        op.execute("DROP TYPE IF EXISTS embedding_job_status")
        op.execute("DROP TYPE IF EXISTS agent_role")
