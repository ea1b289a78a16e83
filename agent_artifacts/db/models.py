"""
SQLAlchemy models for Agent Artifacts.

Three shared tables carry all state:
- artifacts: one row per live (ticket, role, canonical type) slot
- embedding_jobs: one row per atom awaiting vectorization
- artifact_chunks: one embedded, content-addressed atom

Uniqueness constraints and conditional updates are the only concurrency
control. Writers insert optimistically and treat an IntegrityError as
"someone else got there first"; artifact updates are guarded by ``revision``.
"""

from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.sql import func

from ..artifacts.titles import type_from_title
from ..enums import ArtifactType
from ..primitives import generate_ulid, isoformat
from .base import Base

agent_role_enum = Enum("implementation", "qa", name="agent_role")

job_status_enum = Enum(
    "queued",
    "processing",
    "succeeded",
    "failed",
    name="embedding_job_status",
)

# Partial-index predicate shared by SQLite and PostgreSQL.
_ACTIVE_JOB_PREDICATE = text("status IN ('queued', 'processing')")


class ArtifactModel(Base):
    """An artifact attached to a ticket by an agent."""

    __tablename__ = "artifacts"

    artifact_id = Column(String(36), primary_key=True, default=generate_ulid)
    ticket_ref = Column(String(128), nullable=False, index=True)
    repo_ref = Column(String(256), nullable=False, default="", index=True)
    agent_role = Column(agent_role_enum, nullable=False)
    title = Column(String(512), nullable=False)
    body = Column(Text, nullable=False, default="")
    # Bumped on every update; updates are conditional on the revision they read.
    revision = Column(Integer, nullable=False, default=1, server_default=text("1"))

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        # Writes always use the canonical title, so concurrent inserts for
        # the same canonical identity collide here.
        UniqueConstraint("ticket_ref", "agent_role", "title", name="uq_artifacts_ticket_role_title"),
        Index("ix_artifacts_ticket_role", "ticket_ref", "agent_role"),
        Index("ix_artifacts_repo_created", "repo_ref", "created_at"),
    )

    @property
    def canonical_type(self) -> Optional[ArtifactType]:
        """Recomputed from the title on every read; never stored."""
        return type_from_title(self.title)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        canonical = self.canonical_type
        return {
            "artifact_id": self.artifact_id,
            "ticket_ref": self.ticket_ref,
            "repo_ref": self.repo_ref,
            "agent_role": self.agent_role,
            "title": self.title,
            "canonical_type": canonical.value if canonical else None,
            "body": self.body,
            "revision": self.revision,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class EmbeddingJobModel(Base):
    """A queued request to embed one atom of an artifact."""

    __tablename__ = "embedding_jobs"

    job_id = Column(String(36), primary_key=True, default=generate_ulid)
    artifact_id = Column(
        String(36),
        ForeignKey("artifacts.artifact_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    chunk_hash = Column(String(64), nullable=False)
    chunk_text = Column(Text, nullable=False)
    chunk_index = Column(Integer, nullable=False, default=0)
    atom_type = Column(String(16), nullable=True)

    status = Column(job_status_enum, nullable=False, default="queued", index=True)
    error_message = Column(Text, nullable=True)
    worker_id = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_embedding_jobs_active_chunk",
            "artifact_id",
            "chunk_hash",
            unique=True,
            sqlite_where=_ACTIVE_JOB_PREDICATE,
            postgresql_where=_ACTIVE_JOB_PREDICATE,
        ),
        Index("ix_embedding_jobs_status_created", "status", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "job_id": self.job_id,
            "artifact_id": self.artifact_id,
            "chunk_hash": self.chunk_hash,
            "chunk_text": self.chunk_text,
            "chunk_index": self.chunk_index,
            "atom_type": self.atom_type,
            "status": self.status,
            "error_message": self.error_message,
            "worker_id": self.worker_id,
            "created_at": isoformat(self.created_at),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
        }


class ArtifactChunkModel(Base):
    """An embedded knowledge atom. Created once by the worker, never mutated."""

    __tablename__ = "artifact_chunks"

    chunk_id = Column(String(36), primary_key=True, default=generate_ulid)
    artifact_id = Column(
        String(36),
        ForeignKey("artifacts.artifact_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    chunk_hash = Column(String(64), nullable=False)
    chunk_text = Column(Text, nullable=False)
    chunk_index = Column(Integer, nullable=False, default=0)
    atom_type = Column(String(16), nullable=True)
    embedding = Column(JSON, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        UniqueConstraint("artifact_id", "chunk_hash", name="uq_artifact_chunks_artifact_hash"),
    )

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        """Convert model to dictionary."""
        data = {
            "chunk_id": self.chunk_id,
            "artifact_id": self.artifact_id,
            "chunk_hash": self.chunk_hash,
            "chunk_text": self.chunk_text,
            "chunk_index": self.chunk_index,
            "atom_type": self.atom_type,
            "dimensions": len(self.embedding or []),
            "created_at": isoformat(self.created_at),
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data
