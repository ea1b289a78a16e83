"""
Storage Attempt Log Models.

Every call into the artifact store records one row here, whether the artifact
was stored, rejected by the validator, or the request failed. This is the
forensic trail for "why did my artifact not show up on the ticket".
"""

from typing import Any, Dict

from sqlalchemy import Column, DateTime, Enum, Index, String, Text
from sqlalchemy.sql import func

from ..primitives import generate_ulid, isoformat
from .base import Base

storage_outcome_enum = Enum(
    "stored",
    "rejected by validation",
    "request failed",
    name="storage_outcome",
)


class StorageAttemptModel(Base):
    """One artifact storage attempt and how it ended."""

    __tablename__ = "artifact_storage_attempts"

    id = Column(String(36), primary_key=True, default=generate_ulid)

    ts = Column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        index=True,
    )

    # What was being stored
    ticket_ref = Column(String(128), nullable=False, index=True)
    repo_ref = Column(String(256), nullable=False, default="")
    artifact_type = Column(String(64), nullable=False)
    agent_role = Column(String(32), nullable=False)

    # Which surface the attempt came through (e.g. "POST /artifacts", "cli")
    endpoint = Column(String(128), nullable=False, default="store")

    outcome = Column(storage_outcome_enum, nullable=False, index=True)
    artifact_id = Column(String(36), nullable=True)
    error_message = Column(Text, nullable=True)
    validation_reason = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_storage_attempts_ticket_ts", "ticket_ref", "ts"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "ts": isoformat(self.ts),
            "ticket_ref": self.ticket_ref,
            "repo_ref": self.repo_ref,
            "artifact_type": self.artifact_type,
            "agent_role": self.agent_role,
            "endpoint": self.endpoint,
            "outcome": self.outcome,
            "artifact_id": self.artifact_id,
            "error_message": self.error_message,
            "validation_reason": self.validation_reason,
        }
