"""
Artifact repository.

The store talks to the backing table only through ``ArtifactRepository`` so
that race handling can be exercised without a real database race. Inserts
return a tagged ``InsertResult`` instead of raising: a uniqueness violation is
an expected outcome (another writer got there first), not an error.

Updates are conditional on the revision the caller read and report STALE
when another writer moved the row on, so appends are never lost.

Reads are retried on transient ``OperationalError`` with jittered backoff.
Writes are never retried.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar, Union

from sqlalchemy import desc, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from ..config import get_settings
from ..db.models import ArtifactChunkModel, ArtifactModel, EmbeddingJobModel
from ..enums import AgentRole, ArtifactType
from ..primitives import as_utc, generate_ulid, isoformat, utc_now
from .titles import type_from_title

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreError(Exception):
    """
    Backing-store failure surfaced to the caller.

    Attributes:
        code: Stable error code
        message: Human-readable message
        retryable: True for transient connectivity failures
    """

    def __init__(self, code: str, message: str, retryable: bool = False):
        self.code = code
        self.message = message
        self.retryable = retryable
        super().__init__(f"{code}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "error": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }


class InsertStatus(str, Enum):
    INSERTED = "inserted"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass(frozen=True)
class InsertResult:
    """Tagged outcome of ``insert_artifact``."""

    status: InsertStatus
    artifact_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


class UpdateStatus(str, Enum):
    UPDATED = "updated"
    STALE = "stale"
    MISSING = "missing"


@dataclass(frozen=True)
class UpdateResult:
    """Tagged outcome of ``update_artifact``."""

    status: UpdateStatus
    record: Optional["ArtifactRecord"] = None


@dataclass
class ArtifactRecord:
    """Detached view of an artifact row."""

    artifact_id: str
    ticket_ref: str
    repo_ref: str
    agent_role: str
    title: str
    body: str
    revision: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def canonical_type(self) -> Optional[ArtifactType]:
        return type_from_title(self.title)

    @classmethod
    def from_model(cls, model: ArtifactModel) -> "ArtifactRecord":
        return cls(
            artifact_id=model.artifact_id,
            ticket_ref=model.ticket_ref,
            repo_ref=model.repo_ref or "",
            agent_role=model.agent_role,
            title=model.title,
            body=model.body or "",
            revision=model.revision or 1,
            created_at=as_utc(model.created_at),
            updated_at=as_utc(model.updated_at),
        )

    def to_dict(self) -> Dict[str, Any]:
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


class ArtifactRepository(ABC):
    """Persistence operations the artifact store relies on."""

    @abstractmethod
    def find_by_canonical_identity(
        self,
        ticket_ref: str,
        agent_role: Union[str, AgentRole],
        artifact_type: ArtifactType,
    ) -> List[ArtifactRecord]:
        """All artifacts for (ticket, role) whose title resolves to the type, newest first."""

    @abstractmethod
    def insert_artifact(
        self,
        ticket_ref: str,
        repo_ref: str,
        agent_role: Union[str, AgentRole],
        title: str,
        body: str,
    ) -> InsertResult:
        """Insert a new artifact. Uniqueness violations return CONFLICT."""

    @abstractmethod
    def update_artifact(
        self,
        artifact_id: str,
        title: str,
        body: Optional[str] = None,
        expected_revision: Optional[int] = None,
    ) -> UpdateResult:
        """Set the title (and the body, when given) and bump the revision.

        With ``expected_revision`` the write only applies if the row is still at
        that revision; otherwise STALE is returned and nothing changes.
        """

    @abstractmethod
    def delete_by_ids(self, artifact_ids: Sequence[str]) -> int:
        """Delete artifacts (and their jobs and chunks). Returns rows removed."""

    @abstractmethod
    def get(self, artifact_id: str) -> Optional[ArtifactRecord]:
        """Fetch one artifact by ID."""

    @abstractmethod
    def list_for_ticket(
        self,
        ticket_ref: str,
        agent_role: Union[str, AgentRole, None] = None,
    ) -> List[ArtifactRecord]:
        """All artifacts on a ticket, newest first."""


def _role_value(agent_role: Union[str, AgentRole]) -> str:
    return AgentRole(agent_role).value


class SqlArtifactRepository(ArtifactRepository):
    """SQLAlchemy-backed repository over the ``artifacts`` table.

    Usage:
        repo = SqlArtifactRepository(db_session)
        repo.find_by_canonical_identity("HAL-0121", "implementation", ArtifactType.PLAN)
    """

    def __init__(self, db: Session, read_attempts: Optional[int] = None):
        self.db = db
        self.read_attempts = max(1, read_attempts or get_settings().db_read_retry_attempts)

    # Reads

    def _rollback_before_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Transient read failure (attempt %d/%d): %s",
            retry_state.attempt_number,
            self.read_attempts,
            exc,
        )
        self.db.rollback()

    def _read(self, operation: Callable[[], T]) -> T:
        retrying = Retrying(
            stop=stop_after_attempt(self.read_attempts),
            wait=wait_random_exponential(multiplier=0.05, max=1.0),
            retry=retry_if_exception_type(OperationalError),
            before_sleep=self._rollback_before_retry,
            reraise=True,
        )
        try:
            return retrying(operation)
        except OperationalError as exc:
            self.db.rollback()
            raise StoreError("STORE_UNAVAILABLE", f"Backing store unavailable: {exc}", retryable=True) from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreError("STORE_READ_FAILED", f"Failed to read artifacts: {exc}") from exc

    def find_by_canonical_identity(
        self,
        ticket_ref: str,
        agent_role: Union[str, AgentRole],
        artifact_type: ArtifactType,
    ) -> List[ArtifactRecord]:
        rows = self._read(
            lambda: self.db.query(ArtifactModel)
            .filter(
                ArtifactModel.ticket_ref == ticket_ref,
                ArtifactModel.agent_role == _role_value(agent_role),
            )
            .order_by(desc(ArtifactModel.created_at), desc(ArtifactModel.artifact_id))
            .all()
        )
        return [
            ArtifactRecord.from_model(row)
            for row in rows
            if type_from_title(row.title) is artifact_type
        ]

    def get(self, artifact_id: str) -> Optional[ArtifactRecord]:
        row = self._read(lambda: self.db.get(ArtifactModel, artifact_id))
        return ArtifactRecord.from_model(row) if row else None

    def list_for_ticket(
        self,
        ticket_ref: str,
        agent_role: Union[str, AgentRole, None] = None,
    ) -> List[ArtifactRecord]:
        def load() -> List[ArtifactModel]:
            query = self.db.query(ArtifactModel).filter(ArtifactModel.ticket_ref == ticket_ref)
            if agent_role is not None:
                query = query.filter(ArtifactModel.agent_role == _role_value(agent_role))
            return query.order_by(desc(ArtifactModel.created_at), desc(ArtifactModel.artifact_id)).all()

        return [ArtifactRecord.from_model(row) for row in self._read(load)]

    # Writes

    def insert_artifact(
        self,
        ticket_ref: str,
        repo_ref: str,
        agent_role: Union[str, AgentRole],
        title: str,
        body: str,
    ) -> InsertResult:
        now = utc_now()
        row = ArtifactModel(
            artifact_id=generate_ulid(),
            ticket_ref=ticket_ref,
            repo_ref=repo_ref or "",
            agent_role=_role_value(agent_role),
            title=title,
            body=body,
            created_at=now,
            updated_at=now,
        )
        try:
            self.db.add(row)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            return InsertResult(InsertStatus.CONFLICT, error=str(exc.orig))
        except SQLAlchemyError as exc:
            self.db.rollback()
            return InsertResult(
                InsertStatus.FAILED,
                error=str(exc),
                retryable=isinstance(exc, OperationalError),
            )
        return InsertResult(InsertStatus.INSERTED, artifact_id=row.artifact_id)

    def update_artifact(
        self,
        artifact_id: str,
        title: str,
        body: Optional[str] = None,
        expected_revision: Optional[int] = None,
    ) -> UpdateResult:
        values: Dict[str, Any] = {
            "title": title,
            "updated_at": utc_now(),
            "revision": ArtifactModel.revision + 1,
        }
        if body is not None:
            values["body"] = body
        stmt = update(ArtifactModel).where(ArtifactModel.artifact_id == artifact_id)
        if expected_revision is not None:
            stmt = stmt.where(ArtifactModel.revision == expected_revision)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        try:
            changed = self.db.execute(stmt).rowcount
            self.db.commit()
        except OperationalError as exc:
            self.db.rollback()
            raise StoreError("STORE_UNAVAILABLE", f"Backing store unavailable: {exc}", retryable=True) from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreError("UPDATE_FAILED", f"Failed to update artifact {artifact_id}: {exc}") from exc

        # Committed above, so this reads the row as it is now.
        current = self.get(artifact_id)
        if current is None:
            return UpdateResult(UpdateStatus.MISSING)
        if not changed:
            return UpdateResult(UpdateStatus.STALE, current)
        return UpdateResult(UpdateStatus.UPDATED, current)

    def delete_by_ids(self, artifact_ids: Sequence[str]) -> int:
        ids = list(artifact_ids)
        if not ids:
            return 0
        try:
            # Dependents first; SQLite does not enforce ON DELETE CASCADE by default.
            self.db.query(ArtifactChunkModel).filter(
                ArtifactChunkModel.artifact_id.in_(ids)
            ).delete(synchronize_session=False)
            self.db.query(EmbeddingJobModel).filter(
                EmbeddingJobModel.artifact_id.in_(ids)
            ).delete(synchronize_session=False)
            removed = (
                self.db.query(ArtifactModel)
                .filter(ArtifactModel.artifact_id.in_(ids))
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreError(
                "DELETE_FAILED",
                f"Failed to delete artifacts {ids}: {exc}",
                retryable=isinstance(exc, OperationalError),
            ) from exc
        self.db.expire_all()
        return removed
