"""
Embedding job queue.

Atoms are content-addressed: an atom whose hash already has a chunk, or a
queued/processing job, for the same artifact is never enqueued again. The
partial unique index on embedding_jobs backs this up when two enqueuers race;
the loser's duplicate insert is simply skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from sqlalchemy import desc, func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..db.models import ArtifactChunkModel, ArtifactModel, EmbeddingJobModel
from ..enums import ACTIVE_JOB_STATUSES, JobStatus
from ..primitives import generate_ulid, utc_now
from .atoms import Atom, extract_atoms
from .providers import DistillationError, Distiller, get_distiller

logger = logging.getLogger(__name__)


@dataclass
class EnqueueResult:
    """Outcome of one enqueue call."""

    enqueued: int = 0
    skipped: int = 0
    total: int = 0
    errors: List[str] = field(default_factory=list)
    job_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enqueued": self.enqueued,
            "skipped": self.skipped,
            "total": self.total,
            "errors": self.errors,
            "jobIds": self.job_ids,
        }


class EmbeddingQueue:
    """Service for enqueueing and inspecting embedding jobs.

    Usage:
        queue = EmbeddingQueue(db_session)
        queue.enqueue(artifact_id, atoms)
    """

    def __init__(self, db: Session):
        self.db = db

    def dedupe(self, artifact_id: str, atoms: Sequence[Atom]) -> List[Atom]:
        """Drop atoms already embedded or already pending for this artifact.

        Duplicates within ``atoms`` collapse to their first occurrence.
        """
        hashes = {atom.chunk_hash for atom in atoms}
        if not hashes:
            return []

        embedded = {
            row[0]
            for row in self.db.query(ArtifactChunkModel.chunk_hash).filter(
                ArtifactChunkModel.artifact_id == artifact_id,
                ArtifactChunkModel.chunk_hash.in_(hashes),
            )
        }
        pending = {
            row[0]
            for row in self.db.query(EmbeddingJobModel.chunk_hash).filter(
                EmbeddingJobModel.artifact_id == artifact_id,
                EmbeddingJobModel.chunk_hash.in_(hashes),
                EmbeddingJobModel.status.in_(ACTIVE_JOB_STATUSES),
            )
        }

        seen = embedded | pending
        fresh: List[Atom] = []
        for atom in atoms:
            if atom.chunk_hash in seen:
                continue
            seen.add(atom.chunk_hash)
            fresh.append(atom)
        return fresh

    def _job_for(self, artifact_id: str, atom: Atom) -> EmbeddingJobModel:
        return EmbeddingJobModel(
            job_id=generate_ulid(),
            artifact_id=artifact_id,
            chunk_hash=atom.chunk_hash,
            chunk_text=atom.text,
            chunk_index=atom.index,
            atom_type=atom.atom_type.value,
            status=JobStatus.QUEUED.value,
            created_at=utc_now(),
        )

    def enqueue(self, artifact_id: str, atoms: Sequence[Atom]) -> EnqueueResult:
        """
        Insert one queued job per new atom.

        The survivors of ``dedupe`` are inserted in a single batch. If the
        batch hits the uniqueness index (a concurrent enqueuer won), each job
        is retried on its own and duplicate-key failures are counted as
        skipped.

        Args:
            artifact_id: Artifact the atoms were extracted from
            atoms: Candidate atoms

        Returns:
            EnqueueResult with enqueued/skipped counts and any errors
        """
        result = EnqueueResult(total=len(atoms))
        fresh = self.dedupe(artifact_id, atoms)
        result.skipped = len(atoms) - len(fresh)
        if not fresh:
            return result

        jobs = [self._job_for(artifact_id, atom) for atom in fresh]
        try:
            self.db.add_all(jobs)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info("Batch enqueue for %s hit a duplicate; inserting jobs one by one", artifact_id)
            return self._enqueue_individually(artifact_id, fresh, result)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to enqueue embedding jobs for %s: %s", artifact_id, exc)
            result.errors.append(str(exc))
            return result

        result.enqueued = len(jobs)
        result.job_ids = [job.job_id for job in jobs]
        logger.info("Enqueued %d embedding jobs for %s (%d skipped)", result.enqueued, artifact_id, result.skipped)
        return result

    def _enqueue_individually(self, artifact_id: str, atoms: Sequence[Atom], result: EnqueueResult) -> EnqueueResult:
        for atom in atoms:
            job = self._job_for(artifact_id, atom)
            try:
                self.db.add(job)
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                result.skipped += 1
                continue
            except SQLAlchemyError as exc:
                self.db.rollback()
                result.errors.append(f"{atom.chunk_hash[:12]}: {exc}")
                continue
            result.enqueued += 1
            result.job_ids.append(job.job_id)
        return result

    def enqueue_artifact(
        self,
        artifact_id: str,
        distiller: Distiller,
        max_chars: Optional[int] = None,
    ) -> EnqueueResult:
        """Distill a stored artifact and enqueue its new atoms.

        Raises:
            LookupError: if the artifact does not exist
            DistillationError: if distillation fails
        """
        artifact = self.db.get(ArtifactModel, artifact_id)
        if artifact is None:
            raise LookupError(f"Artifact {artifact_id} not found")
        atoms = extract_atoms(distiller, artifact.body, artifact.title, max_chars=max_chars)
        return self.enqueue(artifact_id, atoms)

    # Query methods

    def list_jobs(
        self,
        status: Optional[Union[str, JobStatus]] = None,
        artifact_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[EmbeddingJobModel]:
        """List jobs, newest first."""
        query = self.db.query(EmbeddingJobModel)
        if status:
            query = query.filter(EmbeddingJobModel.status == JobStatus(status).value)
        if artifact_id:
            query = query.filter(EmbeddingJobModel.artifact_id == artifact_id)
        return (
            query.order_by(desc(EmbeddingJobModel.created_at), desc(EmbeddingJobModel.job_id))
            .offset(offset)
            .limit(limit)
            .all()
        )

    def status_counts(self) -> Dict[str, int]:
        """Job counts per status, plus the number of stored chunks."""
        counts = {status.value: 0 for status in JobStatus}
        rows = (
            self.db.query(EmbeddingJobModel.status, func.count(EmbeddingJobModel.job_id))
            .group_by(EmbeddingJobModel.status)
            .all()
        )
        for status, count in rows:
            counts[status] = count
        counts["chunks"] = self.db.query(func.count(ArtifactChunkModel.chunk_id)).scalar() or 0
        return counts

    def requeue_stale(self, older_than: Union[int, float, timedelta]) -> int:
        """
        Move jobs stuck in ``processing`` back to ``queued``.

        A worker that dies after claiming a job leaves it in ``processing``
        forever. This is the operator's remedy; nothing calls it with a
        default timeout.

        Args:
            older_than: Seconds (or a timedelta) since the job was claimed

        Returns:
            Number of jobs requeued
        """
        if not isinstance(older_than, timedelta):
            older_than = timedelta(seconds=older_than)
        cutoff = utc_now() - older_than

        result = self.db.execute(
            update(EmbeddingJobModel)
            .where(
                EmbeddingJobModel.status == JobStatus.PROCESSING.value,
                EmbeddingJobModel.started_at < cutoff,
            )
            .values(status=JobStatus.QUEUED.value, started_at=None, worker_id=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount:
            logger.warning("Requeued %d stale embedding jobs (claimed before %s)", result.rowcount, cutoff.isoformat())
        return result.rowcount


def handle_artifact_stored(
    event,
    session_factory: Callable[[], Session],
    distiller: Optional[Distiller] = None,
) -> EnqueueResult:
    """Subscriber for ``ArtifactStoredEvent``: enqueue embeddings for the artifact.

    Runs outside the request path. Failures are logged and reported in the
    result; they never propagate back to the store. A distiller built here is
    closed before returning; a passed-in one belongs to the caller.
    """
    owns_distiller = distiller is None
    if distiller is None:
        try:
            distiller = get_distiller()
        except ValueError as exc:
            logger.warning("Skipping embeddings for %s: %s", event.artifact_id, exc)
            return EnqueueResult(errors=[str(exc)])

    db = session_factory()
    try:
        return EmbeddingQueue(db).enqueue_artifact(event.artifact_id, distiller)
    except (LookupError, DistillationError, SQLAlchemyError) as exc:
        logger.warning("Embedding enqueue failed for %s: %s", event.artifact_id, exc)
        return EnqueueResult(errors=[str(exc)])
    finally:
        db.close()
        if owns_distiller:
            distiller.close()
