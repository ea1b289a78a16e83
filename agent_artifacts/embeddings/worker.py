"""
Embedding worker.

Flow per job:
1. Claim: conditional UPDATE queued -> processing (lost races are skipped)
2. Re-check: a chunk with the same hash already exists -> succeeded, no call
3. Embed: provider failure -> failed (never retried automatically)
4. Store chunk: a unique violation means another worker stored it -> fine
5. Complete: conditional UPDATE processing -> succeeded

Any number of workers may poll concurrently; the claim is the only
coordination.
"""
from __future__ import annotations

import logging
import signal
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..db.base import get_session_local
from ..db.models import ArtifactChunkModel, EmbeddingJobModel
from ..enums import JobStatus
from ..primitives import generate_ulid, utc_now
from .providers import Embedder, EmbeddingError, get_embedder
from .queue import EmbeddingQueue

logger = logging.getLogger(__name__)


@dataclass
class WorkerReport:
    """Counts for one processed batch."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class EmbeddingWorker:
    """Processes queued embedding jobs against one database session."""

    def __init__(self, db: Session, embedder: Embedder, worker_id: Optional[str] = None):
        self.db = db
        self.embedder = embedder
        self.worker_id = worker_id or f"embed-worker-{uuid.uuid4().hex[:8]}"
        self.settings = get_settings()

    def process_batch(self, limit: Optional[int] = None) -> WorkerReport:
        """Claim and process up to ``limit`` of the oldest queued jobs.

        Args:
            limit: Batch size (default from config, capped at worker_max_batch_size)

        Returns:
            WorkerReport for the batch
        """
        limit = min(limit or self.settings.worker_batch_size, self.settings.worker_max_batch_size)
        report = WorkerReport()

        job_ids = [
            row[0]
            for row in self.db.query(EmbeddingJobModel.job_id)
            .filter(EmbeddingJobModel.status == JobStatus.QUEUED.value)
            .order_by(EmbeddingJobModel.created_at.asc(), EmbeddingJobModel.chunk_index.asc())
            .limit(limit)
            .all()
        ]

        for job_id in job_ids:
            self._process_job(job_id, report)

        if job_ids:
            logger.info(
                f"Worker {self.worker_id} batch done: processed={report.processed}, "
                f"succeeded={report.succeeded}, failed={report.failed}, skipped={report.skipped}"
            )
        return report

    def _claim(self, job_id: str) -> bool:
        """Atomically claim a queued job (optimistic locking on status)."""
        result = self.db.execute(
            update(EmbeddingJobModel)
            .where(
                EmbeddingJobModel.job_id == job_id,
                EmbeddingJobModel.status == JobStatus.QUEUED.value,
            )
            .values(
                status=JobStatus.PROCESSING.value,
                started_at=utc_now(),
                worker_id=self.worker_id,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def _finish(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> bool:
        """Move a processing job to a terminal state. No-op if it was requeued meanwhile."""
        result = self.db.execute(
            update(EmbeddingJobModel)
            .where(
                EmbeddingJobModel.job_id == job_id,
                EmbeddingJobModel.status == JobStatus.PROCESSING.value,
            )
            .values(status=status.value, completed_at=utc_now(), error_message=error)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount == 0:
            logger.warning(f"Job {job_id} left 'processing' before {self.worker_id} could mark it {status.value}")
            return False
        return True

    def _chunk_exists(self, artifact_id: str, chunk_hash: str) -> bool:
        return (
            self.db.query(ArtifactChunkModel.chunk_id)
            .filter(
                ArtifactChunkModel.artifact_id == artifact_id,
                ArtifactChunkModel.chunk_hash == chunk_hash,
            )
            .first()
            is not None
        )

    def _process_job(self, job_id: str, report: WorkerReport) -> None:
        if not self._claim(job_id):
            logger.debug(f"Job {job_id} claimed by another worker")
            report.skipped += 1
            return

        report.processed += 1
        job = self.db.get(EmbeddingJobModel, job_id, populate_existing=True)
        if job is None:
            # Artifact deleted after the claim; its jobs went with it.
            report.skipped += 1
            return
        artifact_id, chunk_hash, chunk_text = job.artifact_id, job.chunk_hash, job.chunk_text

        if self._chunk_exists(artifact_id, chunk_hash):
            logger.info(f"Chunk {chunk_hash[:12]} already embedded for {artifact_id}; skipping provider call")
            self._finish(job_id, JobStatus.SUCCEEDED)
            report.succeeded += 1
            return

        try:
            vector = self.embedder.embed(chunk_text)
            if not vector:
                raise EmbeddingError("Embedding provider returned an empty vector")
        except Exception as e:
            logger.exception(f"Embedding failed for job {job_id}: {e}")
            self._finish(job_id, JobStatus.FAILED, error=str(e))
            report.failed += 1
            report.errors.append(f"{job_id}: {e}")
            return

        chunk = ArtifactChunkModel(
            chunk_id=generate_ulid(),
            artifact_id=artifact_id,
            chunk_hash=chunk_hash,
            chunk_text=chunk_text,
            chunk_index=job.chunk_index,
            atom_type=job.atom_type,
            embedding=vector,
            created_at=utc_now(),
        )
        try:
            self.db.add(chunk)
            self.db.commit()
        except IntegrityError:
            # Another worker stored the same chunk first.
            self.db.rollback()
            logger.info(f"Chunk {chunk_hash[:12]} for {artifact_id} stored concurrently")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to store chunk for job {job_id}: {e}")
            self._finish(job_id, JobStatus.FAILED, error=f"Failed to store chunk: {e}")
            report.failed += 1
            report.errors.append(f"{job_id}: {e}")
            return

        self._finish(job_id, JobStatus.SUCCEEDED)
        report.succeeded += 1


class WorkerLoop:
    """Polling loop around EmbeddingWorker."""

    def __init__(
        self,
        embedding_provider: Optional[str] = None,
        poll_interval: Optional[int] = None,
        batch_size: Optional[int] = None,
        stale_job_seconds: Optional[int] = None,
        embedder: Optional[Embedder] = None,
    ):
        """Initialize worker loop.

        Args:
            embedding_provider: Provider name (default from config)
            poll_interval: Seconds between poll cycles (default from config)
            batch_size: Max jobs to claim per cycle (default from config)
            stale_job_seconds: Requeue 'processing' jobs older than this each cycle
            embedder: Pre-built embedder, overrides ``embedding_provider``
        """
        self.settings = get_settings()
        self._owns_embedder = embedder is None
        self.embedder = embedder or get_embedder(embedding_provider)
        if self.embedder is None:
            raise ValueError("No embedder configured. Set OPENAI_API_KEY or EMBEDDING_PROVIDER=stub.")
        self.poll_interval = poll_interval or self.settings.worker_poll_interval
        self.batch_size = batch_size or self.settings.worker_batch_size
        self.stale_job_seconds = stale_job_seconds or self.settings.worker_stale_job_seconds
        self.running = False
        self.worker_id = f"embed-worker-{uuid.uuid4().hex[:8]}"

        logger.info(
            f"Worker initialized: id={self.worker_id}, "
            f"embedder={self.embedder.name}, "
            f"poll_interval={self.poll_interval}s, "
            f"batch_size={self.batch_size}"
        )

    def start(self) -> None:
        """Start the worker loop. Runs until stopped."""
        self.running = True
        logger.info(f"Worker {self.worker_id} starting...")

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        try:
            while self.running:
                try:
                    if self.run_once().processed == 0:
                        time.sleep(self.poll_interval)
                except Exception as e:
                    logger.exception(f"Error in worker loop: {e}")
                    time.sleep(self.poll_interval)
        finally:
            self.close()
            logger.info(f"Worker {self.worker_id} stopped")

    def stop(self) -> None:
        """Signal the worker to stop after the current batch."""
        logger.info(f"Worker {self.worker_id} stopping...")
        self.running = False

    def close(self) -> None:
        """Close the embedder if this loop built it."""
        if self._owns_embedder:
            self.embedder.close()

    def _signal_handler(self, signum, frame) -> None:
        logger.info(f"Received signal {signum}, shutting down...")
        self.stop()

    def run_once(self) -> WorkerReport:
        """Run a single poll cycle on a fresh session."""
        db = get_session_local()()
        try:
            if self.stale_job_seconds:
                EmbeddingQueue(db).requeue_stale(self.stale_job_seconds)
            worker = EmbeddingWorker(db, self.embedder, worker_id=self.worker_id)
            return worker.process_batch(self.batch_size)
        finally:
            db.close()


def run_worker(
    embedding_provider: Optional[str] = None,
    poll_interval: Optional[int] = None,
    batch_size: Optional[int] = None,
    once: bool = False,
    stale_job_seconds: Optional[int] = None,
) -> Optional[WorkerReport]:
    """Run the embedding worker.

    Args:
        embedding_provider: Provider name ("openai" or "stub")
        poll_interval: Seconds between poll cycles
        batch_size: Max jobs per cycle
        once: Process a single batch and return its report
        stale_job_seconds: Requeue jobs stuck in processing longer than this each cycle
    """
    logging.basicConfig(
        level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    loop = WorkerLoop(
        embedding_provider=embedding_provider,
        poll_interval=poll_interval,
        batch_size=batch_size,
        stale_job_seconds=stale_job_seconds,
    )
    if once:
        try:
            return loop.run_once()
        finally:
            loop.close()
    loop.start()
    return None
