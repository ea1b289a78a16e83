"""
Tests for the embedding worker.

Verifies:
- queued jobs are claimed, embedded, stored as chunks and marked succeeded
- provider failures and chunk store failures mark the job failed and are not retried
- an existing chunk short-circuits the provider call
- claims and completions are conditional on the job's current status
"""

from datetime import timedelta
from typing import List

import pytest
from sqlalchemy.exc import OperationalError

from agent_artifacts.db.models import ArtifactChunkModel, ArtifactModel, EmbeddingJobModel
from agent_artifacts.embeddings.__main__ import main
from agent_artifacts.embeddings.atoms import Atom
from agent_artifacts.embeddings.providers import Embedder
from agent_artifacts.embeddings.queue import EmbeddingQueue
from agent_artifacts.embeddings.worker import EmbeddingWorker, WorkerLoop
from agent_artifacts.enums import AtomType, JobStatus
from agent_artifacts.primitives import generate_ulid, utc_now

ARTIFACT_ID = "01JARTIFACT0000000000000000"


@pytest.fixture
def queued_jobs(db_session):
    db_session.add(
        ArtifactModel(
            artifact_id=ARTIFACT_ID,
            ticket_ref="HAL-0121",
            repo_ref="org/repo",
            agent_role="implementation",
            title="Plan for ticket 0121",
            body="# Plan\n\nAdd jittered retries to the embedding worker loop.",
            created_at=utc_now(),
            updated_at=utc_now(),
        )
    )
    db_session.commit()
    atoms = [
        Atom(text="Adds jittered retries.", atom_type=AtomType.SUMMARY, index=0),
        Atom(text="Retries stop after three attempts.", atom_type=AtomType.HARD_FACT, index=1),
        Atom(text="backoff", atom_type=AtomType.KEYWORD, index=2),
    ]
    return EmbeddingQueue(db_session).enqueue(ARTIFACT_ID, atoms).job_ids


def jobs_by_status(db):
    db.expire_all()
    counts = {}
    for job in db.query(EmbeddingJobModel).all():
        counts[job.status] = counts.get(job.status, 0) + 1
    return counts


def add_chunk(db, text, embedding=(1.0, 0.0)):
    atom = Atom(text=text, atom_type=AtomType.HARD_FACT, index=0)
    db.add(
        ArtifactChunkModel(
            chunk_id=generate_ulid(),
            artifact_id=ARTIFACT_ID,
            chunk_hash=atom.chunk_hash,
            chunk_text=text,
            chunk_index=0,
            atom_type="hard_fact",
            embedding=list(embedding),
            created_at=utc_now(),
        )
    )
    db.commit()


class TestProcessBatch:
    def test_success_path(self, db_session, queued_jobs, fake_embedder):
        report = EmbeddingWorker(db_session, fake_embedder, worker_id="w1").process_batch()

        assert report.to_dict() == {"processed": 3, "succeeded": 3, "failed": 0, "skipped": 0, "errors": []}
        assert jobs_by_status(db_session) == {"succeeded": 3}
        chunks = db_session.query(ArtifactChunkModel).order_by(ArtifactChunkModel.chunk_index).all()
        assert [c.chunk_text for c in chunks] == [
            "Adds jittered retries.",
            "Retries stop after three attempts.",
            "backoff",
        ]
        assert [c.atom_type for c in chunks] == ["summary", "hard_fact", "keyword"]
        assert chunks[0].embedding == [1.0, 0.0]
        job = db_session.query(EmbeddingJobModel).first()
        assert job.worker_id == "w1"
        assert job.started_at is not None
        assert job.completed_at is not None

    def test_provider_failure_marks_failed_without_retry(self, db_session, queued_jobs, make_embedder):
        embedder = make_embedder(error="rate limited")
        worker = EmbeddingWorker(db_session, embedder)

        report = worker.process_batch()

        assert report.failed == 3
        assert len(report.errors) == 3
        assert jobs_by_status(db_session) == {"failed": 3}
        assert {job.error_message for job in db_session.query(EmbeddingJobModel)} == {"rate limited"}
        assert db_session.query(ArtifactChunkModel).count() == 0

        assert worker.process_batch().processed == 0
        assert len(embedder.calls) == 3

    def test_existing_chunk_skips_provider(self, db_session, queued_jobs, fake_embedder):
        add_chunk(db_session, "backoff")

        report = EmbeddingWorker(db_session, fake_embedder).process_batch()

        assert report.succeeded == 3
        assert "backoff" not in fake_embedder.calls
        assert len(fake_embedder.calls) == 2
        assert db_session.query(ArtifactChunkModel).count() == 3

    def test_limit_takes_oldest_first(self, db_session, queued_jobs, fake_embedder):
        report = EmbeddingWorker(db_session, fake_embedder).process_batch(limit=2)

        assert report.processed == 2
        assert fake_embedder.calls == ["Adds jittered retries.", "Retries stop after three attempts."]
        assert jobs_by_status(db_session) == {"succeeded": 2, "queued": 1}

    def test_chunk_stored_concurrently_still_succeeds(self, db_session, queued_jobs):
        class RacingEmbedder(Embedder):
            """Another worker stores the chunk while this one is embedding."""

            def __init__(self):
                self.calls: List[str] = []

            @property
            def name(self):
                return "racing"

            @property
            def dimensions(self):
                return 2

            def embed(self, text):
                self.calls.append(text)
                add_chunk(db_session, text, embedding=(0.0, 1.0))
                return [1.0, 0.0]

        report = EmbeddingWorker(db_session, RacingEmbedder()).process_batch(limit=1)

        assert report.succeeded == 1
        chunks = db_session.query(ArtifactChunkModel).all()
        assert len(chunks) == 1
        assert chunks[0].embedding == [0.0, 1.0]
        assert jobs_by_status(db_session) == {"succeeded": 1, "queued": 2}

    def test_chunk_store_failure_marks_job_failed(self, monkeypatch, db_session, queued_jobs, fake_embedder):
        real_commit = db_session.commit

        def commit():
            if any(isinstance(obj, ArtifactChunkModel) for obj in db_session.new):
                raise OperationalError("INSERT INTO artifact_chunks", {}, Exception("disk I/O error"))
            real_commit()

        monkeypatch.setattr(db_session, "commit", commit)

        report = EmbeddingWorker(db_session, fake_embedder).process_batch(limit=1)

        assert report.failed == 1
        assert report.succeeded == 0
        assert "disk I/O error" in report.errors[0]
        assert jobs_by_status(db_session) == {"failed": 1, "queued": 2}
        failed = db_session.query(EmbeddingJobModel).filter_by(status="failed").one()
        assert failed.error_message.startswith("Failed to store chunk")
        assert db_session.query(ArtifactChunkModel).count() == 0


class TestConditionalUpdates:
    def test_claim_is_exclusive(self, db_session, queued_jobs, fake_embedder):
        first = EmbeddingWorker(db_session, fake_embedder, worker_id="w1")
        second = EmbeddingWorker(db_session, fake_embedder, worker_id="w2")

        assert first._claim(queued_jobs[0]) is True
        assert second._claim(queued_jobs[0]) is False

        db_session.expire_all()
        assert db_session.get(EmbeddingJobModel, queued_jobs[0]).worker_id == "w1"

    def test_processing_jobs_are_not_picked_up(self, db_session, queued_jobs, fake_embedder):
        EmbeddingWorker(db_session, fake_embedder, worker_id="w1")._claim(queued_jobs[0])

        report = EmbeddingWorker(db_session, fake_embedder, worker_id="w2").process_batch()

        assert report.processed == 2
        assert jobs_by_status(db_session) == {"processing": 1, "succeeded": 2}

    def test_finish_is_a_no_op_after_requeue(self, db_session, queued_jobs, fake_embedder):
        worker = EmbeddingWorker(db_session, fake_embedder, worker_id="w1")
        worker._claim(queued_jobs[0])
        EmbeddingQueue(db_session).requeue_stale(timedelta(seconds=-1))

        assert worker._finish(queued_jobs[0], JobStatus.SUCCEEDED) is False

        db_session.expire_all()
        assert db_session.get(EmbeddingJobModel, queued_jobs[0]).status == "queued"


class TestWorkerLoop:
    def test_requires_an_embedder(self, monkeypatch):
        monkeypatch.setattr("agent_artifacts.embeddings.worker.get_embedder", lambda provider=None: None)
        with pytest.raises(ValueError):
            WorkerLoop(embedding_provider="openai")

    def test_closes_embedder_it_built(self, monkeypatch, fake_embedder):
        monkeypatch.setattr("agent_artifacts.embeddings.worker.get_embedder", lambda provider=None: fake_embedder)

        WorkerLoop(embedding_provider="stub").close()

        assert fake_embedder.closed is True

    def test_leaves_injected_embedder_open(self, fake_embedder):
        WorkerLoop(embedder=fake_embedder).close()
        assert fake_embedder.closed is False

    def test_run_once_uses_configured_session(self, monkeypatch, session_factory, queued_jobs, fake_embedder):
        monkeypatch.setattr("agent_artifacts.embeddings.worker.get_session_local", lambda: session_factory)

        report = WorkerLoop(embedder=fake_embedder, batch_size=5).run_once()

        assert report.succeeded == 3


class TestEntryPoint:
    def test_once_with_stub_provider(self, monkeypatch, capsys, session_factory, queued_jobs):
        monkeypatch.setattr("agent_artifacts.embeddings.worker.get_session_local", lambda: session_factory)

        assert main(["--provider", "stub", "--once"]) == 0
        assert "processed=3 succeeded=3 failed=0 skipped=0" in capsys.readouterr().out

    def test_unknown_provider_exits_with_error(self, capsys):
        assert main(["--provider", "nope", "--once"]) == 2
        assert "Unsupported embedding provider" in capsys.readouterr().err
