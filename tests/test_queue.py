"""
Tests for the embedding job queue.

Verifies:
- atoms already embedded or pending are not enqueued twice
- a racing duplicate in a batch falls back to per-job inserts
- stale 'processing' jobs can be requeued
- the stored-artifact subscriber never raises
"""

from datetime import timedelta

import pytest

from agent_artifacts.artifacts.storage import ArtifactStoredEvent
from agent_artifacts.db.models import ArtifactChunkModel, ArtifactModel, EmbeddingJobModel
from agent_artifacts.embeddings.atoms import Atom
from agent_artifacts.embeddings.queue import EmbeddingQueue, handle_artifact_stored
from agent_artifacts.enums import ArtifactType, AtomType, JobStatus
from agent_artifacts.primitives import generate_ulid, utc_now

ARTIFACT_ID = "01JARTIFACT0000000000000000"


@pytest.fixture
def artifact(db_session):
    row = ArtifactModel(
        artifact_id=ARTIFACT_ID,
        ticket_ref="HAL-0121",
        repo_ref="org/repo",
        agent_role="implementation",
        title="Plan for ticket 0121",
        body="# Plan\n\nAdd jittered retries to the embedding worker loop.",
        created_at=utc_now(),
        updated_at=utc_now(),
    )
    db_session.add(row)
    db_session.commit()
    return row


def atoms(*texts):
    return [Atom(text=text, atom_type=AtomType.HARD_FACT, index=i) for i, text in enumerate(texts)]


def add_job(db, text, status=JobStatus.QUEUED, started_at=None, worker_id=None):
    atom = Atom(text=text, atom_type=AtomType.HARD_FACT, index=0)
    job = EmbeddingJobModel(
        job_id=generate_ulid(),
        artifact_id=ARTIFACT_ID,
        chunk_hash=atom.chunk_hash,
        chunk_text=text,
        chunk_index=0,
        atom_type=atom.atom_type.value,
        status=status.value,
        started_at=started_at,
        worker_id=worker_id,
        created_at=utc_now(),
    )
    db.add(job)
    db.commit()
    return job


class TestEnqueue:
    def test_enqueues_one_job_per_atom(self, db_session, artifact):
        result = EmbeddingQueue(db_session).enqueue(ARTIFACT_ID, atoms("fact one", "fact two", "fact three"))

        assert (result.enqueued, result.skipped, result.total) == (3, 0, 3)
        assert len(result.job_ids) == 3
        jobs = db_session.query(EmbeddingJobModel).all()
        assert {job.status for job in jobs} == {"queued"}
        assert sorted(job.chunk_index for job in jobs) == [0, 1, 2]

    def test_re_enqueue_skips_pending_atoms(self, db_session, artifact):
        queue = EmbeddingQueue(db_session)
        queue.enqueue(ARTIFACT_ID, atoms("fact one", "fact two"))

        result = queue.enqueue(ARTIFACT_ID, atoms("Fact One ", "fact two", "fact three"))

        assert (result.enqueued, result.skipped) == (1, 2)
        assert db_session.query(EmbeddingJobModel).count() == 3

    def test_duplicates_within_batch_collapse(self, db_session, artifact):
        result = EmbeddingQueue(db_session).enqueue(ARTIFACT_ID, atoms("retry", "RETRY", "backoff"))
        assert (result.enqueued, result.skipped) == (2, 1)

    def test_embedded_atoms_are_skipped(self, db_session, artifact):
        existing = Atom(text="fact one", atom_type=AtomType.HARD_FACT, index=0)
        db_session.add(
            ArtifactChunkModel(
                chunk_id=generate_ulid(),
                artifact_id=ARTIFACT_ID,
                chunk_hash=existing.chunk_hash,
                chunk_text=existing.text,
                chunk_index=0,
                atom_type="hard_fact",
                embedding=[1.0, 0.0],
            )
        )
        db_session.commit()

        result = EmbeddingQueue(db_session).enqueue(ARTIFACT_ID, atoms("fact one", "fact two"))

        assert (result.enqueued, result.skipped) == (1, 1)

    def test_terminal_job_does_not_block_re_enqueue(self, db_session, artifact):
        add_job(db_session, "fact one", status=JobStatus.FAILED)

        result = EmbeddingQueue(db_session).enqueue(ARTIFACT_ID, atoms("fact one"))

        assert result.enqueued == 1
        statuses = sorted(job.status for job in db_session.query(EmbeddingJobModel).all())
        assert statuses == ["failed", "queued"]

    def test_racing_duplicate_falls_back_to_single_inserts(self, db_session, artifact, monkeypatch):
        add_job(db_session, "fact one")
        queue = EmbeddingQueue(db_session)
        # Simulate a concurrent enqueuer that inserted after our dedupe read.
        monkeypatch.setattr(queue, "dedupe", lambda artifact_id, candidates: list(candidates))

        result = queue.enqueue(ARTIFACT_ID, atoms("fact one", "fact two"))

        assert (result.enqueued, result.skipped) == (1, 1)
        assert result.errors == []
        assert db_session.query(EmbeddingJobModel).count() == 2

    def test_empty_atoms(self, db_session, artifact):
        result = EmbeddingQueue(db_session).enqueue(ARTIFACT_ID, [])
        assert (result.enqueued, result.skipped, result.total) == (0, 0, 0)

    def test_to_dict(self, db_session, artifact):
        data = EmbeddingQueue(db_session).enqueue(ARTIFACT_ID, atoms("fact one")).to_dict()
        assert set(data) == {"enqueued", "skipped", "total", "errors", "jobIds"}


class TestEnqueueArtifact:
    def test_distills_and_enqueues(self, db_session, artifact, fake_distiller):
        result = EmbeddingQueue(db_session).enqueue_artifact(ARTIFACT_ID, fake_distiller)

        assert result.enqueued == 3
        assert fake_distiller.calls == [(artifact.body, artifact.title)]
        types = [job.atom_type for job in db_session.query(EmbeddingJobModel).order_by(EmbeddingJobModel.chunk_index)]
        assert types == ["summary", "hard_fact", "keyword"]

    def test_missing_artifact(self, db_session, fake_distiller):
        with pytest.raises(LookupError):
            EmbeddingQueue(db_session).enqueue_artifact("01JMISSING", fake_distiller)


class TestHandleArtifactStored:
    def event(self):
        return ArtifactStoredEvent(
            artifact_id=ARTIFACT_ID,
            ticket_ref="HAL-0121",
            repo_ref="org/repo",
            agent_role="implementation",
            artifact_type=ArtifactType.PLAN,
            title="Plan for ticket 0121",
            body="# Plan\n\nAdd jittered retries to the embedding worker loop.",
            action="inserted",
        )

    def test_enqueues_in_own_session(self, db_session, session_factory, artifact, fake_distiller):
        result = handle_artifact_stored(self.event(), session_factory, fake_distiller)

        assert result.enqueued == 3
        assert db_session.query(EmbeddingJobModel).count() == 3

    def test_distillation_failure_is_reported(self, db_session, session_factory, artifact, make_distiller):
        result = handle_artifact_stored(self.event(), session_factory, make_distiller(error="model unavailable"))

        assert result.enqueued == 0
        assert result.errors == ["model unavailable"]
        assert db_session.query(EmbeddingJobModel).count() == 0

    def test_missing_artifact_is_reported(self, session_factory, fake_distiller):
        result = handle_artifact_stored(self.event(), session_factory, fake_distiller)
        assert result.errors

    def test_caller_distiller_is_left_open(self, session_factory, artifact, fake_distiller):
        handle_artifact_stored(self.event(), session_factory, fake_distiller)
        assert fake_distiller.closed is False

    def test_own_distiller_is_closed(self, monkeypatch, session_factory, artifact, fake_distiller):
        monkeypatch.setattr("agent_artifacts.embeddings.queue.get_distiller", lambda: fake_distiller)

        result = handle_artifact_stored(self.event(), session_factory)

        assert result.enqueued == 3
        assert fake_distiller.closed is True


class TestMaintenance:
    def test_requeue_stale(self, db_session, artifact):
        stale = add_job(
            db_session,
            "fact one",
            status=JobStatus.PROCESSING,
            started_at=utc_now() - timedelta(hours=1),
            worker_id="embed-worker-dead",
        )
        fresh = add_job(db_session, "fact two", status=JobStatus.PROCESSING, started_at=utc_now(), worker_id="w2")
        add_job(db_session, "fact three")

        assert EmbeddingQueue(db_session).requeue_stale(60) == 1

        db_session.expire_all()
        assert stale.status == "queued"
        assert stale.started_at is None
        assert stale.worker_id is None
        assert fresh.status == "processing"

    def test_requeue_stale_accepts_timedelta(self, db_session, artifact):
        add_job(db_session, "fact one", status=JobStatus.PROCESSING, started_at=utc_now() - timedelta(minutes=10))
        assert EmbeddingQueue(db_session).requeue_stale(timedelta(minutes=5)) == 1

    def test_status_counts(self, db_session, artifact):
        add_job(db_session, "fact one")
        add_job(db_session, "fact two")
        add_job(db_session, "fact three", status=JobStatus.FAILED)

        assert EmbeddingQueue(db_session).status_counts() == {
            "queued": 2,
            "processing": 0,
            "succeeded": 0,
            "failed": 1,
            "chunks": 0,
        }

    def test_list_jobs_filters(self, db_session, artifact):
        add_job(db_session, "fact one")
        add_job(db_session, "fact two", status=JobStatus.FAILED)

        queue = EmbeddingQueue(db_session)
        assert len(queue.list_jobs()) == 2
        assert [job.chunk_text for job in queue.list_jobs(status="failed")] == ["fact two"]
        assert queue.list_jobs(artifact_id="01JOTHER") == []
