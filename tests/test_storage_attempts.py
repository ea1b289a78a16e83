"""
Tests for the storage attempt log.

Verifies:
- attempts are recorded with their outcome and details
- queries return newest first and filter by ticket / outcome
- a failed write to the log is swallowed
"""

from sqlalchemy.exc import OperationalError

from agent_artifacts.db.audit_models import StorageAttemptModel
from agent_artifacts.db.audit_service import StorageAttemptLog
from agent_artifacts.enums import StorageOutcome


class TestStorageAttemptLog:
    """Tests for StorageAttemptLog."""

    def test_record_creates_entry(self, db_session):
        log = StorageAttemptLog(db_session)

        entry = log.record(
            ticket_ref="HAL-0121",
            artifact_type="plan",
            agent_role="implementation",
            outcome=StorageOutcome.STORED,
            repo_ref="org/repo",
            artifact_id="01HZZZZZZZZZZZZZZZZZZZZZZZ",
        )

        assert entry is not None
        assert entry.id is not None
        assert entry.ts is not None
        assert entry.outcome == "stored"
        assert entry.endpoint == "store"
        assert db_session.query(StorageAttemptModel).count() == 1

    def test_to_dict(self, db_session):
        log = StorageAttemptLog(db_session)
        entry = log.record(
            ticket_ref="HAL-0121",
            artifact_type="qa-report",
            agent_role="qa",
            outcome=StorageOutcome.REJECTED,
            validation_reason="Artifact body is too short (12 characters).",
        )

        data = entry.to_dict()
        assert data["ticket_ref"] == "HAL-0121"
        assert data["outcome"] == "rejected by validation"
        assert data["validation_reason"].startswith("Artifact body is too short")
        assert data["artifact_id"] is None

    def test_query_by_ticket_newest_first(self, db_session):
        log = StorageAttemptLog(db_session)
        first = log.record("HAL-1", "plan", "implementation", StorageOutcome.REJECTED)
        second = log.record("HAL-1", "plan", "implementation", StorageOutcome.STORED)
        log.record("HAL-2", "plan", "implementation", StorageOutcome.STORED)

        entries = log.query_by_ticket("HAL-1")
        assert [e.id for e in entries] == [second.id, first.id]

    def test_query_recent_by_outcome(self, db_session):
        log = StorageAttemptLog(db_session)
        log.record("HAL-1", "plan", "implementation", StorageOutcome.STORED)
        log.record("HAL-1", "plan", "implementation", StorageOutcome.FAILED, error_message="boom")
        log.record("HAL-2", "worklog", "implementation", StorageOutcome.FAILED, error_message="bang")

        failed = log.query_recent(outcome=StorageOutcome.FAILED)
        assert len(failed) == 2
        assert all(e.outcome == "request failed" for e in failed)
        assert len(log.query_recent(limit=1)) == 1

    def test_record_failure_is_swallowed(self, db_session, monkeypatch):
        log = StorageAttemptLog(db_session)

        def broken_commit():
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(db_session, "commit", broken_commit)

        assert log.record("HAL-1", "plan", "implementation", StorageOutcome.STORED) is None
