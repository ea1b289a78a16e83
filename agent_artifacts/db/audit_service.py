"""
Storage Attempt Log Service.

Records the outcome of every artifact storage attempt. Recording is
best-effort: a failure to write the log is logged and swallowed so that it
never changes the outcome of the store call it describes.
"""

import logging
from typing import List, Optional

from sqlalchemy import desc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..enums import StorageOutcome
from ..primitives import generate_ulid, utc_now
from .audit_models import StorageAttemptModel

logger = logging.getLogger(__name__)


class StorageAttemptLog:
    """Service for recording and querying storage attempts.

    Usage:
        attempts = StorageAttemptLog(db_session)
        attempts.record("HAL-0121", "plan", "implementation", StorageOutcome.STORED, artifact_id=...)
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        ticket_ref: str,
        artifact_type: str,
        agent_role: str,
        outcome: StorageOutcome,
        repo_ref: str = "",
        endpoint: str = "store",
        artifact_id: Optional[str] = None,
        error_message: Optional[str] = None,
        validation_reason: Optional[str] = None,
    ) -> Optional[StorageAttemptModel]:
        """Record one storage attempt.

        Args:
            ticket_ref: Ticket the artifact was submitted for
            artifact_type: Requested artifact type (raw value, may be unknown)
            agent_role: Submitting agent role
            outcome: How the attempt ended
            repo_ref: Repository reference, if known
            endpoint: Surface the attempt came through
            artifact_id: Stored artifact ID on success
            error_message: Failure detail when the request failed
            validation_reason: Validator reason when rejected

        Returns:
            The created StorageAttemptModel, or None if it could not be written
        """
        entry = StorageAttemptModel(
            id=generate_ulid(),
            ts=utc_now(),
            ticket_ref=ticket_ref,
            repo_ref=repo_ref or "",
            artifact_type=artifact_type,
            agent_role=agent_role,
            endpoint=endpoint,
            outcome=StorageOutcome(outcome).value,
            artifact_id=artifact_id,
            error_message=error_message,
            validation_reason=validation_reason,
        )

        try:
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning(
                "Failed to record storage attempt for %s/%s: %s",
                ticket_ref,
                artifact_type,
                exc,
            )
            return None
        return entry

    # Query methods

    def query_by_ticket(
        self,
        ticket_ref: str,
        limit: int = 100,
        offset: int = 0,
    ) -> List[StorageAttemptModel]:
        """Get storage attempts for a ticket, newest first."""
        return (
            self.db.query(StorageAttemptModel)
            .filter(StorageAttemptModel.ticket_ref == ticket_ref)
            .order_by(desc(StorageAttemptModel.ts), desc(StorageAttemptModel.id))
            .offset(offset)
            .limit(limit)
            .all()
        )

    def query_recent(
        self,
        outcome: Optional[StorageOutcome] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[StorageAttemptModel]:
        """Get the most recent storage attempts, optionally for one outcome.

        Args:
            outcome: Only return attempts that ended this way
            limit: Maximum number of entries to return
            offset: Number of entries to skip

        Returns:
            List of StorageAttemptModel entries, newest first
        """
        query = self.db.query(StorageAttemptModel)
        if outcome is not None:
            query = query.filter(StorageAttemptModel.outcome == StorageOutcome(outcome).value)
        return (
            query.order_by(desc(StorageAttemptModel.ts), desc(StorageAttemptModel.id))
            .offset(offset)
            .limit(limit)
            .all()
        )
