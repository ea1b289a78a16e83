"""
Canonical artifact store.

``ArtifactStore.store`` is the only write path for artifacts. For one
(ticket, agent role, canonical type) it:

1. resolves the canonical type and title
2. validates the body (rejections are logged and audited, never stored)
3. loads every artifact on the ticket that resolves to the same type
4. deletes empty/placeholder rows and surplus duplicates (best-effort)
5. appends the new body to the newest content-bearing row, or inserts
6. on an insert conflict, re-reads and appends to whichever row won

There are no locks. The unique (ticket_ref, agent_role, title) constraint
plus "insert, and fall back to update on conflict" keeps one live row per
slot even when agents submit concurrently. Appends are conditional on the
row revision they read; a stale append re-reads the row and merges again,
so earlier history is never overwritten.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog

from ..db.audit_service import StorageAttemptLog
from ..enums import AgentRole, ArtifactType, StorageOutcome
from ..primitives import utc_now
from .repository import ArtifactRecord, ArtifactRepository, InsertStatus, StoreError, UpdateStatus
from .titles import agent_role_for, canonical_title, parse_artifact_type, type_from_title
from .validation import is_empty_or_placeholder, validate_content

logger = structlog.get_logger()

HISTORY_SEPARATOR = "\n\n---\n\n"

# Conditional append attempts before giving up with a retryable error.
MAX_APPEND_ATTEMPTS = 5


def append_history(existing: str, addition: str, at: Optional[datetime] = None) -> str:
    """Append ``addition`` to ``existing`` behind a timestamped Update marker.

    A blank existing body is replaced outright.
    """
    if not existing or not existing.strip():
        return addition
    stamp = (at or utc_now()).isoformat()
    return f"{existing.strip()}{HISTORY_SEPARATOR}**Update ({stamp}):**\n\n{addition}"


class StoreOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UPDATED_AFTER_CONFLICT = "updated_after_conflict"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class StoreRequest:
    """One artifact submission.

    ``agent_role`` defaults to the role that produces ``artifact_type`` and
    ``display_id`` (used in the canonical title) defaults to ``ticket_ref``.
    """

    ticket_ref: str
    artifact_type: Union[str, ArtifactType]
    body: str
    repo_ref: str = ""
    agent_role: Union[str, AgentRole, None] = None
    title: Optional[str] = None
    display_id: Optional[str] = None
    endpoint: str = "store"


@dataclass(frozen=True)
class ArtifactStoredEvent:
    """Published after a successful store; consumed by the embedding queue."""

    artifact_id: str
    ticket_ref: str
    repo_ref: str
    agent_role: str
    artifact_type: ArtifactType
    title: str
    body: str
    action: str


@dataclass
class StoreResult:
    """Tagged outcome of ``ArtifactStore.store``."""

    outcome: StoreOutcome
    artifact_id: Optional[str] = None
    cleaned_up_duplicates: int = 0
    race_handled: bool = False
    error: Optional[str] = None
    validation_reason: Optional[str] = None
    validation_code: Optional[str] = None
    retryable: bool = False
    event: Optional[ArtifactStoredEvent] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (
            StoreOutcome.INSERTED,
            StoreOutcome.UPDATED,
            StoreOutcome.UPDATED_AFTER_CONFLICT,
        )

    @property
    def action(self) -> Optional[str]:
        if self.outcome is StoreOutcome.INSERTED:
            return "inserted"
        if self.ok:
            return "updated"
        return None

    def to_response(self) -> Dict[str, Any]:
        """Render the camelCase JSON contract."""
        if self.ok:
            return {
                "artifactId": self.artifact_id,
                "action": self.action,
                "cleanedUpDuplicates": self.cleaned_up_duplicates,
                "raceHandled": self.race_handled,
            }
        response: Dict[str, Any] = {"error": self.error}
        if self.outcome is StoreOutcome.REJECTED:
            response["validationFailed"] = True
            if self.validation_reason:
                response["validationReason"] = self.validation_reason
        return response


@dataclass
class CleanupReport:
    """Result of ``ArtifactStore.cleanup_duplicates``."""

    ticket_ref: str
    deleted: List[str] = field(default_factory=list)
    retitled: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticketRef": self.ticket_ref,
            "deleted": self.deleted,
            "retitled": self.retitled,
            "kept": self.kept,
        }


def _partition(
    records: List[ArtifactRecord], artifact_type: ArtifactType
) -> Tuple[List[ArtifactRecord], List[ArtifactRecord]]:
    """Split (newest-first) records into content-bearing and empty/placeholder."""
    content, empty = [], []
    for record in records:
        if is_empty_or_placeholder(record.body, record.title, artifact_type):
            empty.append(record)
        else:
            content.append(record)
    return content, empty


class ArtifactStore:
    """Race-safe upsert of artifacts by canonical identity.

    Usage:
        store = ArtifactStore(SqlArtifactRepository(db), StorageAttemptLog(db))
        result = store.store(StoreRequest(ticket_ref="0121", artifact_type="plan", body="..."))
    """

    def __init__(self, repository: ArtifactRepository, attempts: Optional[StorageAttemptLog] = None):
        self.repository = repository
        self.attempts = attempts

    def store(self, request: StoreRequest) -> StoreResult:
        """Validate and upsert one artifact.

        Returns:
            StoreResult; never raises for validation, conflict or store failures
        """
        raw_type = getattr(request.artifact_type, "value", request.artifact_type)
        raw_role = getattr(request.agent_role, "value", request.agent_role)
        log = logger.bind(ticket_ref=request.ticket_ref, role=raw_role, artifact_type=raw_type)

        artifact_type = parse_artifact_type(request.artifact_type)
        if artifact_type is None:
            return self._reject(request, log, f"Unknown artifact type: {raw_type!r}", "UNKNOWN_TYPE")

        if request.title:
            title_type = type_from_title(request.title)
            if title_type is not None and title_type is not artifact_type:
                return self._reject(
                    request,
                    log,
                    f"Title {request.title!r} resolves to {title_type.value!r}, not {artifact_type.value!r}",
                    "TYPE_MISMATCH",
                )

        try:
            role = AgentRole(request.agent_role) if request.agent_role else agent_role_for(artifact_type)
        except ValueError:
            return self._reject(request, log, f"Unknown agent role: {raw_role!r}", "UNKNOWN_ROLE")
        log = log.bind(role=role.value)

        title = canonical_title(artifact_type, request.display_id or request.ticket_ref)

        validation = validate_content(request.body, title, artifact_type)
        if not validation.valid:
            return self._reject(request, log, validation.reason, validation.code)

        try:
            result = self._upsert(request, artifact_type, role, title, log)
        except StoreError as exc:
            log.error("artifact_store_failed", code=exc.code, error=exc.message)
            result = StoreResult(
                outcome=StoreOutcome.FAILED,
                error=exc.message,
                retryable=exc.retryable,
            )

        if result.ok:
            result.event = ArtifactStoredEvent(
                artifact_id=result.artifact_id,
                ticket_ref=request.ticket_ref,
                repo_ref=request.repo_ref or "",
                agent_role=role.value,
                artifact_type=artifact_type,
                title=title,
                body=request.body,
                action=result.action,
            )
            log.info(
                "artifact_stored",
                artifact_id=result.artifact_id,
                outcome=result.outcome.value,
                cleaned_up=result.cleaned_up_duplicates,
                race_handled=result.race_handled,
            )
            self._record(request, role.value, StorageOutcome.STORED, artifact_id=result.artifact_id)
        else:
            self._record(request, role.value, StorageOutcome.FAILED, error_message=result.error)
        return result

    def _upsert(
        self,
        request: StoreRequest,
        artifact_type: ArtifactType,
        role: AgentRole,
        title: str,
        log,
    ) -> StoreResult:
        existing = self.repository.find_by_canonical_identity(request.ticket_ref, role, artifact_type)
        content, empty = _partition(existing, artifact_type)

        cleaned_up = self._delete_best_effort([r.artifact_id for r in empty], log, "empty")

        if content:
            target, duplicates = content[0], content[1:]
            cleaned_up += self._delete_best_effort([r.artifact_id for r in duplicates], log, "duplicate")
            updated = self._append(target, title, request.body, log)
            if updated is not None:
                return StoreResult(
                    outcome=StoreOutcome.UPDATED,
                    artifact_id=updated.artifact_id,
                    cleaned_up_duplicates=cleaned_up,
                )
            # Target vanished between read and write; fall through to insert.
            log.warning("artifact_update_target_missing", artifact_id=target.artifact_id)

        inserted = self.repository.insert_artifact(
            request.ticket_ref, request.repo_ref, role, title, request.body
        )
        if inserted.status is InsertStatus.INSERTED:
            return StoreResult(
                outcome=StoreOutcome.INSERTED,
                artifact_id=inserted.artifact_id,
                cleaned_up_duplicates=cleaned_up,
            )
        if inserted.status is InsertStatus.FAILED:
            raise StoreError("INSERT_FAILED", f"Failed to insert artifact: {inserted.error}", inserted.retryable)

        log.info("artifact_insert_conflict", error=inserted.error)
        return self._resolve_conflict(request, artifact_type, role, title, cleaned_up, log)

    def _resolve_conflict(
        self,
        request: StoreRequest,
        artifact_type: ArtifactType,
        role: AgentRole,
        title: str,
        cleaned_up: int,
        log,
    ) -> StoreResult:
        """Another writer inserted first: append to the row that won."""
        winners = self.repository.find_by_canonical_identity(request.ticket_ref, role, artifact_type)
        # Prefer the row holding the canonical title; it is the one we collided with.
        winners.sort(key=lambda r: r.title != title)
        for winner in winners:
            updated = self._append(winner, title, request.body, log)
            if updated is not None:
                log.info("artifact_race_handled", artifact_id=updated.artifact_id)
                return StoreResult(
                    outcome=StoreOutcome.UPDATED_AFTER_CONFLICT,
                    artifact_id=updated.artifact_id,
                    cleaned_up_duplicates=cleaned_up,
                    race_handled=True,
                )
        raise StoreError(
            "CONFLICT_UNRESOLVED",
            "Insert conflicted but no existing artifact was found to update",
            retryable=True,
        )

    def _append(self, target: ArtifactRecord, title: str, addition: str, log) -> Optional[ArtifactRecord]:
        """Append to ``target`` with a revision-guarded write.

        A concurrent writer that got in first leaves the row at a newer
        revision; the merge is then redone on top of what it wrote.

        Returns:
            The updated record, or None if the artifact no longer exists

        Raises:
            StoreError: if the row keeps moving for MAX_APPEND_ATTEMPTS tries
        """
        current = target
        for attempt in range(1, MAX_APPEND_ATTEMPTS + 1):
            result = self.repository.update_artifact(
                current.artifact_id,
                title,
                append_history(current.body, addition),
                expected_revision=current.revision,
            )
            if result.status is UpdateStatus.UPDATED:
                return result.record
            if result.status is UpdateStatus.MISSING:
                return None
            log.info(
                "artifact_update_stale",
                artifact_id=current.artifact_id,
                read_revision=current.revision,
                attempt=attempt,
            )
            current = result.record
        raise StoreError(
            "UPDATE_CONTENDED",
            f"Artifact {target.artifact_id} kept changing; append not applied",
            retryable=True,
        )

    def _delete_best_effort(self, artifact_ids: List[str], log, reason: str) -> int:
        if not artifact_ids:
            return 0
        try:
            removed = self.repository.delete_by_ids(artifact_ids)
        except StoreError as exc:
            log.warning("artifact_cleanup_failed", reason=reason, artifact_ids=artifact_ids, error=exc.message)
            return 0
        log.info("artifact_cleanup", reason=reason, removed=removed)
        return removed

    def _reject(self, request: StoreRequest, log, reason: str, code: Optional[str]) -> StoreResult:
        log.info("artifact_rejected", code=code, reason=reason)
        raw_role = getattr(request.agent_role, "value", request.agent_role)
        self._record(
            request,
            raw_role or "unknown",
            StorageOutcome.REJECTED,
            validation_reason=reason,
        )
        return StoreResult(
            outcome=StoreOutcome.REJECTED,
            error=reason,
            validation_reason=reason,
            validation_code=code,
        )

    def _record(self, request: StoreRequest, role: str, outcome: StorageOutcome, **details: Any) -> None:
        if self.attempts is None:
            return
        self.attempts.record(
            ticket_ref=request.ticket_ref,
            artifact_type=str(getattr(request.artifact_type, "value", request.artifact_type)),
            agent_role=role,
            outcome=outcome,
            repo_ref=request.repo_ref,
            endpoint=request.endpoint,
            **details,
        )

    def cleanup_duplicates(self, ticket_ref: str, display_id: Optional[str] = None) -> CleanupReport:
        """Collapse every (role, type) slot on a ticket to one live artifact.

        Empty/placeholder rows and older duplicates are deleted; the newest
        content-bearing row is kept and its title normalised.

        Raises:
            StoreError: if the ticket's artifacts cannot be read or changed
        """
        log = logger.bind(ticket_ref=ticket_ref)
        report = CleanupReport(ticket_ref=ticket_ref)

        groups: Dict[Tuple[str, ArtifactType], List[ArtifactRecord]] = defaultdict(list)
        for record in self.repository.list_for_ticket(ticket_ref):
            artifact_type = record.canonical_type
            if artifact_type is not None:
                groups[(record.agent_role, artifact_type)].append(record)

        for (role, artifact_type), records in groups.items():
            content, empty = _partition(records, artifact_type)
            doomed = [r.artifact_id for r in empty] + [r.artifact_id for r in content[1:]]
            if doomed:
                self.repository.delete_by_ids(doomed)
                report.deleted.extend(doomed)
            if not content:
                continue
            keeper = content[0]
            report.kept.append(keeper.artifact_id)
            title = canonical_title(artifact_type, display_id or ticket_ref)
            if keeper.title != title:
                self.repository.update_artifact(keeper.artifact_id, title)
                report.retitled.append(keeper.artifact_id)

        log.info(
            "artifact_duplicates_cleaned",
            deleted=len(report.deleted),
            retitled=len(report.retitled),
            kept=len(report.kept),
        )
        return report
