"""
Canonical enums.

These enums define the allowed values for artifact, job and chunk fields.
Callers MUST map free-form input into these canonical sets.
"""

from enum import Enum


class AgentRole(str, Enum):
    """Which agent produced an artifact."""

    IMPLEMENTATION = "implementation"
    QA = "qa"


class ArtifactType(str, Enum):
    """Closed set of artifact kinds, derived from titles."""

    PLAN = "plan"
    WORKLOG = "worklog"
    CHANGED_FILES = "changed-files"
    DECISIONS = "decisions"
    VERIFICATION = "verification"
    PM_REVIEW = "pm-review"
    GIT_DIFF = "git-diff"
    INSTRUCTIONS_USED = "instructions-used"
    QA_REPORT = "qa-report"
    IMAGE = "image"
    MISSING_ARTIFACT_EXPLANATION = "missing-artifact-explanation"


class JobStatus(str, Enum):
    """Embedding job lifecycle.

    queued -> processing -> succeeded | failed. Terminal states are final.
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = (JobStatus.QUEUED.value, JobStatus.PROCESSING.value)
TERMINAL_JOB_STATUSES = (JobStatus.SUCCEEDED.value, JobStatus.FAILED.value)


class AtomType(str, Enum):
    """Kinds of distilled knowledge atoms."""

    SUMMARY = "summary"
    HARD_FACT = "hard_fact"
    KEYWORD = "keyword"


class StorageOutcome(str, Enum):
    """Outcome recorded for every storage attempt."""

    STORED = "stored"
    REJECTED = "rejected by validation"
    FAILED = "request failed"
