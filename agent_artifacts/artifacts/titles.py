"""
Canonical artifact identity.

Agents phrase titles inconsistently ("Plan for ticket 0121", "plan for ticket
HAL-0121", "PLAN FOR TICKET 121 (rev 2)"). Everything that needs to compare
artifacts goes through the closed ArtifactType enum instead of the raw title:

    type_from_title("Worklog for ticket HAL-0121")  -> ArtifactType.WORKLOG
    canonical_title(ArtifactType.WORKLOG, "0121")  -> "Worklog for ticket 0121"

Two titles that resolve to the same type always converge on one stored title.
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple, Union

from ..enums import AgentRole, ArtifactType

TICKET_SUFFIX = "for ticket"

# Display label used to build canonical titles.
TITLE_LABELS: Dict[ArtifactType, str] = {
    ArtifactType.PLAN: "Plan",
    ArtifactType.WORKLOG: "Worklog",
    ArtifactType.CHANGED_FILES: "Changed Files",
    ArtifactType.DECISIONS: "Decisions",
    ArtifactType.VERIFICATION: "Verification",
    ArtifactType.PM_REVIEW: "PM Review",
    ArtifactType.GIT_DIFF: "Git diff",
    ArtifactType.INSTRUCTIONS_USED: "Instructions Used",
    ArtifactType.QA_REPORT: "QA report",
    ArtifactType.IMAGE: "Image",
}

MISSING_ARTIFACT_TITLE = "Missing Artifact Explanation"

# Recognised lower-case prefixes. Checked in order; longer spellings first.
_TITLE_PREFIXES: Tuple[Tuple[str, ArtifactType], ...] = (
    ("missing artifact explanation", ArtifactType.MISSING_ARTIFACT_EXPLANATION),
    ("changed files for ticket", ArtifactType.CHANGED_FILES),
    ("instructions used for ticket", ArtifactType.INSTRUCTIONS_USED),
    ("pm review for ticket", ArtifactType.PM_REVIEW),
    ("qa report for ticket", ArtifactType.QA_REPORT),
    ("git diff for ticket", ArtifactType.GIT_DIFF),
    ("git-diff for ticket", ArtifactType.GIT_DIFF),
    ("verification for ticket", ArtifactType.VERIFICATION),
    ("decisions for ticket", ArtifactType.DECISIONS),
    ("worklog for ticket", ArtifactType.WORKLOG),
    ("image for ticket", ArtifactType.IMAGE),
    ("plan for ticket", ArtifactType.PLAN),
)


def type_from_title(title: Optional[str]) -> Optional[ArtifactType]:
    """Resolve a free-form title to its canonical type, or None if unrecognised."""
    if not title:
        return None
    normalized = " ".join(title.lower().split())
    for prefix, artifact_type in _TITLE_PREFIXES:
        if normalized.startswith(prefix):
            return artifact_type
    return None


def parse_artifact_type(value: Union[str, ArtifactType, None]) -> Optional[ArtifactType]:
    """Accept an enum member, its value, or None. Unknown values return None."""
    if value is None or isinstance(value, ArtifactType):
        return value
    try:
        return ArtifactType(value.strip().lower())
    except ValueError:
        return None


def canonical_title(artifact_type: Union[str, ArtifactType], display_id: str) -> str:
    """Render the single canonical title for a type on a ticket.

    Raises:
        ValueError: if the type is not part of the closed enumeration.
    """
    resolved = parse_artifact_type(artifact_type)
    if resolved is None:
        raise ValueError(f"Unknown artifact type: {artifact_type!r}")
    if resolved is ArtifactType.MISSING_ARTIFACT_EXPLANATION:
        return MISSING_ARTIFACT_TITLE
    return f"{TITLE_LABELS[resolved]} {TICKET_SUFFIX} {display_id.strip()}"


def agent_role_for(artifact_type: ArtifactType) -> AgentRole:
    """Default agent role that produces a given artifact type."""
    if artifact_type is ArtifactType.QA_REPORT:
        return AgentRole.QA
    return AgentRole.IMPLEMENTATION
