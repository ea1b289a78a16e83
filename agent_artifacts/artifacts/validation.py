"""
Content validation for artifact bodies.

This module is the single source of truth for deciding whether a body is
substantive or an empty/placeholder submission. It is pure: no DB access, no
request objects, no shared mutable state. Every storage path calls
``validate_content`` before persisting anything.

Rules (each implemented by an independent ``_check_*`` helper):
- body must not be empty or whitespace-only
- headings are dropped and bullet / numbered / checkbox markers are stripped;
  something must remain
- content must not open with a known placeholder (TODO, TBD, placeholder,
  coming soon, not yet, to be determined)
- changed-files: a "(none)" / "(No files changed...)" phrase is a placeholder
  even when padded; an affirmative "No files changed." needs at least 50
  characters of explanation
- content must not merely repeat the title (at least 50 characters besides it)
- stripped content must reach the length floor: 30 characters, 100 for QA
  reports
- verification: checklist lines alone are not enough, some prose is required

QA reports use the higher floor and keep tables and code blocks as content.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Union

from ..enums import ArtifactType
from .titles import parse_artifact_type, type_from_title

# Length floors (characters of stripped content)
MIN_CONTENT_CHARS = 30
MIN_QA_CONTENT_CHARS = 100
MIN_TITLE_COLLISION_CHARS = 50
MIN_NO_FILES_EXPLANATION_CHARS = 50

PLACEHOLDER_OPENERS = (
    "todo",
    "tbd",
    "placeholder",
    "coming soon",
    "not yet",
    "to be determined",
)

_HEADING_RE = re.compile(r"^#{1,6}(\s+.*)?$")
_LIST_MARKER_RE = re.compile(r"^(?:[-*+]|\d+[.)])\s+(?:\[[ xX]\]\s*)?")
_CHECKLIST_RE = re.compile(r"^[-*+]\s+\[[ xX]\](\s+.*)?$")
_PLACEHOLDER_RE = re.compile(
    r"^(?:" + "|".join(re.escape(p) for p in PLACEHOLDER_OPENERS) + r")\b",
    re.IGNORECASE,
)
_NO_FILES_PLACEHOLDER_RE = re.compile(r"^\(\s*(?:none|no files changed[^)]*)\s*\)", re.IGNORECASE)
_NO_FILES_AFFIRMATIVE_RE = re.compile(r"^no files changed\.", re.IGNORECASE)


class ContentRejected(Exception):
    """
    Raised by a validation rule when a body is not substantive.

    Attributes:
        code: Stable error code for programmatic handling
        reason: Human-readable explanation returned to the caller
    """

    def __init__(self, code: str, reason: str):
        self.code = code
        self.reason = reason
        super().__init__(f"{code}: {reason}")

    def to_dict(self) -> dict:
        """Convert to dict for JSON serialization."""
        return {
            "error": "validation_failed",
            "code": self.code,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of ``validate_content``; ``reason`` is always set when invalid."""

    valid: bool
    reason: Optional[str] = None
    code: Optional[str] = None


def strip_structure(body: str) -> str:
    """Drop heading lines and list/checkbox markers, keep the item text."""
    kept: List[str] = []
    for raw_line in body.splitlines():
        line = raw_line.strip()
        if not line or _HEADING_RE.match(line):
            continue
        line = _LIST_MARKER_RE.sub("", line).strip()
        if line:
            kept.append(line)
    return "\n".join(kept)


def _check_not_empty(body: Optional[str]) -> None:
    if not body or not body.strip():
        raise ContentRejected(
            code="EMPTY_BODY",
            reason="Artifact body is empty. Artifacts must contain substantive content, not just a title.",
        )


def _check_has_content(stripped: str) -> None:
    if not stripped:
        raise ContentRejected(
            code="NO_CONTENT",
            reason="Artifact body contains only headings or list markers. Artifacts must include actual content.",
        )


def _check_placeholder_opener(stripped: str) -> None:
    if _PLACEHOLDER_RE.match(stripped):
        raise ContentRejected(
            code="PLACEHOLDER",
            reason="Artifact body appears to contain only placeholder text. Artifacts must include actual content.",
        )


def _check_changed_files(stripped: str) -> None:
    if _NO_FILES_PLACEHOLDER_RE.match(stripped):
        raise ContentRejected(
            code="PLACEHOLDER",
            reason="Changed Files artifact must list actual file changes, not placeholder text.",
        )
    match = _NO_FILES_AFFIRMATIVE_RE.match(stripped)
    if match:
        explanation = stripped[match.end():].strip()
        if len(explanation) < MIN_NO_FILES_EXPLANATION_CHARS:
            raise ContentRejected(
                code="NO_FILES_EXPLANATION_TOO_SHORT",
                reason=(
                    '"No files changed." must be followed by at least '
                    f"{MIN_NO_FILES_EXPLANATION_CHARS} characters explaining why."
                ),
            )


def _check_not_title_only(stripped: str, title: Optional[str]) -> None:
    if not title or not title.strip():
        return
    needle = title.strip().casefold()
    haystack = stripped.casefold()
    if needle not in haystack:
        return
    remainder = haystack.replace(needle, "").strip(" \n\t:-")
    if len(remainder) < MIN_TITLE_COLLISION_CHARS:
        raise ContentRejected(
            code="TITLE_ONLY",
            reason=(
                "Artifact body only repeats the title. Artifacts must contain at least "
                f"{MIN_TITLE_COLLISION_CHARS} characters of content besides the title."
            ),
        )


def _check_min_length(stripped: str, floor: int, label: str) -> None:
    length = len(stripped)
    if length < floor:
        raise ContentRejected(
            code="TOO_SHORT",
            reason=(
                f"Artifact body is too short ({length} characters). "
                f"{label} must contain at least {floor} characters."
            ),
        )


def _check_verification_prose(body: str) -> None:
    prose = []
    for raw_line in body.splitlines():
        line = raw_line.strip()
        if not line or _HEADING_RE.match(line) or _CHECKLIST_RE.match(line):
            continue
        prose.append(line)
    if not prose:
        raise ContentRejected(
            code="CHECKLIST_ONLY",
            reason="Verification artifact must contain actual verification notes, not only checklist items.",
        )


def validate_content(
    body: Optional[str],
    title: Optional[str] = None,
    kind: Union[str, ArtifactType, None] = None,
) -> ValidationResult:
    """
    Classify a candidate body as substantive or empty/placeholder.

    Args:
        body: Markdown body submitted by an agent
        title: Title it was submitted under (used for title-repeat detection)
        kind: Artifact type; derived from ``title`` when omitted

    Returns:
        ValidationResult with ``valid`` and, when invalid, ``reason``/``code``
    """
    artifact_type = parse_artifact_type(kind) or type_from_title(title)
    is_qa = artifact_type is ArtifactType.QA_REPORT

    try:
        _check_not_empty(body)
        stripped = strip_structure(body)
        _check_has_content(stripped)
        _check_placeholder_opener(stripped)
        if artifact_type is ArtifactType.CHANGED_FILES:
            _check_changed_files(stripped)
        _check_not_title_only(stripped, title)
        if is_qa:
            _check_min_length(stripped, MIN_QA_CONTENT_CHARS, "QA reports")
        else:
            _check_min_length(stripped, MIN_CONTENT_CHARS, "Artifacts")
        if artifact_type is ArtifactType.VERIFICATION:
            _check_verification_prose(body)
    except ContentRejected as exc:
        return ValidationResult(valid=False, reason=exc.reason, code=exc.code)

    return ValidationResult(valid=True)


def is_empty_or_placeholder(
    body: Optional[str],
    title: Optional[str] = None,
    kind: Union[str, ArtifactType, None] = None,
) -> bool:
    """True when a stored body would be rejected today (used for duplicate cleanup)."""
    return not validate_content(body, title, kind).valid
