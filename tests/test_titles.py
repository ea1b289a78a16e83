"""Tests for canonical artifact identity."""

import pytest

from agent_artifacts.artifacts.titles import (
    MISSING_ARTIFACT_TITLE,
    agent_role_for,
    canonical_title,
    parse_artifact_type,
    type_from_title,
)
from agent_artifacts.enums import AgentRole, ArtifactType


class TestTypeFromTitle:
    @pytest.mark.parametrize(
        "title",
        [
            "Plan for ticket 0121",
            "plan for ticket HAL-0121",
            "PLAN FOR TICKET 121 (rev 2)",
            "  Plan   for  ticket 0121",
        ],
    )
    def test_plan_variants_resolve_to_plan(self, title):
        assert type_from_title(title) is ArtifactType.PLAN

    def test_multi_word_labels(self):
        assert type_from_title("Changed Files for ticket 0121") is ArtifactType.CHANGED_FILES
        assert type_from_title("Instructions Used for ticket 7") is ArtifactType.INSTRUCTIONS_USED
        assert type_from_title("pm review for ticket 7") is ArtifactType.PM_REVIEW
        assert type_from_title("QA Report for ticket 7") is ArtifactType.QA_REPORT

    def test_git_diff_spellings(self):
        assert type_from_title("Git diff for ticket 7") is ArtifactType.GIT_DIFF
        assert type_from_title("git-diff for ticket 7") is ArtifactType.GIT_DIFF

    def test_missing_artifact_explanation_has_no_ticket_suffix(self):
        assert type_from_title("Missing Artifact Explanation") is ArtifactType.MISSING_ARTIFACT_EXPLANATION

    @pytest.mark.parametrize("title", [None, "", "Release notes", "Plan", "Planning for ticket 7"])
    def test_unrecognised_titles(self, title):
        assert type_from_title(title) is None

    def test_every_canonical_title_resolves_back(self):
        for artifact_type in ArtifactType:
            assert type_from_title(canonical_title(artifact_type, "0121")) is artifact_type


class TestCanonicalTitle:
    def test_plan(self):
        assert canonical_title(ArtifactType.PLAN, "0121") == "Plan for ticket 0121"

    def test_accepts_string_value(self):
        assert canonical_title("changed-files", "HAL-7") == "Changed Files for ticket HAL-7"

    def test_display_id_is_trimmed(self):
        assert canonical_title(ArtifactType.WORKLOG, "  0121 ") == "Worklog for ticket 0121"

    def test_missing_artifact_explanation(self):
        assert canonical_title(ArtifactType.MISSING_ARTIFACT_EXPLANATION, "0121") == MISSING_ARTIFACT_TITLE

    def test_unknown_type_raises(self):
        with pytest.raises(ValueError):
            canonical_title("release-notes", "0121")

    def test_same_type_different_spellings_converge(self):
        a = canonical_title(type_from_title("plan for ticket HAL-0121"), "0121")
        b = canonical_title(type_from_title("PLAN FOR TICKET 121 (rev 2)"), "0121")
        assert a == b == "Plan for ticket 0121"


class TestParsingAndRoles:
    def test_parse_artifact_type(self):
        assert parse_artifact_type("QA-REPORT") is ArtifactType.QA_REPORT
        assert parse_artifact_type(ArtifactType.PLAN) is ArtifactType.PLAN
        assert parse_artifact_type(None) is None
        assert parse_artifact_type("nonsense") is None

    def test_agent_role_for(self):
        assert agent_role_for(ArtifactType.QA_REPORT) is AgentRole.QA
        assert agent_role_for(ArtifactType.PLAN) is AgentRole.IMPLEMENTATION
