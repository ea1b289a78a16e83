"""Tests for the command line interface."""

import pytest
from typer.testing import CliRunner

from agent_artifacts import cli
from agent_artifacts.artifacts.repository import SqlArtifactRepository
from agent_artifacts.artifacts.storage import ArtifactStore, StoreRequest

runner = CliRunner()


@pytest.fixture
def cli_session(monkeypatch, session_factory):
    monkeypatch.setattr(cli, "_session", lambda: session_factory())
    return session_factory


def store_plan(session_factory, body="# Plan\n\nAdd jittered retries to the embedding worker loop."):
    db = session_factory()
    try:
        return ArtifactStore(SqlArtifactRepository(db)).store(
            StoreRequest(ticket_ref="HAL-0121", artifact_type="plan", body=body, display_id="0121")
        )
    finally:
        db.close()


def test_jobs_shows_counts(cli_session):
    result = runner.invoke(cli.app, ["jobs"])
    assert result.exit_code == 0
    assert "Embedding Queue" in result.output
    assert "queued" in result.output


def test_requeue_stale(cli_session):
    result = runner.invoke(cli.app, ["requeue-stale", "60"])
    assert result.exit_code == 0
    assert "Requeued 0 stale job(s)" in result.output


def test_cleanup(cli_session):
    store_plan(cli_session)

    result = runner.invoke(cli.app, ["cleanup", "HAL-0121", "--display-id", "0121"])

    assert result.exit_code == 0
    assert "kept 1, deleted 0, retitled 0" in result.output


def test_search_without_query(cli_session):
    store_plan(cli_session)

    result = runner.invoke(cli.app, ["search", "--provider", "stub"])

    assert result.exit_code == 0
    assert "Considered 1, selected 1" in result.output
