"""Test configuration and fixtures."""

from typing import Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from agent_artifacts.db import audit_models, models  # noqa: F401
from agent_artifacts.db.base import Base
from agent_artifacts.embeddings.providers import (
    DistillationError,
    DistilledArtifact,
    Distiller,
    Embedder,
    EmbeddingError,
)


class FakeDistiller(Distiller):
    """Returns a fixed distillation (or raises) and records its calls."""

    def __init__(self, distilled: Optional[DistilledArtifact] = None, error: Optional[str] = None):
        self.distilled = distilled
        self.error = error
        self.calls: List[tuple] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "fake"

    def distill(self, body: str, title: Optional[str] = None) -> DistilledArtifact:
        self.calls.append((body, title))
        if self.error:
            raise DistillationError(self.error)
        if self.distilled is not None:
            return self.distilled
        return DistilledArtifact(
            summary=f"Summary of {title or 'artifact'}",
            hard_facts=["The worker claims jobs before embedding."],
            keywords=["embedding"],
        )

    def close(self) -> None:
        self.closed = True


class FakeEmbedder(Embedder):
    """Looks vectors up by exact text; records every call."""

    def __init__(
        self,
        vectors: Optional[Dict[str, List[float]]] = None,
        default: Optional[List[float]] = None,
        error: Optional[str] = None,
        dims: int = 2,
    ):
        self.vectors = vectors or {}
        self.default = default if default is not None else [1.0] + [0.0] * (dims - 1)
        self.error = error
        self.dims = dims
        self.calls: List[str] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "fake"

    @property
    def dimensions(self) -> int:
        return self.dims

    def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.error:
            raise EmbeddingError(self.error)
        return list(self.vectors.get(text, self.default))

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def engine():
    """Fresh in-memory database shared by every session of one test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fake_distiller() -> FakeDistiller:
    return FakeDistiller()


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def make_distiller():
    """Build a FakeDistiller with a given result or error."""
    return FakeDistiller


@pytest.fixture
def make_embedder():
    """Build a FakeEmbedder with given vectors or error."""
    return FakeEmbedder
