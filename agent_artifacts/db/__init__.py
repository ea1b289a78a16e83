"""
Database package for Agent Artifacts.
"""

from .base import Base, get_db, get_engine, get_session_factory, get_session_local
from .models import ArtifactChunkModel, ArtifactModel, EmbeddingJobModel

__all__ = [
    "Base",
    "get_db",
    "get_engine",
    "get_session_factory",
    "get_session_local",
    "ArtifactModel",
    "EmbeddingJobModel",
    "ArtifactChunkModel",
]
