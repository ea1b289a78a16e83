"""
Agent Artifacts

Canonical artifact store, content-addressed embedding pipeline and hybrid
retrieval for AI-agent ticket workflows.
"""

import importlib.metadata

__version__ = importlib.metadata.version("agent-artifacts")

from .artifacts.storage import ArtifactStore, StoreRequest, StoreResult
from .artifacts.titles import canonical_title, type_from_title
from .artifacts.validation import ValidationResult, validate_content
from .enums import AgentRole, ArtifactType, JobStatus

__all__ = [
    "AgentRole",
    "ArtifactStore",
    "ArtifactType",
    "JobStatus",
    "StoreRequest",
    "StoreResult",
    "ValidationResult",
    "canonical_title",
    "type_from_title",
    "validate_content",
]
