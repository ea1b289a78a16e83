"""
Request models for the artifact HTTP surface.

The JSON contract is camelCase; Python attributes stay snake_case.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, conint, constr
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StoreArtifactRequest(CamelModel):
    """Body of ``POST /artifacts``."""

    ticket_ref: constr(min_length=1, max_length=128)
    repo_ref: constr(max_length=256) = ""
    role: Optional[str] = None
    type: constr(min_length=1, max_length=64)
    title: Optional[constr(max_length=512)] = None
    # Validated by the content validator, not here, so empty bodies get a reason.
    body: str = ""
    display_id: Optional[constr(min_length=1, max_length=128)] = None


class SearchArtifactsRequest(CamelModel):
    """Body of ``POST /artifacts/search``."""

    query: Optional[str] = None
    repo_filter: Optional[str] = None
    ticket_filter: Optional[str] = None
    recency_days: Optional[conint(ge=1)] = None
    limit: Optional[conint(ge=1, le=200)] = None
    deterministic: bool = True


class ProcessEmbeddingsRequest(CamelModel):
    """Body of ``POST /embeddings/process``."""

    limit: Optional[conint(ge=1)] = None


class RequeueStaleRequest(CamelModel):
    """Body of ``POST /embeddings/jobs/requeue-stale``."""

    older_than_seconds: conint(ge=1) = Field(..., description="Requeue jobs claimed longer ago than this")
