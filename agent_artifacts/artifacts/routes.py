"""
Artifact API Routes.

All endpoints are prefixed with /artifacts.
"""

from functools import lru_cache
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from ..db.audit_service import StorageAttemptLog
from ..db.base import get_db, get_session_factory
from ..embeddings.providers import Distiller, Embedder, get_distiller, get_embedder
from ..embeddings.queue import EmbeddingQueue, handle_artifact_stored
from ..enums import AgentRole, StorageOutcome
from ..retrieval.search import HybridSearchEngine, SearchRequest
from .repository import SqlArtifactRepository
from .schemas import SearchArtifactsRequest, StoreArtifactRequest
from .storage import ArtifactStore, StoreOutcome, StoreRequest

logger = structlog.get_logger()

router = APIRouter(prefix="/artifacts", tags=["artifacts"])


@lru_cache(maxsize=1)
def get_distiller_dependency() -> Optional[Distiller]:
    """Process-wide distiller, or None when the provider is not configured."""
    try:
        return get_distiller()
    except ValueError as e:
        logger.warning("distiller_unavailable", error=str(e))
        return None


@lru_cache(maxsize=1)
def get_embedder_dependency() -> Optional[Embedder]:
    """Process-wide embedder, or None when embeddings are disabled."""
    return get_embedder()


def close_providers() -> None:
    """Close the cached providers' HTTP clients; the next request builds new ones."""
    for dependency in (get_distiller_dependency, get_embedder_dependency):
        if dependency.cache_info().currsize:
            provider = dependency()
            if provider is not None:
                provider.close()
        dependency.cache_clear()


def _store_for(db: Session) -> ArtifactStore:
    return ArtifactStore(SqlArtifactRepository(db), StorageAttemptLog(db))


@router.post("")
async def store_artifact(
    request: StoreArtifactRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory: sessionmaker = Depends(get_session_factory),
    distiller: Optional[Distiller] = Depends(get_distiller_dependency),
):
    """
    Store an artifact under its canonical identity.

    Resubmissions append to the live artifact. Successful stores schedule
    embedding extraction in the background; the response does not wait for it.
    """
    result = _store_for(db).store(
        StoreRequest(
            ticket_ref=request.ticket_ref,
            repo_ref=request.repo_ref,
            agent_role=request.role,
            artifact_type=request.type,
            title=request.title,
            body=request.body,
            display_id=request.display_id,
            endpoint="POST /artifacts",
        )
    )

    if result.outcome is StoreOutcome.REJECTED:
        return JSONResponse(status_code=400, content=result.to_response())
    if result.outcome is StoreOutcome.FAILED:
        return JSONResponse(status_code=503, content=result.to_response())

    if distiller is not None and result.event is not None:
        background_tasks.add_task(handle_artifact_stored, result.event, session_factory, distiller)
    return result.to_response()


@router.post("/search")
def search_artifacts(
    request: SearchArtifactsRequest,
    db: Session = Depends(get_db),
    embedder: Optional[Embedder] = Depends(get_embedder_dependency),
) -> Dict[str, Any]:
    """Rank artifacts by metadata filters and query similarity."""
    engine = HybridSearchEngine(db, embedder)
    response = engine.search(
        SearchRequest(
            query=request.query,
            repo_filter=request.repo_filter,
            ticket_filter=request.ticket_filter,
            recency_days=request.recency_days,
            limit=request.limit,
            deterministic=request.deterministic,
        )
    )
    return response.to_dict()


@router.get("/attempts")
async def list_storage_attempts(
    ticket_ref: Optional[str] = Query(default=None, alias="ticketRef"),
    outcome: Optional[StorageOutcome] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    """List storage attempts, newest first."""
    attempts = StorageAttemptLog(db)
    if ticket_ref:
        rows = attempts.query_by_ticket(ticket_ref, limit=limit, offset=offset)
    else:
        rows = attempts.query_recent(outcome=outcome, limit=limit, offset=offset)
    return [row.to_dict() for row in rows]


@router.post("/tickets/{ticket_ref}/cleanup")
async def cleanup_ticket_duplicates(
    ticket_ref: str,
    display_id: Optional[str] = Query(default=None, alias="displayId"),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Collapse duplicate and placeholder artifacts on a ticket."""
    report = _store_for(db).cleanup_duplicates(ticket_ref, display_id=display_id)
    return report.to_dict()


@router.post("/{artifact_id}/embeddings")
def enqueue_artifact_embeddings(
    artifact_id: str,
    db: Session = Depends(get_db),
    distiller: Optional[Distiller] = Depends(get_distiller_dependency),
) -> Dict[str, Any]:
    """Distill an artifact now and enqueue embeddings for its new atoms."""
    if distiller is None:
        raise HTTPException(status_code=503, detail="Distillation provider not configured")
    try:
        result = EmbeddingQueue(db).enqueue_artifact(artifact_id, distiller)
    except LookupError:
        raise HTTPException(status_code=404, detail="Artifact not found")
    return result.to_dict()


@router.get("/{artifact_id}")
async def get_artifact(
    artifact_id: str,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Get an artifact by ID."""
    record = SqlArtifactRepository(db).get(artifact_id)
    if not record:
        raise HTTPException(status_code=404, detail="Artifact not found")
    return record.to_dict()


@router.get("")
async def list_artifacts(
    ticket_ref: str = Query(..., alias="ticketRef"),
    role: Optional[AgentRole] = None,
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    """List artifacts on a ticket, newest first."""
    records = SqlArtifactRepository(db).list_for_ticket(ticket_ref, agent_role=role)
    return [record.to_dict() for record in records]
