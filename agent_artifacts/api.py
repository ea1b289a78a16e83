"""
FastAPI application for Agent Artifacts.
"""

from __future__ import annotations

import importlib.metadata
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .artifacts.repository import StoreError
from .artifacts.routes import close_providers, get_embedder_dependency
from .artifacts.routes import router as artifacts_router
from .artifacts.schemas import ProcessEmbeddingsRequest, RequeueStaleRequest
from .config import get_settings
from .db.base import get_db, init_database
from .embeddings.providers import DistillationError, Embedder, EmbeddingError
from .embeddings.queue import EmbeddingQueue
from .embeddings.worker import EmbeddingWorker
from .enums import JobStatus
from .retrieval.search import SearchError

logger = structlog.get_logger()

settings = get_settings()


def configure_logging() -> None:
    """Render structlog events as JSON or as console lines, per LOG_FORMAT."""
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    configure_logging()
    logger.info("Starting Agent Artifacts", environment=settings.environment)

    try:
        await init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Failed to start application: {e}")
        raise

    yield

    close_providers()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    description="Canonical artifact store, embedding pipeline and hybrid retrieval for agent tickets",
    version=importlib.metadata.version("agent-artifacts"),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(artifacts_router)


# Error mapping


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.error("store_error", code=exc.code, error=exc.message)
    return JSONResponse(status_code=503, content=exc.to_dict())


@app.exception_handler(DistillationError)
async def distillation_error_handler(request: Request, exc: DistillationError) -> JSONResponse:
    return JSONResponse(status_code=502, content=exc.to_dict())


@app.exception_handler(EmbeddingError)
async def embedding_error_handler(request: Request, exc: EmbeddingError) -> JSONResponse:
    return JSONResponse(status_code=502, content=exc.to_dict())


@app.exception_handler(SearchError)
async def search_error_handler(request: Request, exc: SearchError) -> JSONResponse:
    return JSONResponse(status_code=502, content=exc.to_dict())


# Health and Info Endpoints


@app.get("/health", tags=["system"])
async def health() -> dict:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.get("/version", tags=["system"])
def version() -> dict[str, str]:
    """Return the version of the application."""
    return {
        "version": importlib.metadata.version("agent-artifacts"),
        "environment": settings.environment,
    }


# Embedding Endpoints


@app.post("/embeddings/process", tags=["embeddings"])
def process_embeddings(
    request: Optional[ProcessEmbeddingsRequest] = None,
    db: Session = Depends(get_db),
    embedder: Optional[Embedder] = Depends(get_embedder_dependency),
) -> Dict[str, Any]:
    """Process one batch of queued embedding jobs in-process."""
    if embedder is None:
        raise HTTPException(status_code=503, detail="Embedding provider not configured")
    worker = EmbeddingWorker(db, embedder, worker_id="api")
    report = worker.process_batch(request.limit if request else None)
    return report.to_dict()


@app.get("/embeddings/jobs", tags=["embeddings"])
async def list_embedding_jobs(
    status: Optional[JobStatus] = None,
    artifact_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    """List embedding jobs, newest first."""
    jobs = EmbeddingQueue(db).list_jobs(status=status, artifact_id=artifact_id, limit=limit, offset=offset)
    return [job.to_dict() for job in jobs]


@app.post("/embeddings/jobs/requeue-stale", tags=["embeddings"])
async def requeue_stale_jobs(
    request: RequeueStaleRequest,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Move jobs stuck in 'processing' back to 'queued'."""
    requeued = EmbeddingQueue(db).requeue_stale(request.older_than_seconds)
    return {"requeued": requeued}


@app.get("/embeddings/status", tags=["embeddings"])
async def embeddings_status(db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Job counts per status and the number of embedded chunks."""
    return EmbeddingQueue(db).status_counts()
