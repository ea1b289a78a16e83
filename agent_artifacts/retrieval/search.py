"""
Hybrid retrieval: metadata filters first, then vector similarity.

Metadata filters (repo, ticket, recency window) always narrow the candidate
set, with or without a query. With a query and an embedder, each candidate is
scored by the *maximum* cosine similarity of any of its chunks, so a single
highly relevant atom surfaces the whole artifact.

Deterministic mode makes output reproducible: scores are quantised to
``search_tie_epsilon`` buckets and ties within a bucket are ordered by
artifact id. Bucketing gives a total order, so the ranking never depends on
the order rows come back from the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

import numpy as np
from sqlalchemy.orm import Session

from ..config import get_settings
from ..db.models import ArtifactChunkModel, ArtifactModel
from ..embeddings.providers import Embedder
from ..primitives import as_utc, isoformat, utc_now

logger = logging.getLogger(__name__)


def tie_bucket(score: float, epsilon: float) -> int:
    """Quantise a similarity so that scores in the same bucket rank as ties."""
    return round(score / epsilon)


class SearchError(Exception):
    """The query could not be embedded."""

    code = "QUERY_EMBEDDING_FAILED"

    def __init__(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self.message = message
        self.metadata = metadata or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, "metadata": self.metadata}


@dataclass
class SearchRequest:
    query: Optional[str] = None
    repo_filter: Optional[str] = None
    ticket_filter: Optional[str] = None
    recency_days: Optional[int] = None
    limit: Optional[int] = None
    deterministic: bool = True


@dataclass
class SearchHit:
    artifact_id: str
    title: str
    created_at: Optional[str]
    similarity: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "artifactId": self.artifact_id,
            "title": self.title,
            "createdAt": self.created_at,
        }
        if self.similarity is not None:
            data["similarity"] = self.similarity
        return data


@dataclass
class SearchResponse:
    results: List[SearchHit] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [hit.to_dict() for hit in self.results],
            "metadata": self.metadata,
        }


def cosine_similarities(query: List[float], vectors: List[List[float]]) -> np.ndarray:
    """Cosine similarity of ``query`` against each row of ``vectors``.

    Rows with zero norm score 0.0.
    """
    matrix = np.asarray(vectors, dtype=np.float64)
    q = np.asarray(query, dtype=np.float64)
    if matrix.size == 0:
        return np.zeros(0)
    q_norm = np.linalg.norm(q)
    norms = np.linalg.norm(matrix, axis=1) * q_norm
    dots = matrix @ q
    return np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)


class HybridSearchEngine:
    """Ranks artifacts for a query.

    Usage:
        engine = HybridSearchEngine(db_session, embedder)
        response = engine.search(SearchRequest(query="retry policy", repo_filter="org/repo"))
    """

    def __init__(self, db: Session, embedder: Optional[Embedder] = None):
        self.db = db
        self.embedder = embedder
        self.settings = get_settings()

    def _candidates(self, request: SearchRequest) -> List[ArtifactModel]:
        query = self.db.query(ArtifactModel)
        if request.repo_filter:
            query = query.filter(ArtifactModel.repo_ref == request.repo_filter)
        if request.ticket_filter:
            query = query.filter(ArtifactModel.ticket_ref == request.ticket_filter)
        if request.recency_days and request.recency_days > 0:
            cutoff = utc_now() - timedelta(days=request.recency_days)
            query = query.filter(ArtifactModel.created_at >= cutoff)
        return query.order_by(ArtifactModel.artifact_id).all()

    def _metadata(self, request: SearchRequest, considered: int, selected: int, reason: Optional[str] = None) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "totalConsidered": considered,
            "totalSelected": selected,
            "repoFilter": request.repo_filter,
            "ticketFilter": request.ticket_filter,
            "recencyWindow": f"last {request.recency_days} days" if request.recency_days else None,
            "queryUsed": bool(request.query and request.query.strip() and self.embedder),
            "deterministic": request.deterministic,
        }
        if reason:
            metadata["reason"] = reason
        return metadata

    def search(self, request: SearchRequest) -> SearchResponse:
        """Run a search.

        Returns:
            SearchResponse; an empty result set carries ``metadata.reason``

        Raises:
            SearchError: if the query text cannot be embedded
        """
        limit = request.limit if request.limit and request.limit > 0 else self.settings.search_default_limit
        candidates = self._candidates(request)
        considered = len(candidates)

        if not candidates:
            return SearchResponse(
                metadata=self._metadata(request, 0, 0, reason="No artifacts matched the metadata filters"),
            )

        if not (request.query and request.query.strip()) or self.embedder is None:
            return self._without_query(request, candidates, limit)

        try:
            query_vector = self.embedder.embed(request.query)
        except Exception as e:
            logger.error(f"Failed to embed search query: {e}")
            raise SearchError(
                f"Failed to generate embedding: {e}",
                metadata=self._metadata(request, considered, 0),
            ) from e

        scores = self._max_similarity(query_vector, [c.artifact_id for c in candidates])
        floor = self.settings.search_min_similarity
        scored = [(c, scores[c.artifact_id]) for c in candidates if scores.get(c.artifact_id, 0.0) > floor]

        epsilon = self.settings.search_tie_epsilon
        if request.deterministic:
            scored.sort(key=lambda pair: (-tie_bucket(pair[1], epsilon), pair[0].artifact_id))
        else:
            scored.sort(key=lambda pair: pair[1], reverse=True)

        selected = scored[:limit]
        hits = [
            SearchHit(
                artifact_id=artifact.artifact_id,
                title=artifact.title,
                created_at=isoformat(artifact.created_at),
                similarity=round(float(score), 2),
            )
            for artifact, score in selected
        ]
        reason = None if hits else "No artifacts passed the similarity floor"
        return SearchResponse(results=hits, metadata=self._metadata(request, considered, len(hits), reason))

    def _without_query(self, request: SearchRequest, candidates: List[ArtifactModel], limit: int) -> SearchResponse:
        if request.deterministic:
            ordered = sorted(candidates, key=lambda a: a.artifact_id)
        else:
            ordered = sorted(candidates, key=lambda a: as_utc(a.created_at), reverse=True)
        selected = ordered[:limit]
        hits = [
            SearchHit(artifact_id=a.artifact_id, title=a.title, created_at=isoformat(a.created_at))
            for a in selected
        ]
        return SearchResponse(results=hits, metadata=self._metadata(request, len(candidates), len(hits)))

    def _max_similarity(self, query_vector: List[float], artifact_ids: List[str]) -> Dict[str, float]:
        """Best chunk score per artifact. Chunks of another dimension are ignored."""
        chunks = (
            self.db.query(ArtifactChunkModel.artifact_id, ArtifactChunkModel.embedding)
            .filter(ArtifactChunkModel.artifact_id.in_(artifact_ids))
            .all()
        )
        usable = [(aid, emb) for aid, emb in chunks if emb and len(emb) == len(query_vector)]
        if not usable:
            return {}

        similarities = cosine_similarities(query_vector, [emb for _, emb in usable])
        best: Dict[str, float] = {}
        for (artifact_id, _), score in zip(usable, similarities):
            if score > best.get(artifact_id, 0.0):
                best[artifact_id] = float(score)
        return best
