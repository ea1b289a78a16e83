"""
Hybrid retrieval over stored artifacts and their embedded atoms.
"""

from .search import HybridSearchEngine, SearchError, SearchRequest, SearchResponse

__all__ = [
    "HybridSearchEngine",
    "SearchError",
    "SearchRequest",
    "SearchResponse",
]
