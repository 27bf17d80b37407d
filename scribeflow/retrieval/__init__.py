from typing import Optional

from .cache import TTLCache
from .embedding import EmbeddingInterface, SentenceTransformerEmbedding
from .models import (
    GLOBAL_SOURCES,
    SCOPED_SOURCES,
    ContentItem,
    ContentSource,
    ContextBundle,
    SearchOptions,
)
from .scoring import EmbeddingScorer, RelevanceScorer, cosine_scores
from .service import RetrievalService
from .store import ContentStore, InMemoryContentStore


def get_content_store(database_url: Optional[str] = None) -> ContentStore:
    """Return a content store for ``database_url``; in-memory when unset."""
    if not database_url:
        return InMemoryContentStore()
    from .sql import SQLContentStore

    return SQLContentStore(database_url)


__all__ = [
    "ContentItem",
    "ContentSource",
    "ContentStore",
    "ContextBundle",
    "EmbeddingInterface",
    "EmbeddingScorer",
    "GLOBAL_SOURCES",
    "InMemoryContentStore",
    "RelevanceScorer",
    "RetrievalService",
    "SCOPED_SOURCES",
    "SearchOptions",
    "SentenceTransformerEmbedding",
    "TTLCache",
    "cosine_scores",
    "get_content_store",
]
