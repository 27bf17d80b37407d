"""Relevance scoring of candidate content against a query."""

from __future__ import annotations

import asyncio
from typing import List, Protocol, Sequence

import numpy as np

from .embedding import EmbeddingInterface


class RelevanceScorer(Protocol):
    """Scores every content string against ``query``, each in [0, 1]."""

    async def score(self, query: str, contents: Sequence[str]) -> List[float]: ...


def cosine_scores(query_vector: Sequence[float], vectors: Sequence[Sequence[float]]) -> List[float]:
    """Cosine similarity of ``query_vector`` with each row of ``vectors``, clamped to [0, 1]."""
    if len(vectors) == 0:
        return []
    query = np.asarray(query_vector, dtype=float)
    matrix = np.asarray(vectors, dtype=float)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    sims = np.divide(matrix @ query, norms, out=np.zeros(len(matrix)), where=norms > 0)
    return np.clip(sims, 0.0, 1.0).tolist()


class EmbeddingScorer:
    """Ranks by cosine similarity of embedding vectors."""

    def __init__(self, embedder: EmbeddingInterface) -> None:
        self.embedder = embedder

    async def score(self, query: str, contents: Sequence[str]) -> List[float]:
        if not contents:
            return []
        if not query.strip():
            return [0.0] * len(contents)
        # Model inference is CPU bound; keep it off the event loop.
        vectors = await asyncio.to_thread(self.embedder.encode, [query, *contents])
        return cosine_scores(vectors[0], vectors[1:])
