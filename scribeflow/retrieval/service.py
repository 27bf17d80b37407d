"""Secure dual-context retrieval."""

from __future__ import annotations

import asyncio
import logging
from typing import Hashable, List, Optional, Tuple

from ..config import RetrievalConfig
from ..errors import RetrievalTimeout
from ..security.classifier import SecurityClassifier, SecurityLevel
from ..security.context import RequesterContext
from .cache import TTLCache
from .models import (
    GLOBAL_SOURCES,
    SCOPED_SOURCES,
    ContentItem,
    ContentSource,
    ContextBundle,
    SearchOptions,
)
from .embedding import SentenceTransformerEmbedding
from .scoring import EmbeddingScorer, RelevanceScorer
from .store import ContentStore

logger = logging.getLogger(__name__)

GLOBAL_PARTITION = "global"
SCOPED_PARTITION = "scoped"


class RetrievalService:
    """Runs the org-wide and requester-scoped searches behind the security filter."""

    def __init__(
        self,
        store: ContentStore,
        config: Optional[RetrievalConfig] = None,
        classifier: Optional[SecurityClassifier] = None,
        cache: Optional[TTLCache[List[ContentItem]]] = None,
        scorer: Optional[RelevanceScorer] = None,
    ) -> None:
        self.store = store
        self.config = config or RetrievalConfig()
        self.scorer = scorer or EmbeddingScorer(
            SentenceTransformerEmbedding(self.config.embedding_model)
        )
        self.classifier = classifier or SecurityClassifier()
        self.cache = cache

    def _cache_key(
        self, requester_id: str, org_id: str, query: str, options: SearchOptions
    ) -> Hashable:
        scope: Tuple[Optional[str], Optional[str]] = (
            (org_id, requester_id) if options.org_scoped else (None, None)
        )
        return (
            query,
            tuple(s.value for s in options.sources),
            options.security_level.value,
            options.limit,
            options.min_relevance_score,
            scope,
        )

    def _admissible(
        self, item: ContentItem, requester_id: str, org_id: str, options: SearchOptions
    ) -> bool:
        if item.source not in options.sources:
            return False
        if options.org_scoped and item.org_id != org_id:
            return False
        if item.owner_id is not None and item.owner_id != requester_id:
            return False
        return True

    async def search(
        self,
        requester_id: str,
        org_id: str,
        query: str,
        options: Optional[SearchOptions] = None,
    ) -> List[ContentItem]:
        """Return items visible to the requester, ranked by relevance to ``query``.

        Every candidate passes the security filter regardless of its score.
        """
        options = options or SearchOptions(
            security_level=self.config.default_clearance,
            limit=self.config.scoped_limit,
            min_relevance_score=self.config.min_relevance_score,
        )
        key = None
        if self.cache is not None:
            key = self._cache_key(requester_id, org_id, query, options)
            cached = self.cache.get(key)
            if cached is not None:
                return [item.model_copy() for item in cached]

        candidates = await self.store.candidates(
            options.sources,
            options.security_level,
            org_id=org_id if options.org_scoped else None,
            requester_id=requester_id,
        )
        visible = self.classifier.filter(
            (c for c in candidates if self._admissible(c, requester_id, org_id, options)),
            options.security_level,
        )

        scores = await self.scorer.score(query, [item.content for item in visible])
        scored = []
        for item, score in zip(visible, scores):
            if score >= options.min_relevance_score:
                scored.append(item.model_copy(update={"relevance_score": score}))
        scored.sort(key=lambda i: i.relevance_score, reverse=True)
        results = scored[: options.limit]

        if self.cache is not None and key is not None:
            self.cache.put(key, [item.model_copy() for item in results])
        return results

    async def _bounded_search(
        self,
        partition: str,
        requester: RequesterContext,
        query: str,
        options: SearchOptions,
    ) -> List[ContentItem]:
        timeout = self.config.timeout_seconds
        try:
            return await asyncio.wait_for(
                self.search(requester.requester_id, requester.org_id, query, options),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise RetrievalTimeout(partition, timeout) from exc

    async def get_context(
        self,
        requester: RequesterContext,
        workflow_type: str,
        step_name: str,
        user_input: str,
    ) -> ContextBundle:
        """Build the two context partitions for one step of ``workflow_type``.

        A partition that times out or fails comes back empty and is listed in
        ``degraded_partitions``; the other partition is unaffected.
        """
        global_options = SearchOptions(
            sources=GLOBAL_SOURCES,
            security_level=SecurityLevel.PUBLIC,
            limit=self.config.global_limit,
            min_relevance_score=self.config.min_relevance_score,
            org_scoped=False,
        )
        scoped_options = SearchOptions(
            sources=SCOPED_SOURCES,
            security_level=requester.clearance or self.config.default_clearance,
            limit=self.config.scoped_limit,
            min_relevance_score=self.config.min_relevance_score,
            org_scoped=True,
        )
        global_query = f"{workflow_type} {step_name}"
        scoped_query = user_input or f"{workflow_type} {step_name}"

        outcomes = await asyncio.gather(
            self._bounded_search(GLOBAL_PARTITION, requester, global_query, global_options),
            self._bounded_search(SCOPED_PARTITION, requester, scoped_query, scoped_options),
            return_exceptions=True,
        )

        bundle = ContextBundle()
        partitions = []
        for name, outcome in zip((GLOBAL_PARTITION, SCOPED_PARTITION), outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.warning(f"Retrieval partition {name} degraded: {outcome}")
                bundle.degraded_partitions.append(name)
                partitions.append([])
            else:
                partitions.append(outcome)

        bundle.global_results = [
            i for i in partitions[0] if i.source == ContentSource.ORG_WIDE_KNOWLEDGE
        ]
        bundle.scoped_results = [
            i
            for i in partitions[1]
            if i.source != ContentSource.ORG_WIDE_KNOWLEDGE and i.org_id == requester.org_id
        ]
        scores = [i.relevance_score for i in bundle.global_results + bundle.scoped_results]
        bundle.combined_relevance = sum(scores) / len(scores) if scores else 0.0
        logger.debug(
            f"Context for {workflow_type}/{step_name}: {len(bundle.global_results)} global, "
            f"{len(bundle.scoped_results)} scoped"
        )
        return bundle
