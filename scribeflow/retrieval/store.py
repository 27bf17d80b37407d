"""Content store protocol and in-memory implementation."""

from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from ..security.classifier import SecurityLevel
from .models import ContentItem, ContentSource


class ContentStore(Protocol):
    """Read access to ingested content plus the write used by ingestion."""

    async def add(self, item: ContentItem) -> None:
        """Insert or replace ``item``."""

    async def get(self, item_id: str) -> Optional[ContentItem]:
        """Return the item with ``item_id`` if present."""

    async def candidates(
        self,
        sources: Sequence[ContentSource],
        max_level: SecurityLevel,
        org_id: Optional[str] = None,
        requester_id: Optional[str] = None,
    ) -> List[ContentItem]:
        """Return unscored items matching the filters.

        ``org_id=None`` means the search is not org scoped.
        """


class InMemoryContentStore:
    """Dictionary-backed content store for tests and local runs."""

    def __init__(self, items: Iterable[ContentItem] = ()) -> None:
        self._items: Dict[str, ContentItem] = {}
        self._lock = asyncio.Lock()
        for item in items:
            self._items[item.id] = item.model_copy(update={"relevance_score": 0.0})

    async def add(self, item: ContentItem) -> None:
        async with self._lock:
            self._items[item.id] = item.model_copy(update={"relevance_score": 0.0})

    async def get(self, item_id: str) -> Optional[ContentItem]:
        item = self._items.get(item_id)
        return item.model_copy() if item else None

    async def candidates(
        self,
        sources: Sequence[ContentSource],
        max_level: SecurityLevel,
        org_id: Optional[str] = None,
        requester_id: Optional[str] = None,
    ) -> List[ContentItem]:
        wanted = set(sources)
        results = []
        for item in self._items.values():
            if item.source not in wanted or item.security_level > max_level:
                continue
            if org_id is not None and item.org_id != org_id:
                continue
            if item.owner_id is not None and item.owner_id != requester_id:
                continue
            results.append(item.model_copy())
        return results

    def __len__(self) -> int:
        return len(self._items)
