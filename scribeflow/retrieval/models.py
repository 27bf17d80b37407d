"""Retrieval data models."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from ..constants import DEFAULT_MIN_RELEVANCE_SCORE, DEFAULT_PARTITION_LIMIT
from ..security.classifier import Classification, SecurityLevel


class ContentSource(str, Enum):
    ORG_WIDE_KNOWLEDGE = "org_wide_knowledge"
    USER_PRIVATE_KNOWLEDGE = "user_private_knowledge"
    CONVERSATION_HISTORY = "conversation_history"
    GENERATED_ARTIFACT = "generated_artifact"


GLOBAL_SOURCES: Tuple[ContentSource, ...] = (ContentSource.ORG_WIDE_KNOWLEDGE,)
SCOPED_SOURCES: Tuple[ContentSource, ...] = (
    ContentSource.USER_PRIVATE_KNOWLEDGE,
    ContentSource.CONVERSATION_HISTORY,
    ContentSource.GENERATED_ARTIFACT,
)


class ContentItem(BaseModel):
    """A retrievable piece of knowledge tagged with a security level.

    ``relevance_score`` is only meaningful on search results and is never
    persisted by a content store.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source: ContentSource
    security_level: SecurityLevel = SecurityLevel.RESTRICTED
    content: str
    relevance_score: float = 0.0
    category: Optional[str] = None
    org_id: Optional[str] = None
    owner_id: Optional[str] = None
    categories: List[str] = Field(default_factory=list)

    @classmethod
    def from_classification(
        cls,
        content: str,
        source: ContentSource,
        classification: Classification,
        **kwargs,
    ) -> "ContentItem":
        """Build an item from raw content and the ingestion classifier's verdict."""
        return cls(
            content=content,
            source=source,
            security_level=classification.security_level,
            categories=list(classification.categories),
            **kwargs,
        )


class SearchOptions(BaseModel):
    """Filters for a single retrieval search.

    ``security_level`` is the highest level a result may carry.
    """

    sources: Tuple[ContentSource, ...] = SCOPED_SOURCES
    security_level: SecurityLevel = SecurityLevel.INTERNAL
    limit: int = DEFAULT_PARTITION_LIMIT
    min_relevance_score: float = DEFAULT_MIN_RELEVANCE_SCORE
    org_scoped: bool = True


class ContextBundle(BaseModel):
    """Ephemeral result of a dual-context retrieval."""

    global_results: List[ContentItem] = Field(default_factory=list)
    scoped_results: List[ContentItem] = Field(default_factory=list)
    combined_relevance: float = 0.0
    degraded_partitions: List[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.global_results and not self.scoped_results
