"""Security levels and the visibility filter applied to retrieved content."""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, List, Protocol

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from ..retrieval.models import ContentItem

logger = logging.getLogger(__name__)


class SecurityLevel(str, Enum):
    """Clearance tag with the total order public < internal < confidential < restricted."""

    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    RESTRICTED = "restricted"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SecurityLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, SecurityLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, SecurityLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, SecurityLevel):
            return NotImplemented
        return self.rank >= other.rank


_RANKS = {
    SecurityLevel.PUBLIC: 0,
    SecurityLevel.INTERNAL: 1,
    SecurityLevel.CONFIDENTIAL: 2,
    SecurityLevel.RESTRICTED: 3,
}


def coerce_level(value: Any) -> SecurityLevel:
    """Parse ``value`` into a level, treating anything unrecognised as restricted."""
    if isinstance(value, SecurityLevel):
        return value
    try:
        return SecurityLevel(str(value).strip().lower())
    except ValueError:
        logger.warning(f"Unrecognised security level {value!r}; treating as restricted")
        return SecurityLevel.RESTRICTED


def accessible_levels(requester_level: SecurityLevel) -> List[SecurityLevel]:
    """Return every level visible to ``requester_level``, lowest first."""
    return [level for level in SecurityLevel if level <= requester_level]


def is_visible(item: "ContentItem", requester_level: SecurityLevel) -> bool:
    """Return ``True`` when ``item`` may be shown to a requester at ``requester_level``."""
    return item.security_level <= requester_level


class Classification(BaseModel):
    """Output contract of the ingestion-time content classifier."""

    security_level: SecurityLevel = SecurityLevel.RESTRICTED
    categories: List[str] = Field(default_factory=list)
    contains_pii: bool = False


class ContentClassifier(Protocol):
    """Assigns a security level to raw content before it is stored."""

    async def classify(self, raw_content: str) -> Classification:
        """Classify ``raw_content``."""


class SecurityClassifier:
    """Mandatory post-filter for retrieval results."""

    def filter(
        self, items: Iterable["ContentItem"], requester_level: SecurityLevel
    ) -> List["ContentItem"]:
        visible: List["ContentItem"] = []
        dropped = 0
        for item in items:
            if is_visible(item, requester_level):
                visible.append(item)
            else:
                dropped += 1
        if dropped:
            logger.debug(
                f"Dropped {dropped} item(s) above clearance {requester_level.value}"
            )
        return visible
