"""Security classification and requester context."""

from .classifier import (
    Classification,
    ContentClassifier,
    SecurityClassifier,
    SecurityLevel,
    accessible_levels,
    coerce_level,
    is_visible,
)
from .context import RequesterContext

__all__ = [
    "Classification",
    "ContentClassifier",
    "RequesterContext",
    "SecurityClassifier",
    "SecurityLevel",
    "accessible_levels",
    "coerce_level",
    "is_visible",
]
