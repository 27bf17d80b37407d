"""Embedding service for generating semantic vectors from text."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from ..constants import DEFAULT_EMBEDDING_MODEL

logger = logging.getLogger(__name__)


class EmbeddingInterface(ABC):
    """Abstract interface for embedding services."""

    @abstractmethod
    def encode(self, texts: List[str]) -> List[List[float]]:
        """Return one embedding vector per input text."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the name/identifier of the embedding model."""


class SentenceTransformerEmbedding(EmbeddingInterface):
    """Embedding service using SentenceTransformers models.

    The model is loaded on first use so that building the service graph
    never downloads weights.
    """

    def __init__(self, model_name: str = DEFAULT_EMBEDDING_MODEL, device: Optional[str] = None):
        self._model_name = model_name
        self._device = device
        self._model: Any = None
        self._load_lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._model is not None

    def _get_model(self) -> Any:
        with self._load_lock:
            if self._model is None:
                from sentence_transformers import SentenceTransformer

                logger.info(f"Loading embedding model: {self._model_name}")
                self._model = SentenceTransformer(self._model_name, device=self._device)
        return self._model

    def encode(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        embeddings = self._get_model().encode(list(texts))
        return embeddings.tolist()

    @property
    def model_name(self) -> str:
        return self._model_name
