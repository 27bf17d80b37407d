"""Persistence layer for scribeflow workflows and thread message logs."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ScribeflowConfig
from .inmemory import InMemoryWorkflowRepository
from .models import ChatMessage, StepInstance, StepMetadata, WorkflowInstance
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository


def get_repository(
    database_url: Optional[str] = None, config: Optional[ScribeflowConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``SCRIBEFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from configuration. When no database is configured,
    an in-memory repository is returned. Every call builds a new repository.
    """

    database_url = (
        database_url
        or os.getenv("SCRIBEFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        return InMemoryWorkflowRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteWorkflowRepository(path)
    if database_url.startswith("postgres://") or database_url.startswith("postgresql://"):
        try:
            from .postgres import PostgresWorkflowRepository
        except ImportError as exc:
            raise RuntimeError(
                "Postgres support not available; install scribeflow[postgres]"
            ) from exc
        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "ChatMessage",
    "InMemoryWorkflowRepository",
    "SQLiteWorkflowRepository",
    "StepInstance",
    "StepMetadata",
    "WorkflowInstance",
    "WorkflowRepository",
    "get_repository",
]
