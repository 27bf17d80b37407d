"""Chat job queues: an in-process queue and a Redis-backed one."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ScribeflowConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport

TRANSPORT_ENV = "SCRIBEFLOW_TRANSPORT"


def get_transport(
    backend: Optional[str] = None, config: Optional[ScribeflowConfig] = None
) -> BaseTransport:
    """Return the job queue named by ``backend``, ``$SCRIBEFLOW_TRANSPORT`` or the config.

    The Redis backend is imported only when selected, so the ``redis`` extra
    stays optional.
    """
    settings = (config or load_config()).transport
    name = (backend or os.getenv(TRANSPORT_ENV) or settings.backend).lower()
    if name == "inmemory":
        return InMemoryTransport()
    if name == "redis":
        from .redis import RedisTransport

        return RedisTransport(**settings.redis.model_dump())
    raise ValueError(f"Unsupported transport backend: {name}")


__all__ = ["BaseTransport", "InMemoryTransport", "TRANSPORT_ENV", "get_transport"]
