"""Explicit construction and wiring of scribeflow services."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .completion import AgentCompletionClient, CompletionClient
from .config import ScribeflowConfig
from .engine import WorkflowEngine
from .orchestrator import ChatOrchestrator
from .persistence import WorkflowRepository, get_repository
from .protocol import StepResponseProtocol
from .registry import TemplateRegistry, load_registry
from .retrieval import ContentStore, RelevanceScorer, RetrievalService, TTLCache, get_content_store
from .router import HandoffRouter

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Every long-lived service of one process, built once at startup."""

    config: ScribeflowConfig
    registry: TemplateRegistry
    repository: WorkflowRepository
    content_store: ContentStore
    retrieval: RetrievalService
    protocol: StepResponseProtocol
    engine: WorkflowEngine
    router: HandoffRouter
    orchestrator: ChatOrchestrator


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_services(
    config: Optional[ScribeflowConfig] = None,
    *,
    registry: Optional[TemplateRegistry] = None,
    repository: Optional[WorkflowRepository] = None,
    content_store: Optional[ContentStore] = None,
    completion_client: Optional[CompletionClient] = None,
    scorer: Optional[RelevanceScorer] = None,
) -> Services:
    """Build the service graph from ``config``.

    Any collaborator passed explicitly replaces the one the configuration
    would select. Raises :class:`~scribeflow.errors.TemplateValidationError`
    when the templates are invalid.
    """
    config = config or ScribeflowConfig()
    registry = registry or load_registry(config.templates_dir)
    registry.require(config.default_template)

    repository = repository or get_repository(config.database_url, config)
    content_store = content_store or get_content_store(config.content_database_url)

    cache = None
    if config.retrieval.cache_enabled:
        cache = TTLCache(
            ttl_seconds=config.retrieval.cache_ttl_seconds,
            max_entries=config.retrieval.cache_max_entries,
        )
    retrieval = RetrievalService(
        content_store, config=config.retrieval, cache=cache, scorer=scorer
    )

    client = completion_client or AgentCompletionClient(
        config.protocol.model, system_prompt=config.protocol.system_prompt
    )
    protocol = StepResponseProtocol(
        client, config=config.protocol, excerpt_chars=config.retrieval.excerpt_chars
    )
    engine = WorkflowEngine(repository, protocol, retrieval=retrieval)
    router = HandoffRouter(
        registry, engine, carryover_keys=config.orchestrator.carryover_keys
    )
    orchestrator = ChatOrchestrator(
        repository,
        registry,
        engine,
        router,
        config=config.orchestrator,
        default_template=config.default_template,
    )
    logger.debug(f"Services built with {len(registry)} templates")
    return Services(
        config=config,
        registry=registry,
        repository=repository,
        content_store=content_store,
        retrieval=retrieval,
        protocol=protocol,
        engine=engine,
        router=router,
        orchestrator=orchestrator,
    )
