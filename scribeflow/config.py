from __future__ import annotations

import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_CHAT_TOPIC,
    DEFAULT_CLARIFICATION_MESSAGE,
    DEFAULT_DEDUP_WINDOW,
    DEFAULT_DUPLICATE_CONTENT_SECONDS,
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_EXCERPT_CHARS,
    DEFAULT_FALLBACK_MESSAGE,
    DEFAULT_MIN_RELEVANCE_SCORE,
    DEFAULT_PARTITION_LIMIT,
    DEFAULT_RETRIEVAL_TIMEOUT,
    DEFAULT_TEMPLATE_NAME,
)
from .security.classifier import SecurityLevel


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Job queue configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    topic: str = DEFAULT_CHAT_TOPIC
    redis: RedisConfig = RedisConfig()


class RetrievalConfig(BaseModel):
    """Dual-context retrieval tuning."""

    timeout_seconds: float = DEFAULT_RETRIEVAL_TIMEOUT
    min_relevance_score: float = DEFAULT_MIN_RELEVANCE_SCORE
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    global_limit: int = DEFAULT_PARTITION_LIMIT
    scoped_limit: int = DEFAULT_PARTITION_LIMIT
    default_clearance: SecurityLevel = SecurityLevel.INTERNAL
    excerpt_chars: int = DEFAULT_EXCERPT_CHARS
    cache_enabled: bool = True
    cache_ttl_seconds: float = 300.0
    cache_max_entries: int = 1024


class ProtocolConfig(BaseModel):
    """Model-completion settings for the step response protocol."""

    model: str = "openai:gpt-4o-mini"
    max_attempts: int = 2
    clarification_message: str = DEFAULT_CLARIFICATION_MESSAGE
    system_prompt: Optional[str] = None


class OrchestratorConfig(BaseModel):
    """Per-message handling settings."""

    dedup_window: int = DEFAULT_DEDUP_WINDOW
    duplicate_content_seconds: float = DEFAULT_DUPLICATE_CONTENT_SECONDS
    fallback_message: str = DEFAULT_FALLBACK_MESSAGE
    carryover_keys: List[str] = Field(
        default_factory=lambda: [
            "companyInfo",
            "announcement",
            "targetAudience",
            "tone",
        ]
    )


class WorkerConfig(BaseModel):
    """Queue worker settings."""

    max_attempts: int = 3
    retry_base: float = 1.5
    retry_jitter: float = 0.5
    retry_max_delay: float = 30.0


class ScribeflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    retrieval: RetrievalConfig = RetrievalConfig()
    protocol: ProtocolConfig = ProtocolConfig()
    orchestrator: OrchestratorConfig = OrchestratorConfig()
    worker: WorkerConfig = WorkerConfig()
    database_url: Optional[str] = None
    content_database_url: Optional[str] = None
    templates_dir: Optional[str] = None
    default_template: str = DEFAULT_TEMPLATE_NAME
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> ScribeflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SCRIBEFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("SCRIBEFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ScribeflowConfig(**data)
    else:
        config = ScribeflowConfig()

    env_db_url = os.getenv("SCRIBEFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("SCRIBEFLOW_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport.lower()
    env_model = os.getenv("SCRIBEFLOW_MODEL")
    if env_model:
        config.protocol.model = env_model
    env_log_level = os.getenv("SCRIBEFLOW_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level.upper()
    return config
