"""Scribeflow: template-driven workflows for AI-assisted content creation."""

from .bootstrap import Services, build_services
from .config import ScribeflowConfig, load_config
from .contracts import ChatJob, ChatReply, StepResponse, WorkflowTemplate
from .engine import WorkflowEngine
from .orchestrator import ChatOrchestrator
from .persistence import get_repository
from .registry import TemplateRegistry, load_registry
from .retrieval import RetrievalService
from .router import HandoffRouter
from .transports import get_transport
from .worker import ChatWorker, enqueue_message

__version__ = "0.1.0"
__all__ = [
    "ChatJob",
    "ChatOrchestrator",
    "ChatReply",
    "ChatWorker",
    "HandoffRouter",
    "RetrievalService",
    "ScribeflowConfig",
    "Services",
    "StepResponse",
    "TemplateRegistry",
    "WorkflowEngine",
    "WorkflowTemplate",
    "build_services",
    "enqueue_message",
    "get_repository",
    "get_transport",
    "load_config",
    "load_registry",
]
