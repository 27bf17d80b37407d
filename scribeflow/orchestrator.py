"""Per-message chat orchestration."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional

from .config import OrchestratorConfig
from .constants import DEFAULT_DISCARDED_MESSAGE, DEFAULT_TEMPLATE_NAME
from .contracts import ChatJob, ChatReply, WorkflowStatus
from .engine import WorkflowEngine
from .persistence.models import ChatMessage
from .persistence.repository import WorkflowRepository
from .registry import TemplateRegistry
from .router import HandoffRouter
from .security.context import RequesterContext

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ChatOrchestrator:
    """Routes each inbound message to the thread's active workflow.

    Messages of one thread are handled strictly one after another; different
    threads proceed concurrently.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        registry: TemplateRegistry,
        engine: WorkflowEngine,
        router: HandoffRouter,
        config: Optional[OrchestratorConfig] = None,
        default_template: str = DEFAULT_TEMPLATE_NAME,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.engine = engine
        self.router = router
        self.config = config or OrchestratorConfig()
        self.default_template = default_template
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _thread_lock(self, thread_id: str) -> AsyncIterator[None]:
        """Hold the thread's lock; it is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(thread_id, asyncio.Lock())
        self._lock_users[thread_id] = self._lock_users.get(thread_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[thread_id] -= 1
            if not self._lock_users[thread_id]:
                del self._lock_users[thread_id]
                del self._locks[thread_id]

    def find_duplicate(self, job: ChatJob, recent: List[ChatMessage]) -> Optional[ChatMessage]:
        """Return the logged user entry ``job`` duplicates, if any."""
        window = self.config.duplicate_content_seconds
        received = _as_utc(job.timestamp)
        for entry in reversed(recent):
            if entry.role != "user":
                continue
            if entry.message_id and entry.message_id == job.message_id:
                return entry
            if (
                entry.content == job.content
                and abs((received - _as_utc(entry.created_at)).total_seconds()) <= window
            ):
                return entry
        return None

    @staticmethod
    def _reply_to(entry: ChatMessage, recent: List[ChatMessage]) -> str:
        index = next((i for i, m in enumerate(recent) if m.id == entry.id), None)
        if index is None:
            return ""
        for message in recent[index + 1 :]:
            if message.role == "assistant":
                return message.content
        return ""

    async def handle(
        self, job: ChatJob, requester: Optional[RequesterContext] = None
    ) -> ChatReply:
        """Process one inbound message and return the outward reply."""
        requester = requester or RequesterContext(
            requester_id=job.requester_id, org_id=job.org_id, clearance=job.clearance
        )
        async with self._thread_lock(job.thread_id):
            return await self._handle_locked(job, requester)

    async def _handle_locked(self, job: ChatJob, requester: RequesterContext) -> ChatReply:
        recent = await self.repository.recent_messages(job.thread_id, self.config.dedup_window)
        duplicate = self.find_duplicate(job, recent)
        if duplicate is not None:
            logger.info(
                f"Duplicate message {job.message_id} on thread {job.thread_id}; skipping"
            )
            return ChatReply(
                thread_id=job.thread_id,
                message_id=job.message_id,
                text=self._reply_to(duplicate, recent),
                duplicate=True,
            )

        instance = await self.repository.get_active_workflow(job.thread_id)
        if instance is None:
            template = self.registry.require(self.default_template)
            instance = await self.engine.create_instance(job.thread_id, template)

        turn = await self.engine.process_message(instance, job.content, requester)
        messages = list(turn.messages)
        workflow_id = turn.workflow_id

        if turn.discarded and not messages:
            messages.append(DEFAULT_DISCARDED_MESSAGE)
        elif turn.status == WorkflowStatus.COMPLETED:
            handoff = await self.router.on_completed(instance, turn, requester)
            messages.extend(handoff.messages)
            if handoff.new_workflow is not None:
                workflow_id = handoff.new_workflow.id

        text = "\n\n".join(m for m in messages if m and m.strip())
        if not text:
            logger.warning(f"Turn on thread {job.thread_id} produced no message; using fallback")
            text = self.config.fallback_message

        await self.repository.append_messages(
            [
                ChatMessage(
                    thread_id=job.thread_id,
                    role="user",
                    content=job.content,
                    message_id=job.message_id,
                    created_at=_as_utc(job.timestamp),
                ),
                ChatMessage(
                    thread_id=job.thread_id,
                    role="assistant",
                    content=text,
                    message_id=job.message_id,
                ),
            ]
        )
        return ChatReply(
            thread_id=job.thread_id,
            message_id=job.message_id,
            text=text,
            workflow_id=workflow_id,
        )
