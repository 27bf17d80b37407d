"""Queue worker that feeds chat jobs to the orchestrator."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import WorkerConfig
from .constants import DEFAULT_CHAT_TOPIC
from .contracts import ChatJob, ChatReply
from .orchestrator import ChatOrchestrator
from .security.classifier import SecurityLevel
from .transports import BaseTransport
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)

ReplyHandler = Callable[[ChatReply], Awaitable[None]]


async def enqueue_message(
    transport: BaseTransport,
    thread_id: str,
    content: str,
    requester_id: str,
    org_id: str,
    clearance: SecurityLevel = SecurityLevel.INTERNAL,
    topic: str = DEFAULT_CHAT_TOPIC,
    message_id: Optional[str] = None,
) -> ChatJob:
    """Publish a user message as a :class:`ChatJob`."""
    fields: Dict[str, Any] = dict(
        thread_id=thread_id,
        content=content,
        requester_id=requester_id,
        org_id=org_id,
        clearance=clearance,
    )
    if message_id:
        fields["message_id"] = message_id
    job = ChatJob(**fields)
    await transport.publish(topic, job)
    logger.info(f"Enqueued message {job.message_id} for thread {thread_id} on {topic}")
    return job


class ChatWorker:
    """Consumes chat jobs, keeping per-thread arrival order.

    Job *n+1* of a thread starts only after job *n* finished (including its
    retries); jobs of different threads run concurrently. Redelivered jobs the
    orchestrator reports as duplicates are acked without reaching ``on_reply``.
    """

    def __init__(
        self,
        transport: BaseTransport,
        orchestrator: ChatOrchestrator,
        topic: str = DEFAULT_CHAT_TOPIC,
        config: Optional[WorkerConfig] = None,
        on_reply: Optional[ReplyHandler] = None,
    ) -> None:
        self._transport = transport
        self._orchestrator = orchestrator
        self.topic = topic
        self.config = config or WorkerConfig()
        self._on_reply = on_reply
        self._tails: Dict[str, asyncio.Task] = {}

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Listen on the chat topic until ``lifespan`` elapses, then drain."""
        logger.info(f"Chat worker listening on {self.topic}")
        async for raw_message, job in self._transport.subscribe(self.topic, lifespan=lifespan):
            self.dispatch(raw_message, job)
        await self.drain()

    def dispatch(self, raw_message: Any, job: ChatJob) -> asyncio.Task:
        """Schedule ``job`` behind any unfinished job of the same thread."""
        previous = self._tails.get(job.thread_id)
        task = asyncio.create_task(self._run_after(previous, raw_message, job))
        self._tails[job.thread_id] = task

        def _cleanup(done: asyncio.Task, thread_id: str = job.thread_id) -> None:
            if self._tails.get(thread_id) is done:
                del self._tails[thread_id]

        task.add_done_callback(_cleanup)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled job to finish."""
        while self._tails:
            await asyncio.gather(*list(self._tails.values()), return_exceptions=True)

    async def _run_after(
        self, previous: Optional[asyncio.Task], raw_message: Any, job: ChatJob
    ) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        await self._process(raw_message, job)

    async def _process(self, raw_message: Any, job: ChatJob) -> Optional[ChatReply]:
        max_attempts = max(1, self.config.max_attempts)
        for attempt in range(job.attempt, max_attempts + 1):
            try:
                reply = await self._orchestrator.handle(job.model_copy(update={"attempt": attempt}))
            except Exception as exc:
                logger.error(
                    f"Job {job.message_id} on thread {job.thread_id} failed "
                    f"(attempt {attempt}/{max_attempts}): {exc}"
                )
                if attempt < max_attempts:
                    await schedule_retry(
                        attempt,
                        base=self.config.retry_base,
                        jitter=self.config.retry_jitter,
                        max_delay=self.config.retry_max_delay,
                    )
                continue

            await self._transport.ack(raw_message)
            if reply.duplicate:
                logger.info(f"Job {job.message_id} on thread {job.thread_id} was a redelivery")
                return None
            if self._on_reply is not None:
                await self._on_reply(reply)
            return reply

        logger.error(f"Giving up on job {job.message_id} after {max_attempts} attempts")
        await self._transport.nack(raw_message, requeue=False)
        return None
