"""Queue worker scenarios over the in-memory transport."""

import asyncio
import json
import re

import pytest

from scribeflow.bootstrap import build_services
from scribeflow.config import ScribeflowConfig, WorkerConfig
from scribeflow.contracts import ChatJob
from scribeflow.persistence import InMemoryWorkflowRepository
from scribeflow.transports.inmemory import InMemoryTransport
from scribeflow.worker import ChatWorker, enqueue_message

pytestmark = pytest.mark.integration

FAST_RETRIES = WorkerConfig(max_attempts=3, retry_base=0, retry_jitter=0)


class EchoClient:
    """Asks back with the user's text; earlier messages answer more slowly."""

    async def complete(self, prompt: str) -> str:
        text = re.search(r"USER INPUT:\n(.+)", prompt).group(1)
        index = int(text.rsplit(" ", 1)[-1])
        await asyncio.sleep(0.02 * (4 - index))
        return json.dumps({"isComplete": False, "nextQuestion": f"echo {text}"})


def _collector():
    replies = []

    async def collect(reply):
        replies.append(reply)

    return replies, collect


def _services(client=None):
    return build_services(
        ScribeflowConfig(),
        repository=InMemoryWorkflowRepository(),
        completion_client=client or EchoClient(),
    )


@pytest.mark.asyncio
async def test_worker_keeps_per_thread_order():
    services = _services()
    transport = InMemoryTransport(poll_interval=0.01)
    for i in range(5):
        for thread in ("thread-a", "thread-b"):
            await enqueue_message(transport, thread, f"{thread} {i}", "user-1", "org-1")

    replies, collect = _collector()
    worker = ChatWorker(transport, services.orchestrator, config=FAST_RETRIES, on_reply=collect)
    await worker.start(lifespan=0.5)

    for thread in ("thread-a", "thread-b"):
        texts = [r.text for r in replies if r.thread_id == thread]
        assert texts == [f"echo {thread} {i}" for i in range(5)]
        log = await services.repository.recent_messages(thread, 10)
        assert [m.content for m in log if m.role == "user"] == [f"{thread} {i}" for i in range(5)]
    assert transport.acked_count == 10
    assert transport.dead_letters == []


class FlakyOrchestrator:
    def __init__(self, inner, failures):
        self.inner = inner
        self.failures = failures
        self.calls = 0

    async def handle(self, job, requester=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("database unavailable")
        return await self.inner.handle(job, requester)


@pytest.mark.asyncio
async def test_failed_job_is_retried_then_acked():
    services = _services()
    transport = InMemoryTransport(poll_interval=0.01)
    orchestrator = FlakyOrchestrator(services.orchestrator, failures=2)
    await enqueue_message(transport, "thread-a", "thread-a 4", "user-1", "org-1")

    replies, collect = _collector()
    worker = ChatWorker(transport, orchestrator, config=FAST_RETRIES, on_reply=collect)
    await worker.start(lifespan=0.2)

    assert orchestrator.calls == 3
    assert [r.text for r in replies] == ["echo thread-a 4"]
    assert transport.acked_count == 1
    assert transport.dead_letters == []


@pytest.mark.asyncio
async def test_exhausted_job_goes_to_dead_letters():
    services = _services()
    transport = InMemoryTransport(poll_interval=0.01)
    orchestrator = FlakyOrchestrator(services.orchestrator, failures=10)
    job = await enqueue_message(transport, "thread-a", "thread-a 4", "user-1", "org-1", message_id="m-1")

    replies, collect = _collector()
    worker = ChatWorker(transport, orchestrator, config=FAST_RETRIES, on_reply=collect)
    await worker.start(lifespan=0.2)

    assert orchestrator.calls == 3
    assert replies == []
    assert transport.acked_count == 0
    assert len(transport.dead_letters) == 1
    assert json.loads(transport.dead_letters[0][1])["message_id"] == job.message_id == "m-1"


@pytest.mark.asyncio
async def test_redelivered_job_is_acked_without_second_reply():
    services = _services()
    transport = InMemoryTransport(poll_interval=0.01)
    job = ChatJob(
        thread_id="thread-a",
        content="thread-a 4",
        requester_id="user-1",
        org_id="org-1",
        message_id="m-1",
    )
    await transport.publish("chat-jobs", job)
    await transport.publish("chat-jobs", job)

    replies, collect = _collector()
    worker = ChatWorker(transport, services.orchestrator, config=FAST_RETRIES, on_reply=collect)
    await worker.start(lifespan=0.3)

    assert [r.text for r in replies] == ["echo thread-a 4"]
    assert transport.acked_count == 2
    assert transport.pending("chat-jobs") == 0
    log = await services.repository.recent_messages("thread-a", 10)
    assert [m.content for m in log if m.role == "user"] == ["thread-a 4"]
