"""In-memory transport for tests and single-process runs."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import ChatJob
from .base import BaseTransport

RawJob = Tuple[str, str]


class InMemoryTransport(BaseTransport[RawJob]):
    """Simple in-process queue.

    Raw messages are ``(topic, json)`` pairs. A nacked message with
    ``requeue=True`` goes back to the head of its queue.
    """

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[RawJob]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval
        self.acked_count = 0
        self.dead_letters: List[RawJob] = []

    async def publish(self, topic: str, job: ChatJob) -> None:
        """Publish job to in-memory queue."""
        async with self._lock:
            self._queues[topic].append((topic, job.to_json()))

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawJob, ChatJob]]:
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            raw_message = None
            async with self._lock:
                if self._queues[topic]:
                    raw_message = self._queues[topic].popleft()
            if raw_message is not None:
                yield raw_message, ChatJob.from_json(raw_message[1])
                continue

            await asyncio.sleep(self.poll_interval)

    async def ack(self, raw_message: RawJob) -> None:
        self.acked_count += 1

    async def nack(self, raw_message: RawJob, requeue: bool = True) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].appendleft(raw_message)
        else:
            self.dead_letters.append(raw_message)

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])
