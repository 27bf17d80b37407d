"""Redis transport for cross-process job delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import ChatJob
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawJob = Tuple[str, str]


class RedisTransport(BaseTransport[RawJob]):
    """Redis list queue with a per-topic processing list.

    Jobs move atomically from the queue to ``<queue>:processing`` when they are
    received and are removed from there on ack. A subscriber requeues whatever
    is left in the processing list when it starts, so jobs in flight during a
    worker crash are delivered again. One worker process consumes each topic.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "scribeflow",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _queue(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, job: ChatJob) -> None:
        """Publish job to the Redis list acting as the queue."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue(topic), job.to_json())

    async def recover(self, topic: str) -> int:
        """Move unacknowledged jobs of ``topic`` back onto its queue, oldest first."""
        if not self._redis:
            await self.connect()
        queue = self._queue(topic)
        processing = f"{queue}:processing"
        moved = 0
        # The newest entry sits at the head of the processing list; pushing each
        # one onto the consuming end leaves the oldest to be received first.
        while await self._redis.lmove(processing, queue, "LEFT", "RIGHT") is not None:
            moved += 1
        if moved:
            logger.warning(f"Requeued {moved} unacknowledged job(s) on {queue}")
        return moved

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawJob, ChatJob]]:
        await self.recover(topic)

        queue = self._queue(topic)
        processing = f"{queue}:processing"
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            message_json = await self._redis.blmove(queue, processing, 1, "RIGHT", "LEFT")
            if not message_json:
                continue
            try:
                job = ChatJob.from_json(message_json)
            except ValidationError as exc:
                logger.error(f"Dropping unparseable job on {queue}: {exc}")
                await self._redis.lrem(processing, 1, message_json)
                continue
            yield (topic, message_json), job

    async def ack(self, raw_message: RawJob) -> None:
        topic, message_json = raw_message
        await self._redis.lrem(f"{self._queue(topic)}:processing", 1, message_json)

    async def nack(self, raw_message: RawJob, requeue: bool = True) -> None:
        topic, message_json = raw_message
        queue = self._queue(topic)
        await self._redis.lrem(f"{queue}:processing", 1, message_json)
        if requeue:
            await self._redis.rpush(queue, message_json)
        else:
            await self._redis.lpush(f"{queue}:dead", message_json)
