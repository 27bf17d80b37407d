"""Contract every chat job queue implements."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import ChatJob

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """At-least-once delivery of :class:`ChatJob` messages per topic.

    ``subscribe`` hands out each job together with the backend's raw message.
    A received job stays owned by the consumer until it is settled with
    exactly one ``ack`` or ``nack`` on that raw message; a job never settled
    is delivered again.
    """

    async def connect(self) -> None:
        """Open the broker connection, for backends that hold one."""

    async def disconnect(self) -> None:
        """Release the broker connection, for backends that hold one."""

    @abc.abstractmethod
    async def publish(self, topic: str, job: ChatJob) -> None:
        """Append ``job`` to the end of ``topic``."""

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, ChatJob]]:
        """Yield ``(raw_message, job)`` pairs of ``topic`` in publish order.

        Stops after ``lifespan`` seconds; runs until cancelled when ``None``.
        """

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Settle a job that was handled; it is never delivered again."""

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Settle a job that was not handled.

        With ``requeue`` the job is delivered again before newer jobs of its
        topic; without it the job is parked as a dead letter.
        """
