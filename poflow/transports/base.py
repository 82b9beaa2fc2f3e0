"""Base transport interface for stage job queues."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import JobEnvelope

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract at-least-once job queue."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def add_job(self, queue: str, envelope: JobEnvelope) -> None:
        """Enqueue a job."""
        raise NotImplementedError

    @abc.abstractmethod
    async def pop(self, queue: str) -> Optional[Tuple[RawMessageT, JobEnvelope]]:
        """Take the next job from ``queue`` without waiting, or return ``None``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, queue: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, JobEnvelope]]:
        """Yield raw transport message and envelope pairs.

        Args:
            queue: The queue to consume.
            lifespan: Maximum time in seconds to keep consuming. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge; requeue for redelivery or dead-letter when exhausted."""
        raise NotImplementedError

    @abc.abstractmethod
    async def pending(self, queue: str) -> int:
        """Number of jobs waiting on ``queue``."""
        raise NotImplementedError
