"""In-memory transport for testing and single-process runs."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import JobEnvelope
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawMessage = Tuple[str, JobEnvelope]


class InMemoryTransport(BaseTransport[RawMessage]):
    """Simple in-process queue for unit tests."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[JobEnvelope]] = defaultdict(deque)
        self._dead: Dict[str, List[JobEnvelope]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def add_job(self, queue: str, envelope: JobEnvelope) -> None:
        """Append job to in-memory queue."""
        async with self._lock:
            self._queues[queue].append(envelope)

    async def pop(self, queue: str) -> Optional[Tuple[RawMessage, JobEnvelope]]:
        """Take the next job from ``queue`` without waiting."""
        async with self._lock:
            if self._queues[queue]:
                envelope = self._queues[queue].popleft()
                return (queue, envelope), envelope
        return None

    async def subscribe(
        self, queue: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, JobEnvelope]]:
        """Consume jobs from ``queue``.

        Args:
            queue: The queue to consume.
            lifespan: Maximum time in seconds to keep consuming. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            delivered = await self.pop(queue)
            if delivered is not None:
                yield delivered
                continue

            await asyncio.sleep(0.05)

    async def ack(self, raw_message: RawMessage) -> None:
        """No-op acknowledgment; the job was removed when delivered."""
        pass

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        queue, envelope = raw_message
        async with self._lock:
            if requeue and not envelope.exhausted:
                self._queues[queue].append(envelope.redelivery())
            else:
                logger.warning(
                    f"Dead-lettering job {envelope.job_id} from {queue} "
                    f"after {envelope.attempt} attempts"
                )
                self._dead[queue].append(envelope)

    async def pending(self, queue: str) -> int:
        return len(self._queues[queue])

    def dead_letters(self, queue: str) -> List[JobEnvelope]:
        return list(self._dead[queue])

    def queued(self, queue: str) -> List[JobEnvelope]:
        return list(self._queues[queue])
