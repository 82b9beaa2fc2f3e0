"""Redis transport for cross-process job queues."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

from pydantic import ValidationError

from ..config import RedisConfig
from ..contracts import JobEnvelope
from ..utils.redis import create_redis
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawMessage = Tuple[str, str]


class RedisTransport(BaseTransport[RawMessage]):
    """Redis list based queue with a processing list for at-least-once delivery.

    Jobs move atomically from ``poflow:{queue}`` to ``poflow:{queue}:processing``
    when delivered and are removed from there on ack. Exhausted jobs land
    on ``poflow:{queue}:dead``.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        url: Optional[str] = None,
        client: Any = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.url = url
        self._redis: Optional[Any] = client

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._redis is None:
            self._redis = create_redis(
                RedisConfig(
                    host=self.host,
                    port=self.port,
                    db=self.db,
                    password=self.password,
                    url=self.url,
                )
            )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _queue_key(self, queue: str) -> str:
        return f"poflow:{queue}"

    def _processing_key(self, queue: str) -> str:
        return f"poflow:{queue}:processing"

    def _dead_key(self, queue: str) -> str:
        return f"poflow:{queue}:dead"

    async def add_job(self, queue: str, envelope: JobEnvelope) -> None:
        """Push job onto the Redis list acting as a queue."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue_key(queue), envelope.to_json())

    async def _decode(self, queue: str, message_json: str) -> Optional[JobEnvelope]:
        """Parse a delivered job; malformed jobs are moved to the dead list."""
        try:
            return JobEnvelope.from_json(message_json)
        except ValidationError as e:
            logger.error(f"Dropping malformed job on {queue}: {e}")
            await self._redis.lrem(self._processing_key(queue), 1, message_json)
            await self._redis.lpush(self._dead_key(queue), message_json)
            return None

    async def pop(self, queue: str) -> Optional[Tuple[RawMessage, JobEnvelope]]:
        """Move the next job to the processing list without blocking."""
        if not self._redis:
            await self.connect()
        while True:
            message_json = await self._redis.rpoplpush(
                self._queue_key(queue), self._processing_key(queue)
            )
            if not message_json:
                return None
            envelope = await self._decode(queue, message_json)
            if envelope is not None:
                return (queue, message_json), envelope

    async def subscribe(
        self, queue: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, JobEnvelope]]:
        """Consume jobs from the Redis queue."""
        if not self._redis:
            await self.connect()

        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            message_json = await self._redis.brpoplpush(
                self._queue_key(queue), self._processing_key(queue), timeout=1
            )
            if not message_json:
                continue
            envelope = await self._decode(queue, message_json)
            if envelope is None:
                continue
            yield (queue, message_json), envelope

    async def ack(self, raw_message: RawMessage) -> None:
        queue, message_json = raw_message
        await self._redis.lrem(self._processing_key(queue), 1, message_json)

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        queue, message_json = raw_message
        envelope = JobEnvelope.from_json(message_json)
        await self._redis.lrem(self._processing_key(queue), 1, message_json)
        if requeue and not envelope.exhausted:
            await self._redis.lpush(self._queue_key(queue), envelope.redelivery().to_json())
        else:
            logger.warning(
                f"Dead-lettering job {envelope.job_id} from {queue} "
                f"after {envelope.attempt} attempts"
            )
            await self._redis.lpush(self._dead_key(queue), message_json)

    async def pending(self, queue: str) -> int:
        if not self._redis:
            await self.connect()
        return await self._redis.llen(self._queue_key(queue))
