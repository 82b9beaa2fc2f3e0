"""Redis-backed stores shared across worker processes."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from .base import StageResultStore, WorkflowRunStore
from .models import WorkflowRun

KEY_PREFIX = "poflow"


class RedisStageResultStore(StageResultStore):
    """Persist stage results in Redis.

    Each result lives under its own key with ``SETEX``; a sorted set per
    workflow records completion order.
    """

    def __init__(self, redis_client: Any, ttl_seconds: int = 7200) -> None:
        super().__init__(ttl_seconds)
        self._redis = redis_client

    def _result_key(self, workflow_id: str, stage: str) -> str:
        return f"{KEY_PREFIX}:workflow:{workflow_id}:stage:{stage}:result"

    def _order_key(self, workflow_id: str) -> str:
        return f"{KEY_PREFIX}:workflow:{workflow_id}:stages"

    def _sequence_key(self, workflow_id: str) -> str:
        return f"{KEY_PREFIX}:workflow:{workflow_id}:seq"

    async def _write(self, workflow_id: str, stage: str, record: Dict[str, Any]) -> None:
        sequence = await self._redis.incr(self._sequence_key(workflow_id))
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.setex(
                self._result_key(workflow_id, stage),
                self.ttl_seconds,
                json.dumps(record, default=str),
            )
            pipe.zadd(self._order_key(workflow_id), {stage: sequence})
            pipe.expire(self._order_key(workflow_id), self.ttl_seconds)
            pipe.expire(self._sequence_key(workflow_id), self.ttl_seconds)
            await pipe.execute()

    async def _read_all(self, workflow_id: str) -> List[Dict[str, Any]]:
        stages = await self._redis.zrange(self._order_key(workflow_id), 0, -1)
        if not stages:
            return []
        values = await self._redis.mget(
            [self._result_key(workflow_id, stage) for stage in stages]
        )
        return [json.loads(value) for value in values if value]

    async def clear_workflow_results(self, workflow_id: str) -> None:
        stages = await self._redis.zrange(self._order_key(workflow_id), 0, -1)
        keys = [self._result_key(workflow_id, stage) for stage in stages]
        keys += [self._order_key(workflow_id), self._sequence_key(workflow_id)]
        await self._redis.delete(*keys)

    async def extend_ttl(self, workflow_id: str, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds or self.ttl_seconds
        stages = await self._redis.zrange(self._order_key(workflow_id), 0, -1)
        keys = [self._result_key(workflow_id, stage) for stage in stages]
        keys += [self._order_key(workflow_id), self._sequence_key(workflow_id)]
        for key in keys:
            await self._redis.expire(key, ttl)


class RedisWorkflowRunStore(WorkflowRunStore):
    """Persist workflow run metadata in Redis with a TTL."""

    def __init__(self, redis_client: Any, ttl_seconds: int = 14400) -> None:
        super().__init__(ttl_seconds)
        self._redis = redis_client

    def _key(self, workflow_id: str) -> str:
        return f"{KEY_PREFIX}:run:{workflow_id}"

    @property
    def _active_key(self) -> str:
        return f"{KEY_PREFIX}:runs:active"

    async def save(self, run: WorkflowRun) -> None:
        await self._redis.setex(
            self._key(run.workflow_id), self.ttl_seconds, run.model_dump_json()
        )
        if run.status == "active":
            await self._redis.sadd(self._active_key, run.workflow_id)
        else:
            await self._redis.srem(self._active_key, run.workflow_id)

    async def get(self, workflow_id: str) -> Optional[WorkflowRun]:
        data = await self._redis.get(self._key(workflow_id))
        return WorkflowRun.model_validate_json(data) if data else None

    async def delete(self, workflow_id: str) -> None:
        await self._redis.delete(self._key(workflow_id))
        await self._redis.srem(self._active_key, workflow_id)

    async def list_active(self) -> List[WorkflowRun]:
        runs = []
        for workflow_id in await self._redis.smembers(self._active_key):
            run = await self.get(workflow_id)
            if run is None:
                # Expired run; drop the dangling index entry.
                await self._redis.srem(self._active_key, workflow_id)
            elif run.status == "active":
                runs.append(run)
        return runs
