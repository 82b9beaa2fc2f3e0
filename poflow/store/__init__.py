"""Orchestration state: accumulated stage results and workflow runs."""

from __future__ import annotations

from typing import Any, Optional, Tuple

from ..config import PoflowConfig, load_config
from .base import StageResultStore, WorkflowRunStore, merge_for_dispatch, merge_stage_results
from .inmemory import InMemoryStageResultStore, InMemoryWorkflowRunStore
from .models import StageState, WorkflowError, WorkflowRun


def get_stores(
    config: Optional[PoflowConfig] = None, redis_client: Any = None
) -> Tuple[StageResultStore, WorkflowRunStore]:
    """Factory returning the configured stage result and workflow run stores."""

    config = config or load_config()
    store_conf = config.store

    if store_conf.backend == "inmemory":
        return (
            InMemoryStageResultStore(store_conf.stage_result_ttl_seconds),
            InMemoryWorkflowRunStore(store_conf.run_ttl_seconds),
        )
    elif store_conf.backend == "redis":
        from ..utils.redis import create_redis
        from .redis import RedisStageResultStore, RedisWorkflowRunStore

        client = redis_client or create_redis(config.transport.redis)
        return (
            RedisStageResultStore(client, store_conf.stage_result_ttl_seconds),
            RedisWorkflowRunStore(client, store_conf.run_ttl_seconds),
        )
    else:
        raise ValueError(f"Unsupported store backend: {store_conf.backend}")


__all__ = [
    "StageResultStore",
    "WorkflowRunStore",
    "InMemoryStageResultStore",
    "InMemoryWorkflowRunStore",
    "StageState",
    "WorkflowError",
    "WorkflowRun",
    "get_stores",
    "merge_for_dispatch",
    "merge_stage_results",
]
