"""In-memory stores for tests and single-process deployments."""

from __future__ import annotations

import copy
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from .base import StageResultStore, WorkflowRunStore
from .models import WorkflowRun


class InMemoryStageResultStore(StageResultStore):
    """Keep stage results in local memory with TTL expiry.

    Data is not persisted across process restarts.
    """

    def __init__(
        self, ttl_seconds: int = 7200, clock: Callable[[], float] = time.monotonic
    ) -> None:
        super().__init__(ttl_seconds)
        self._clock = clock
        self._results: Dict[str, Dict[str, Tuple[int, float, Dict[str, Any]]]] = {}
        self._sequence = 0

    def _purge(self, workflow_id: str) -> None:
        now = self._clock()
        stages = self._results.get(workflow_id, {})
        for stage in [s for s, (_, expires, _) in stages.items() if expires <= now]:
            del stages[stage]
        if not stages:
            self._results.pop(workflow_id, None)

    async def _write(self, workflow_id: str, stage: str, record: Dict[str, Any]) -> None:
        self._sequence += 1
        stages = self._results.setdefault(workflow_id, {})
        stages[stage] = (
            self._sequence,
            self._clock() + self.ttl_seconds,
            copy.deepcopy(record),
        )

    async def _read_all(self, workflow_id: str) -> List[Dict[str, Any]]:
        self._purge(workflow_id)
        entries = sorted(self._results.get(workflow_id, {}).values(), key=lambda e: e[0])
        return [copy.deepcopy(record) for _, _, record in entries]

    async def clear_workflow_results(self, workflow_id: str) -> None:
        self._results.pop(workflow_id, None)

    async def extend_ttl(self, workflow_id: str, ttl_seconds: Optional[int] = None) -> None:
        expires = self._clock() + (ttl_seconds or self.ttl_seconds)
        stages = self._results.get(workflow_id, {})
        for stage, (seq, _, record) in list(stages.items()):
            stages[stage] = (seq, expires, record)


class InMemoryWorkflowRunStore(WorkflowRunStore):
    """Keep workflow runs in local memory with TTL expiry."""

    def __init__(
        self, ttl_seconds: int = 14400, clock: Callable[[], float] = time.monotonic
    ) -> None:
        super().__init__(ttl_seconds)
        self._clock = clock
        self._runs: Dict[str, Tuple[float, str]] = {}

    async def save(self, run: WorkflowRun) -> None:
        self._runs[run.workflow_id] = (
            self._clock() + self.ttl_seconds,
            run.model_dump_json(),
        )

    async def get(self, workflow_id: str) -> Optional[WorkflowRun]:
        entry = self._runs.get(workflow_id)
        if entry is None:
            return None
        expires, data = entry
        if expires <= self._clock():
            del self._runs[workflow_id]
            return None
        return WorkflowRun.model_validate_json(data)

    async def delete(self, workflow_id: str) -> None:
        self._runs.pop(workflow_id, None)

    async def list_active(self) -> List[WorkflowRun]:
        runs = []
        for workflow_id in list(self._runs):
            run = await self.get(workflow_id)
            if run is not None and run.status == "active":
                runs.append(run)
        return runs
