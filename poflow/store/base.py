"""Store abstractions for accumulated stage results and workflow runs."""

from __future__ import annotations

import abc
import logging
from typing import Any, Dict, Iterable, List, Optional

from ..contracts import IDENTIFIER_FIELDS, utcnow
from .models import WorkflowRun

logger = logging.getLogger(__name__)


def merge_stage_results(
    records: Iterable[Dict[str, Any]], workflow_id: str
) -> Dict[str, Any]:
    """Fold stage records (in completion order) into one accumulated dict.

    Later stages win on key conflicts. Identifier fields keep the most
    recent non-empty value, so a stage that reports ``purchaseOrderId=None``
    cannot erase an id recorded earlier.
    """
    accumulated: Dict[str, Any] = {}
    identifiers: Dict[str, Any] = {"workflowId": workflow_id}
    previous_stages: Dict[str, Any] = {}

    for record in records:
        result = record.get("result") or {}
        accumulated.update(result)
        for field in IDENTIFIER_FIELDS:
            value = result.get(field)
            if value not in (None, ""):
                identifiers[field] = value
        previous_stages[record["stage"]] = {
            "completed": True,
            "savedAt": record.get("savedAt"),
            "keys": sorted(result.keys()),
        }

    accumulated.update(identifiers)
    accumulated["previousStages"] = previous_stages
    return accumulated


def merge_for_dispatch(
    data: Dict[str, Any], accumulated: Dict[str, Any]
) -> Dict[str, Any]:
    """Combine caller data with accumulated data for a stage job.

    Accumulated values win on conflict, then the caller's explicit
    identifiers are re-asserted so they cannot be shadowed.
    """
    merged = {**data, **accumulated}
    for field in IDENTIFIER_FIELDS:
        value = data.get(field)
        if value not in (None, ""):
            merged[field] = value
    return merged


class StageResultStore(abc.ABC):
    """Durable, TTL'd record of each stage's output for a workflow run."""

    def __init__(self, ttl_seconds: int = 7200) -> None:
        self.ttl_seconds = ttl_seconds

    @abc.abstractmethod
    async def _write(self, workflow_id: str, stage: str, record: Dict[str, Any]) -> None:
        """Persist ``record`` for ``stage`` and refresh the TTL."""

    @abc.abstractmethod
    async def _read_all(self, workflow_id: str) -> List[Dict[str, Any]]:
        """Return all records for ``workflow_id`` in completion order."""

    @abc.abstractmethod
    async def clear_workflow_results(self, workflow_id: str) -> None:
        """Delete every stage result for ``workflow_id``."""

    @abc.abstractmethod
    async def extend_ttl(self, workflow_id: str, ttl_seconds: Optional[int] = None) -> None:
        """Push back expiry of all stage results for ``workflow_id``."""

    async def save_stage_result(
        self, workflow_id: str, stage: str, result: Dict[str, Any]
    ) -> None:
        record = {
            "stage": str(stage),
            "savedAt": utcnow().isoformat(),
            "result": result,
        }
        await self._write(workflow_id, str(stage), record)
        logger.info(f"Saved {stage} result for workflow_id={workflow_id}")

    async def get_stage_result(
        self, workflow_id: str, stage: str
    ) -> Optional[Dict[str, Any]]:
        for record in await self._read_all(workflow_id):
            if record["stage"] == str(stage):
                return record["result"]
        return None

    async def get_accumulated_data(
        self, workflow_id: str, fallback: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Merged view of every recorded stage result.

        Never raises: if the backend is unreachable the ``fallback`` (or an
        empty dict) is returned and a warning is logged.
        """
        try:
            records = await self._read_all(workflow_id)
        except Exception as exc:
            logger.warning(
                f"Accumulated data unavailable for workflow_id={workflow_id}, "
                f"continuing with fallback data; identifiers may be lost: {exc}"
            )
            return dict(fallback or {})
        return merge_stage_results(records, workflow_id)


class WorkflowRunStore(abc.ABC):
    """Storage for :class:`WorkflowRun` metadata."""

    def __init__(self, ttl_seconds: int = 14400) -> None:
        self.ttl_seconds = ttl_seconds

    @abc.abstractmethod
    async def save(self, run: WorkflowRun) -> None:
        """Persist ``run`` and refresh its TTL."""

    @abc.abstractmethod
    async def get(self, workflow_id: str) -> Optional[WorkflowRun]:
        """Return the run or ``None`` if missing or expired."""

    @abc.abstractmethod
    async def delete(self, workflow_id: str) -> None:
        """Remove the run."""

    @abc.abstractmethod
    async def list_active(self) -> List[WorkflowRun]:
        """Return all runs whose status is ``active``."""
