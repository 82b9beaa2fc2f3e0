"""Projection of per-stage progress onto the global workflow progress bar.

Each stage owns a fixed slice of the 0-100% bar. A stage reports local
progress (0-100 within the stage); the projector converts it to a global
percentage and publishes it to the merchant's progress channel, skipping
duplicates and never moving backwards within a stage. An optional recorder
receives the same percentage so it can be stored on the workflow run.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel, Field

from .contracts import Stage

logger = logging.getLogger(__name__)

ProgressRecorder = Callable[[str, int], Awaitable[None]]

STAGE_RANGES: Dict[str, Tuple[float, float]] = {
    Stage.AI_PARSING.value: (0, 40),
    Stage.DATABASE_SAVE.value: (40, 20),
    Stage.PRODUCT_DRAFT_CREATION.value: (60, 15),
    Stage.IMAGE_ATTACHMENT.value: (75, 10),
    Stage.SHOPIFY_SYNC.value: (85, 10),
    Stage.STATUS_UPDATE.value: (95, 5),
}


class ProgressEvent(BaseModel):
    """Progress notification delivered to subscribers."""

    workflow_id: Optional[str] = None
    purchase_order_id: Optional[str] = None
    stage: str
    progress: int
    message: str
    timestamp: float = Field(default_factory=time.time)
    details: Dict[str, Any] = Field(default_factory=dict)


class ProgressChannel(Protocol):
    async def publish(self, merchant_id: str, event: ProgressEvent) -> None: ...


class NullProgressChannel:
    async def publish(self, merchant_id: str, event: ProgressEvent) -> None:
        return None


class InMemoryProgressChannel:
    """Records published events; useful for tests and local runs."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, ProgressEvent]] = []

    async def publish(self, merchant_id: str, event: ProgressEvent) -> None:
        self.events.append((merchant_id, event))

    def for_workflow(self, workflow_id: str) -> List[ProgressEvent]:
        return [e for _, e in self.events if e.workflow_id == workflow_id]


class RedisProgressChannel:
    """Publish progress events on ``poflow:merchant:{id}:progress``."""

    def __init__(self, redis_client: Any) -> None:
        self._redis = redis_client

    async def publish(self, merchant_id: str, event: ProgressEvent) -> None:
        channel = f"poflow:merchant:{merchant_id}:progress"
        await self._redis.publish(channel, json.dumps(event.model_dump(), default=str))


def project(stage: str, local_percent: float) -> float:
    """Map ``local_percent`` within ``stage`` to the global 0-100 range."""
    start, span = STAGE_RANGES[str(stage)]
    local = max(0.0, min(100.0, float(local_percent)))
    return start + local / 100 * span


class ProgressProjector:
    """Publish stage-local progress as global workflow progress."""

    def __init__(
        self,
        stage: str,
        *,
        merchant_id: Optional[str],
        purchase_order_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        channel: Optional[ProgressChannel] = None,
        on_progress: Optional[ProgressRecorder] = None,
    ) -> None:
        self.merchant_id = merchant_id
        self.purchase_order_id = purchase_order_id
        self.workflow_id = workflow_id
        self.channel = channel or NullProgressChannel()
        self.on_progress = on_progress
        self.current_stage: Optional[str] = None
        self.last_published = -1
        self.set_stage(stage)

    def set_stage(self, stage: str) -> None:
        stage = str(getattr(stage, "value", stage))
        if stage not in STAGE_RANGES:
            logger.warning(f"Progress projector: unknown stage {stage!r}")
            return
        self.current_stage = stage
        self.last_published = -1

    async def publish_progress(
        self,
        local_percent: float,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        """Publish progress; returns the global percent or ``None`` if suppressed."""
        if self.current_stage is None:
            logger.warning("Progress projector: no stage set, cannot publish")
            return None

        rounded = round(project(self.current_stage, local_percent))
        if rounded <= self.last_published:
            return None
        self.last_published = rounded

        event = ProgressEvent(
            workflow_id=self.workflow_id,
            purchase_order_id=self.purchase_order_id,
            stage=self.current_stage,
            progress=rounded,
            message=message,
            details=details or {},
        )
        if self.merchant_id:
            try:
                await self.channel.publish(self.merchant_id, event)
            except Exception as exc:
                logger.warning(f"Failed to publish progress for workflow_id={self.workflow_id}: {exc}")
        if self.on_progress is not None and self.workflow_id:
            try:
                await self.on_progress(self.workflow_id, rounded)
            except Exception as exc:
                logger.warning(f"Failed to record progress for workflow_id={self.workflow_id}: {exc}")
        logger.debug(f"Progress {rounded}% [{self.current_stage}] {message}")
        return rounded

    async def publish_linear_progress(
        self,
        current: int,
        total: int,
        item_name: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        """Progress for item ``current`` (0-based) out of ``total``."""
        if total <= 0:
            logger.warning("Progress projector: invalid total for linear progress")
            return None
        local = (current + 1) / total * 100
        return await self.publish_progress(
            local,
            f"Processing {item_name} {current + 1}/{total}",
            {"current": current + 1, "total": total, "itemName": item_name, **(details or {})},
        )

    async def publish_sub_stage_progress(
        self,
        sub_local_percent: float,
        sub_start: float,
        sub_range: float,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        """Progress for a nested phase occupying ``sub_start``..``sub_start+sub_range`` of the stage."""
        local = sub_start + max(0.0, min(100.0, sub_local_percent)) / 100 * sub_range
        return await self.publish_progress(local, message, details)

    async def publish_stage_complete(
        self, message: str, details: Optional[Dict[str, Any]] = None
    ) -> Optional[int]:
        return await self.publish_progress(100, message, {**(details or {}), "completed": True})
