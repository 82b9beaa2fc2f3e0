"""Data models for workflow orchestration state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from ..contracts import PIPELINE, Stage, utcnow

RunStatus = Literal["active", "completed", "failed"]
StageStatus = Literal["pending", "processing", "completed", "skipped", "failed"]


class StageState(BaseModel):
    status: StageStatus = "pending"
    updated_at: Optional[datetime] = None


class WorkflowError(BaseModel):
    stage: str
    message: str
    trace: Optional[str] = None


class WorkflowRun(BaseModel):
    """One end-to-end execution of the pipeline for one uploaded document."""

    workflow_id: str
    status: RunStatus = "active"
    current_stage: str = Stage.AI_PARSING.value
    stages: Dict[str, StageState] = Field(
        default_factory=lambda: {stage.value: StageState() for stage in PIPELINE}
    )
    progress_percent: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error: Optional[WorkflowError] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    review_needed: bool = False

    @property
    def purchase_order_id(self) -> Optional[str]:
        return self.payload.get("purchaseOrderId")

    @property
    def merchant_id(self) -> Optional[str]:
        return self.payload.get("merchantId")

    def completed_stages(self) -> list[str]:
        return [
            stage.value
            for stage in PIPELINE
            if self.stages.get(stage.value, StageState()).status
            in ("completed", "skipped")
        ]

    def stage_progress(self) -> int:
        """Progress derived from the completed-stage count."""
        return round(len(self.completed_stages()) / len(PIPELINE) * 100)

    def mark_stage(self, stage: str, status: StageStatus) -> None:
        now = utcnow()
        self.stages[stage] = StageState(status=status, updated_at=now)
        self.current_stage = stage
        self.updated_at = now
        # Finer-grained projector updates may already be ahead of the count.
        self.progress_percent = max(self.progress_percent, self.stage_progress())
