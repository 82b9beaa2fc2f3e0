from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from ..contracts import utcnow


class WorkflowExecution(SQLModel, table=True):
    """Audit row for one workflow run."""

    workflow_id: str = Field(primary_key=True)
    purchase_order_id: Optional[str] = Field(default=None, index=True)
    merchant_id: Optional[str] = Field(default=None, index=True)
    status: str = Field(default="active")
    current_stage: Optional[str] = None
    progress: int = 0
    started_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    error_message: Optional[str] = None


class StageExecution(SQLModel, table=True):
    """Tracks one attempt of one stage."""

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    workflow_id: str = Field(foreign_key="workflowexecution.workflow_id", index=True)
    stage: str
    status: str = Field(default="processing")
    attempt: int = 1
    input_keys: list = Field(default_factory=list, sa_column=Column(JSON))
    output: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    finished_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
