"""Core contracts shared by the orchestrator, workers and stage processors."""

from __future__ import annotations

import base64
import binascii
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Literal, Optional, Protocol

from pydantic import BaseModel, Field, field_validator


class Stage(str, Enum):
    AI_PARSING = "ai_parsing"
    DATABASE_SAVE = "database_save"
    PRODUCT_DRAFT_CREATION = "product_draft_creation"
    IMAGE_ATTACHMENT = "image_attachment"
    SHOPIFY_SYNC = "shopify_sync"
    STATUS_UPDATE = "status_update"
    COMPLETED = "completed"
    FAILED = "failed"


PIPELINE: tuple[Stage, ...] = (
    Stage.AI_PARSING,
    Stage.DATABASE_SAVE,
    Stage.PRODUCT_DRAFT_CREATION,
    Stage.IMAGE_ATTACHMENT,
    Stage.SHOPIFY_SYNC,
    Stage.STATUS_UPDATE,
)

STAGE_QUEUES: Dict[Stage, str] = {
    Stage.AI_PARSING: "ai-parsing",
    Stage.DATABASE_SAVE: "database-save",
    Stage.PRODUCT_DRAFT_CREATION: "product-draft-creation",
    Stage.IMAGE_ATTACHMENT: "image-attachment",
    Stage.SHOPIFY_SYNC: "shopify-sync",
    Stage.STATUS_UPDATE: "status-update",
}

IMAGE_SEARCH_QUEUE = "image-search"

STAGE_MESSAGES: Dict[Stage, str] = {
    Stage.AI_PARSING: "AI is analyzing your purchase order...",
    Stage.DATABASE_SAVE: "Saving purchase order data...",
    Stage.PRODUCT_DRAFT_CREATION: "Creating product drafts for refinement...",
    Stage.IMAGE_ATTACHMENT: "Searching and attaching product images...",
    Stage.SHOPIFY_SYNC: "Syncing with Shopify...",
    Stage.STATUS_UPDATE: "Finalizing...",
    Stage.COMPLETED: "Purchase order processed successfully",
    Stage.FAILED: "Processing failed - please try again",
}

# Identifier fields that must survive every merge of stage data.
IDENTIFIER_FIELDS: tuple[str, ...] = (
    "merchantId",
    "uploadId",
    "workflowId",
    "purchaseOrderId",
)


def next_stage(stage: Stage) -> Optional[Stage]:
    """Return the stage after ``stage`` or ``None`` after the last one."""
    index = PIPELINE.index(Stage(stage))
    return PIPELINE[index + 1] if index + 1 < len(PIPELINE) else None


def stage_for_queue(queue: str) -> Stage:
    for stage, name in STAGE_QUEUES.items():
        if name == queue:
            return stage
    raise ValueError(f"Unknown stage queue: {queue}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BinaryPayload(BaseModel):
    """Binary document content carried across a queue boundary.

    Only base64 is accepted; anything else is rejected when the envelope is
    deserialized rather than guessed at.
    """

    encoding: Literal["base64"] = "base64"
    media_type: str = "application/octet-stream"
    data: str

    @field_validator("data")
    @classmethod
    def _validate_base64(cls, value: str) -> str:
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"Invalid base64 payload: {exc}") from exc
        return value

    @classmethod
    def from_bytes(
        cls, raw: bytes, media_type: str = "application/octet-stream"
    ) -> "BinaryPayload":
        return cls(media_type=media_type, data=base64.b64encode(raw).decode("ascii"))

    def to_bytes(self) -> bytes:
        return base64.b64decode(self.data)

    @property
    def size(self) -> int:
        return len(self.to_bytes())


class JobEnvelope(BaseModel):
    """Message placed on a stage queue."""

    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    workflow_id: str
    stage: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempt: int = 1
    max_attempts: int = 3
    enqueued_at: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize envelope to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "JobEnvelope":
        """Deserialize envelope from JSON."""
        return cls.model_validate_json(data)

    def redelivery(self) -> "JobEnvelope":
        """Copy of this envelope for the next delivery attempt."""
        return self.model_copy(update={"attempt": self.attempt + 1, "enqueued_at": utcnow()})

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


class StageJob(Protocol):
    """Neutral unit of work handed to a stage processor."""

    id: str
    workflow_id: str
    stage: str
    payload: Dict[str, Any]
    attempt: int

    async def report_progress(self, percent: float) -> None: ...


class QueuedStageJob:
    """A :class:`StageJob` backed by an envelope received from a transport."""

    def __init__(
        self,
        envelope: JobEnvelope,
        on_progress: Optional[Callable[[str, float], Awaitable[None]]] = None,
    ) -> None:
        self.envelope = envelope
        self.id = envelope.job_id
        self.workflow_id = envelope.workflow_id
        self.stage = envelope.stage
        self.payload = envelope.payload
        self.attempt = envelope.attempt
        self.progress = 0.0
        self._on_progress = on_progress

    async def report_progress(self, percent: float) -> None:
        self.progress = max(0.0, min(100.0, float(percent)))
        if self._on_progress is not None:
            await self._on_progress(self.id, self.progress)


class InlineStageJob:
    """In-process :class:`StageJob` used when no queue is involved."""

    def __init__(
        self,
        workflow_id: str,
        stage: str,
        payload: Optional[Dict[str, Any]] = None,
        attempt: int = 1,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.workflow_id = workflow_id
        self.stage = stage
        self.payload = payload or {}
        self.attempt = attempt
        self.progress_history: list[float] = []

    async def report_progress(self, percent: float) -> None:
        self.progress_history.append(float(percent))


class StageOutput(BaseModel):
    """Result returned by a stage processor."""

    stage_result: Dict[str, Any] = Field(default_factory=dict)
    next_stage_data: Dict[str, Any] = Field(default_factory=dict)
    next_stage: Optional[Stage] = None
    skipped: bool = False
