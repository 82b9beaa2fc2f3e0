"""Shared plumbing for stage processors."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..collaborators.ai import DocumentParser
from ..collaborators.images import ImageSearcher
from ..collaborators.pricing import PricingEngine
from ..collaborators.storage import FileStorage
from ..collaborators.sync import StoreSync
from ..config import PoflowConfig
from ..contracts import Stage, StageJob, StageOutput
from ..errors import MissingIdentifierError
from ..locking import PurchaseOrderLock
from ..persistence.repository import PurchaseOrderRepository
from ..progress import (
    NullProgressChannel,
    ProgressChannel,
    ProgressProjector,
    ProgressRecorder,
)
from ..transports.base import BaseTransport
from ..utils.retry import RetryPolicy

T = TypeVar("T")

ProgressUpdater = Callable[[Optional[str], str, int, int, int], Awaitable[None]]


async def _skip_progress(*args: Any) -> None:
    return None


@dataclass
class StageContext:
    """Services injected into every stage processor."""

    repository: PurchaseOrderRepository
    parser: DocumentParser
    images: ImageSearcher
    pricing: PricingEngine
    storage: FileStorage
    sync: StoreSync
    transport: BaseTransport
    lock: PurchaseOrderLock
    config: PoflowConfig
    progress_channel: ProgressChannel = field(default_factory=NullProgressChannel)
    update_progress: ProgressUpdater = _skip_progress
    record_progress: Optional[ProgressRecorder] = None

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(**self.config.retry.model_dump())

    async def retry(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        return await self.retry_policy.run(operation, name)

    def projector(self, stage: Stage, data: dict[str, Any]) -> ProgressProjector:
        return ProgressProjector(
            stage.value,
            merchant_id=data.get("merchantId"),
            purchase_order_id=data.get("purchaseOrderId"),
            workflow_id=data.get("workflowId"),
            channel=self.progress_channel,
            on_progress=self.record_progress,
        )


def require(data: dict[str, Any], key: str, stage: Stage) -> Any:
    value = data.get(key)
    if value in (None, ""):
        raise MissingIdentifierError(f"{key} is required for {stage.value}")
    return value


class StageProcessor(abc.ABC):
    """One pipeline stage.

    Processors raise on stage-level failure; the orchestrator records the
    failure and hands the error back to the queue.
    """

    stage: Stage

    @abc.abstractmethod
    async def process(
        self, job: StageJob, data: dict[str, Any], ctx: StageContext
    ) -> StageOutput:
        raise NotImplementedError
