"""Queue consumer that feeds stage jobs to the orchestrator."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional

from .contracts import IMAGE_SEARCH_QUEUE, STAGE_QUEUES, JobEnvelope, QueuedStageJob
from .errors import StageFailedError, is_retryable
from .orchestrator import WorkflowOrchestrator
from .transports import BaseTransport

logger = logging.getLogger(__name__)

DEFAULT_QUEUES: tuple[str, ...] = (*STAGE_QUEUES.values(), IMAGE_SEARCH_QUEUE)


class StageWorker:
    """Consume stage queues and acknowledge according to the failure kind.

    Successful jobs are acked. A stage failure with a retryable cause is
    nacked so the transport redelivers it until its attempts run out; fatal
    failures are acked and dropped since the workflow is already failed.
    """

    def __init__(
        self,
        orchestrator: WorkflowOrchestrator,
        transport: Optional[BaseTransport] = None,
        queues: Optional[Iterable[str]] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self._transport = transport or orchestrator.runtime.transport
        self.queues = tuple(queues or DEFAULT_QUEUES)
        self.processed = 0
        self.failed = 0

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume every configured queue concurrently until ``lifespan`` elapses."""
        logger.info(f"Worker consuming {', '.join(self.queues)}")
        await asyncio.gather(*(self._consume(queue, lifespan) for queue in self.queues))

    async def _consume(self, queue: str, lifespan: Optional[float]) -> None:
        async for raw_message, envelope in self._transport.subscribe(
            queue, lifespan=lifespan
        ):
            await self.handle(queue, raw_message, envelope)

    async def handle(self, queue: str, raw_message: Any, envelope: JobEnvelope) -> bool:
        """Process one delivered job; returns whether it succeeded."""
        job = QueuedStageJob(envelope)
        try:
            if queue == IMAGE_SEARCH_QUEUE:
                await self.orchestrator.run_image_search(job)
            else:
                await self.orchestrator.process_job(job)
        except StageFailedError as exc:
            self.failed += 1
            await self._settle_failure(raw_message, envelope, exc, exc.retryable)
            return False
        except Exception as exc:
            # Only the image-search handler raises unwrapped errors.
            self.failed += 1
            await self._settle_failure(raw_message, envelope, exc, is_retryable(exc))
            return False

        await self._transport.ack(raw_message)
        self.processed += 1
        return True

    async def _settle_failure(
        self,
        raw_message: Any,
        envelope: JobEnvelope,
        error: BaseException,
        retryable: bool,
    ) -> None:
        if retryable:
            logger.warning(
                f"Job {envelope.job_id} ({envelope.stage}) for workflow_id="
                f"{envelope.workflow_id} failed on attempt {envelope.attempt}/"
                f"{envelope.max_attempts}, requeueing: {error}"
            )
            await self._transport.nack(raw_message, requeue=True)
        else:
            logger.error(
                f"Job {envelope.job_id} ({envelope.stage}) for workflow_id="
                f"{envelope.workflow_id} failed permanently: {error}"
            )
            await self._transport.ack(raw_message)

    async def run_until_idle(self, max_jobs: Optional[int] = None) -> int:
        """Drain the queues in-process, in pipeline order, until none has work.

        Returns the number of jobs handled.
        """
        handled = 0
        while max_jobs is None or handled < max_jobs:
            progressed = False
            for queue in self.queues:
                delivered = await self._transport.pop(queue)
                if delivered is None:
                    continue
                raw_message, envelope = delivered
                await self.handle(queue, raw_message, envelope)
                handled += 1
                progressed = True
                if max_jobs is not None and handled >= max_jobs:
                    break
            if not progressed:
                break
        return handled
