"""Workflow orchestrator: the single dispatch boundary of the pipeline.

The orchestrator starts workflow runs, schedules each stage with the data
accumulated so far, runs stage processors under the purchase-order lock,
and is the only place where a stage failure is translated into workflow
and purchase-order state.
"""

from __future__ import annotations

import asyncio
import json
import logging
import traceback
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .contracts import (
    IDENTIFIER_FIELDS,
    PIPELINE,
    STAGE_MESSAGES,
    STAGE_QUEUES,
    JobEnvelope,
    Stage,
    StageJob,
    StageOutput,
    utcnow,
)
from .db import ExecutionLog
from .errors import (
    MissingIdentifierError,
    OperationTimeoutError,
    StageFailedError,
    friendly_message,
)
from .runtime import Runtime
from .stages import StageContext, StageProcessor, attach_images, default_processors
from .stages.ai_parsing import CONTENT_KEYS
from .stages.image_attachment import ImageBatchResult
from .store import StageState, WorkflowError, WorkflowRun, merge_for_dispatch

logger = logging.getLogger(__name__)

T = TypeVar("T")


def new_workflow_id() -> str:
    return f"wf_{uuid.uuid4().hex}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class WorkflowOrchestrator:
    """Drive purchase-order workflow runs through the fixed stage pipeline."""

    def __init__(
        self,
        runtime: Runtime,
        processors: Optional[Dict[Stage, StageProcessor]] = None,
    ) -> None:
        self.runtime = runtime
        self.processors = processors or default_processors()
        self.context = StageContext(
            repository=runtime.repository,
            parser=runtime.parser,
            images=runtime.images,
            pricing=runtime.pricing,
            storage=runtime.storage,
            sync=runtime.sync,
            transport=runtime.transport,
            lock=runtime.lock,
            config=runtime.config,
            progress_channel=runtime.progress_channel,
            update_progress=self.update_purchase_order_progress,
            record_progress=self.record_run_progress,
        )

    # ------------------------------------------------------------------
    # Execution log
    # ------------------------------------------------------------------
    async def _audit(
        self, what: str, call: Callable[[ExecutionLog], Awaitable[T]]
    ) -> Optional[T]:
        log = self.runtime.execution_log
        if log is None:
            return None
        try:
            return await call(log)
        except Exception as exc:
            logger.warning(f"Execution log {what} failed: {exc}")
            return None

    async def _mark_purchase_order_processing(
        self, purchase_order_id: Optional[str], workflow_id: str
    ) -> None:
        if not purchase_order_id:
            return
        try:
            await self.context.retry(
                lambda: self.runtime.repository.update_purchase_order(
                    purchase_order_id,
                    status="processing",
                    job_status="processing",
                    job_started_at=utcnow(),
                    job_error=None,
                    workflow_id=workflow_id,
                ),
                f"Mark purchase order {purchase_order_id} processing",
            )
        except Exception as exc:
            logger.warning(
                f"Could not mark purchase_order_id={purchase_order_id} processing "
                f"for workflow_id={workflow_id}: {exc}"
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start_workflow(self, data: Dict[str, Any]) -> str:
        """Create a workflow run for an uploaded document and schedule AI parsing."""
        if not data.get("merchantId"):
            raise MissingIdentifierError("merchantId is required to start a workflow")

        workflow_id = data.get("workflowId") or new_workflow_id()
        data = {**data, "workflowId": workflow_id}
        run = WorkflowRun(
            workflow_id=workflow_id,
            payload={k: v for k, v in data.items() if k not in CONTENT_KEYS},
        )
        await self.runtime.run_store.save(run)

        purchase_order_id = data.get("purchaseOrderId")
        await self._audit(
            "workflow start",
            lambda log: log.record_workflow_start(
                workflow_id,
                purchase_order_id=purchase_order_id,
                merchant_id=data["merchantId"],
                current_stage=Stage.AI_PARSING.value,
            ),
        )
        await self._mark_purchase_order_processing(purchase_order_id, workflow_id)
        await self.schedule_next_stage(workflow_id, Stage.AI_PARSING, data)
        logger.info(
            f"Started workflow_id={workflow_id} for merchant {data['merchantId']} "
            f"file={data.get('fileName')}"
        )
        return workflow_id

    async def _enqueue(
        self, workflow_id: str, stage: Stage, data: Dict[str, Any]
    ) -> JobEnvelope:
        accumulated = await self.runtime.stage_store.get_accumulated_data(
            workflow_id, fallback=data
        )
        payload = merge_for_dispatch(data, accumulated)
        payload["workflowId"] = workflow_id

        run = await self.runtime.run_store.get(workflow_id)
        if run is not None:
            run.mark_stage(stage.value, "processing")
            await self.runtime.run_store.save(run)

        envelope = JobEnvelope(
            workflow_id=workflow_id,
            stage=stage.value,
            payload=payload,
            max_attempts=self.runtime.config.transport.max_attempts,
        )
        await self.runtime.transport.add_job(STAGE_QUEUES[stage], envelope)
        return envelope

    async def schedule_next_stage(
        self, workflow_id: str, stage: Stage, data: Dict[str, Any]
    ) -> JobEnvelope:
        """Enqueue ``stage`` with the caller's data merged over accumulated results.

        The whole merge-and-enqueue sequence is retried once before giving up.
        """
        stage = Stage(stage)
        try:
            envelope = await self._enqueue(workflow_id, stage, data)
        except Exception as exc:
            logger.warning(
                f"Scheduling {stage.value} for workflow_id={workflow_id} failed, "
                f"retrying once: {exc}"
            )
            await asyncio.sleep(self.runtime.config.retry.initial_delay_ms / 1000)
            envelope = await self._enqueue(workflow_id, stage, data)
        logger.info(f"Scheduled {stage.value} for workflow_id={workflow_id}")
        return envelope

    async def process_job(self, job: StageJob) -> Optional[StageOutput]:
        """Run one stage job.

        The lock is taken before the run state is read, so a concurrent
        duplicate delivery waits and then sees the finished stage. Returns
        ``None`` when the job is a duplicate delivery of a stage that already
        finished. Any processor error marks the workflow and its purchase
        order failed and is re-raised as :class:`StageFailedError`.
        """
        stage = Stage(job.stage)
        workflow_id = job.workflow_id
        processor = self.processors[stage]

        run = await self.runtime.run_store.get(workflow_id)
        purchase_order_id = job.payload.get("purchaseOrderId") or (
            run.purchase_order_id if run is not None else None
        )
        # Before database save there is no purchase order yet; serialize on the run.
        release = await self.runtime.lock.acquire(
            purchase_order_id or f"workflow:{workflow_id}",
            workflow_id=workflow_id,
            stage=stage.value,
        )
        stage_execution = None
        try:
            run = await self.runtime.run_store.get(workflow_id)
            if run is not None:
                state = run.stages.get(stage.value, StageState())
                if run.status == "completed" or state.status in ("completed", "skipped"):
                    logger.info(
                        f"Ignoring duplicate {stage.value} job for workflow_id={workflow_id}"
                    )
                    return None
                if run.status == "failed":
                    logger.info(
                        f"Resuming workflow_id={workflow_id} at {stage.value} "
                        f"(attempt {job.attempt})"
                    )
                    run.status = "active"
                    run.error = None
                    run.failed_at = None
                    run.mark_stage(stage.value, "processing")
                    await self.runtime.run_store.save(run)
                    await self._mark_purchase_order_processing(
                        run.purchase_order_id, workflow_id
                    )
            else:
                logger.warning(
                    f"No workflow run found for workflow_id={workflow_id}, "
                    f"processing {stage.value} without run state"
                )

            accumulated = await self.runtime.stage_store.get_accumulated_data(
                workflow_id, fallback=job.payload
            )
            data = merge_for_dispatch(job.payload, accumulated)
            data["workflowId"] = workflow_id
            if run is not None and run.review_needed:
                data["reviewNeeded"] = True
            purchase_order_id = data.get("purchaseOrderId") or purchase_order_id

            stage_execution = await self._audit(
                "stage start",
                lambda log: log.record_stage_start(
                    workflow_id, stage.value, data, attempt=job.attempt
                ),
            )
            output = await processor.process(job, data, self.context)

            await self.runtime.stage_store.save_stage_result(
                workflow_id, stage.value, output.stage_result
            )
            await self._record_stage_done(workflow_id, stage, output)
            if stage_execution is not None:
                await self._audit(
                    "stage result",
                    lambda log: log.record_stage_result(
                        stage_execution.id,
                        output.stage_result,
                        status="skipped" if output.skipped else "completed",
                    ),
                )

            if output.next_stage is None:
                await self.complete_workflow(workflow_id, output.stage_result)
            else:
                await self.schedule_next_stage(
                    workflow_id, output.next_stage, output.next_stage_data
                )
            await job.report_progress(100)
            return output
        except Exception as exc:
            await self.fail_workflow(
                workflow_id,
                stage.value,
                exc,
                purchase_order_id=purchase_order_id
                or getattr(exc, "purchase_order_id", None),
                stage_execution_id=getattr(stage_execution, "id", None),
            )
            raise StageFailedError(stage.value, str(exc) or exc.__class__.__name__) from exc
        finally:
            await release()

    async def _record_stage_done(
        self, workflow_id: str, stage: Stage, output: StageOutput
    ) -> None:
        run = await self.runtime.run_store.get(workflow_id)
        if run is None:
            return
        run.mark_stage(stage.value, "skipped" if output.skipped else "completed")
        for field in IDENTIFIER_FIELDS:
            value = output.stage_result.get(field)
            if value not in (None, ""):
                run.payload[field] = value
        if output.stage_result.get("failedItems"):
            run.review_needed = True
        await self.runtime.run_store.save(run)
        await self._audit(
            "workflow progress",
            lambda log: log.update_workflow(
                workflow_id,
                progress=run.progress_percent,
                purchase_order_id=run.purchase_order_id,
            ),
        )

    async def complete_workflow(
        self, workflow_id: str, result: Optional[Dict[str, Any]] = None
    ) -> None:
        run = await self.runtime.run_store.get(workflow_id)
        if run is not None:
            now = utcnow()
            run.status = "completed"
            run.current_stage = Stage.COMPLETED.value
            run.progress_percent = 100
            run.completed_at = now
            run.updated_at = now
            run.result = result
            await self.runtime.run_store.save(run)

        await self._audit(
            "workflow completion",
            lambda log: log.record_workflow_finished(workflow_id, "completed"),
        )
        try:
            await self.runtime.stage_store.clear_workflow_results(workflow_id)
        except Exception as exc:
            logger.warning(
                f"Could not clear stage results for workflow_id={workflow_id}: {exc}"
            )
        logger.info(f"Workflow workflow_id={workflow_id} completed")

    async def fail_workflow(
        self,
        workflow_id: str,
        stage: str,
        error: BaseException,
        purchase_order_id: Optional[str] = None,
        stage_execution_id: Any = None,
    ) -> None:
        """Record a stage failure on the run, the purchase order and the execution log.

        Failures while recording are logged so they never hide ``error``.
        """
        stage = str(getattr(stage, "value", stage))
        message = str(error) or error.__class__.__name__
        notes = friendly_message(stage, error)
        logger.error(f"Workflow workflow_id={workflow_id} failed at {stage}: {message}")

        try:
            run = await self.runtime.run_store.get(workflow_id)
            if run is not None:
                run.mark_stage(stage, "failed")
                run.status = "failed"
                run.failed_at = utcnow()
                run.error = WorkflowError(
                    stage=stage,
                    message=message,
                    trace="".join(
                        traceback.format_exception(type(error), error, error.__traceback__)
                    ),
                )
                await self.runtime.run_store.save(run)
                purchase_order_id = purchase_order_id or run.purchase_order_id
        except Exception as exc:
            logger.error(f"Could not record failure of workflow_id={workflow_id}: {exc}")

        if purchase_order_id:
            try:
                await self.runtime.repository.update_purchase_order(
                    purchase_order_id,
                    status="failed",
                    job_status="failed",
                    job_error=message,
                    job_completed_at=utcnow(),
                    processing_notes=notes,
                )
            except Exception as exc:
                logger.error(
                    f"Could not mark purchase_order_id={purchase_order_id} failed: {exc}"
                )

        if stage_execution_id is not None:
            await self._audit(
                "stage error",
                lambda log: log.record_stage_error(stage_execution_id, message),
            )
        await self._audit(
            "workflow failure",
            lambda log: log.record_workflow_finished(workflow_id, "failed", notes),
        )

    async def record_run_progress(self, workflow_id: str, percent: int) -> None:
        """Store a projector percentage on an active run; the bar never moves back."""
        run = await self.runtime.run_store.get(workflow_id)
        if run is None or run.status != "active" or percent <= run.progress_percent:
            return
        run.progress_percent = percent
        run.updated_at = utcnow()
        await self.runtime.run_store.save(run)

    async def update_purchase_order_progress(
        self,
        purchase_order_id: Optional[str],
        stage: str,
        percent: int,
        items_processed: int = 0,
        total_items: int = 0,
    ) -> None:
        """Write stage progress into the purchase order's ``processing_notes``.

        Skipped without a purchase order id. Write failures, lock contention
        included, are logged and never fail the stage.
        """
        if not purchase_order_id:
            return
        try:
            message = STAGE_MESSAGES[Stage(stage)]
        except ValueError:
            message = stage
        notes = json.dumps(
            {
                "currentStep": stage,
                "progress": percent,
                "itemsProcessed": items_processed,
                "totalItems": total_items,
                "message": message,
                "updatedAt": utcnow().isoformat(),
            }
        )
        try:
            await self.runtime.repository.update_purchase_order(
                purchase_order_id, processing_notes=notes
            )
        except Exception as exc:
            logger.warning(
                f"Skipping progress update for purchase_order_id={purchase_order_id} "
                f"at {stage}: {exc}"
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def get_workflow_status(self, workflow_id: str) -> Dict[str, Any]:
        run = await self.runtime.run_store.get(workflow_id)
        if run is None:
            return {"status": "not_found", "workflowId": workflow_id}
        return {
            "status": run.status,
            "workflowId": run.workflow_id,
            "purchaseOrderId": run.purchase_order_id,
            "currentStage": run.current_stage,
            "stages": {name: state.status for name, state in run.stages.items()},
            "progress": run.progress_percent,
            "error": run.error.model_dump(exclude={"trace"}) if run.error else None,
            "reviewNeeded": run.review_needed,
            "startedAt": _iso(run.started_at),
            "updatedAt": _iso(run.updated_at),
            "completedAt": _iso(run.completed_at),
        }

    async def get_workflow_progress(self, workflow_id: str) -> Dict[str, Any]:
        run = await self.runtime.run_store.get(workflow_id)
        if run is None:
            return {
                "status": "not_found",
                "percentage": 0,
                "currentStage": None,
                "completedStages": [],
                "completed": False,
            }
        completed = run.status == "completed"
        return {
            "percentage": 100 if completed else run.progress_percent,
            "currentStage": run.current_stage,
            "completedStages": run.completed_stages(),
            "status": run.status,
            "completed": completed,
        }

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------
    async def retry_workflow(
        self, workflow_id: str, from_stage: Optional[str] = None
    ) -> JobEnvelope:
        """Re-schedule a failed (or stuck) run from ``from_stage``.

        Defaults to the stage that failed. Stage results recorded before that
        stage are reused, so they must not have expired.
        """
        run = await self.runtime.run_store.get(workflow_id)
        if run is None:
            raise ValueError(f"Workflow {workflow_id} not found")
        if run.status == "completed":
            raise ValueError(f"Workflow {workflow_id} already completed")
        if run.status == "active" and from_stage is None:
            raise ValueError(
                f"Workflow {workflow_id} is still active; pass a stage to force a retry"
            )

        if from_stage is not None:
            stage = Stage(from_stage)
        elif run.error is not None:
            stage = Stage(run.error.stage)
        else:
            stage = Stage(run.current_stage)

        for later in PIPELINE[PIPELINE.index(stage):]:
            run.stages[later.value] = StageState()
        run.status = "active"
        run.error = None
        run.failed_at = None
        run.completed_at = None
        run.mark_stage(stage.value, "pending")
        run.progress_percent = run.stage_progress()
        await self.runtime.run_store.save(run)

        await self._mark_purchase_order_processing(run.purchase_order_id, workflow_id)
        await self._audit(
            "workflow retry",
            lambda log: log.update_workflow(
                workflow_id,
                status="processing",
                current_stage=stage.value,
                error_message=None,
                completed_at=None,
            ),
        )
        logger.info(f"Retrying workflow_id={workflow_id} from {stage.value}")
        return await self.schedule_next_stage(workflow_id, stage, dict(run.payload))

    async def cleanup_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Fail active runs that have not moved for ``stuck_after_seconds``."""
        now = now or utcnow()
        threshold = self.runtime.config.pipeline.stuck_after_seconds
        failed: List[str] = []
        for run in await self.runtime.run_store.list_active():
            idle = (now - run.updated_at).total_seconds()
            if idle < threshold:
                continue
            error = OperationTimeoutError(
                f"Workflow stuck in {run.current_stage} for {int(idle)}s"
            )
            await self.fail_workflow(run.workflow_id, run.current_stage, error)
            failed.append(run.workflow_id)
        if failed:
            logger.warning(f"Failed {len(failed)} stuck workflows: {', '.join(failed)}")
        return failed

    # ------------------------------------------------------------------
    # Background image search
    # ------------------------------------------------------------------
    async def run_image_search(self, job: StageJob) -> ImageBatchResult:
        """Attach images for drafts queued by the image attachment stage."""
        payload = job.payload
        purchase_order_id = payload.get("purchaseOrderId")
        drafts = payload.get("productDrafts") or []
        async with self.runtime.lock.hold(
            purchase_order_id, workflow_id=job.workflow_id, stage="image_search"
        ):
            result = await attach_images(
                drafts,
                self.context,
                purchase_order_id=purchase_order_id,
                workflow_id=job.workflow_id,
                report_progress=False,
            )
        logger.info(
            f"Image search for workflow_id={job.workflow_id}: "
            f"{result.images_saved} images saved for {result.processed_drafts} drafts"
        )
        return result
