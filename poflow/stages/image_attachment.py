"""IMAGE_ATTACHMENT: source candidate images for each product draft."""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel

from ..contracts import IMAGE_SEARCH_QUEUE, JobEnvelope, Stage, StageJob, StageOutput
from ..errors import OperationTimeoutError
from ..persistence.models import ProductImage
from ..utils.retry import with_timeout
from .base import StageContext, StageProcessor, require
from .product_drafts import draft_summary

logger = logging.getLogger(__name__)


class ImageBatchResult(BaseModel):
    processed_drafts: int = 0
    images_found: int = 0
    images_saved: int = 0
    failed_searches: int = 0
    timed_out: int = 0


async def load_drafts(
    data: dict[str, Any], po_id: str, ctx: StageContext
) -> list[dict[str, Any]]:
    """Draft summaries from accumulated data, falling back to the repository."""
    drafts = data.get("productDrafts") or []
    if drafts:
        return drafts
    stored = await ctx.retry(
        lambda: ctx.repository.list_product_drafts(po_id), f"Load drafts for {po_id}"
    )
    if not stored:
        return []
    line_items = {item.id: item for item in await ctx.repository.list_line_items(po_id)}
    return [draft_summary(d, line_items.get(d.line_item_id)) for d in stored]


async def attach_images(
    drafts: list[dict[str, Any]],
    ctx: StageContext,
    *,
    purchase_order_id: Optional[str],
    workflow_id: str,
    report_progress: bool = True,
) -> ImageBatchResult:
    """Search and save images for every draft.

    A slow or failing search only costs that draft its images. Drafts that
    already have images are left alone so redelivered jobs do not duplicate
    them.
    """
    pipeline = ctx.config.pipeline
    result = ImageBatchResult()
    total = len(drafts)
    for index, draft in enumerate(drafts):
        existing = await ctx.repository.list_product_images(draft["id"])
        if existing:
            result.processed_drafts += 1
            continue
        try:
            candidates = await with_timeout(
                ctx.images.search_images(draft),
                pipeline.image_search_timeout_seconds,
                operation_name=f"Image search for draft {draft['id']}",
            )
        except OperationTimeoutError as exc:
            result.timed_out += 1
            logger.warning(f"{exc} (workflow_id={workflow_id})")
            candidates = []
        except Exception as exc:
            result.failed_searches += 1
            logger.warning(
                f"Image search failed for draft {draft['id']} (workflow_id={workflow_id}): {exc}"
            )
            candidates = []

        if candidates:
            result.images_found += 1
            for position, candidate in enumerate(candidates[: pipeline.max_images_per_draft]):
                await ctx.repository.create_product_image(
                    ProductImage(
                        product_draft_id=draft["id"],
                        original_url=candidate.url,
                        alt_text=candidate.alt_text or draft.get("title"),
                        position=position,
                        source=candidate.source,
                        confidence=candidate.confidence,
                    )
                )
                result.images_saved += 1

        result.processed_drafts += 1
        if not report_progress:
            continue
        await ctx.update_progress(
            purchase_order_id,
            Stage.IMAGE_ATTACHMENT.value,
            round(20 + (index + 1) / total * 60),
            index + 1,
            total,
        )
    return result


class ImageAttachmentProcessor(StageProcessor):
    stage = Stage.IMAGE_ATTACHMENT

    async def process(
        self, job: StageJob, data: dict[str, Any], ctx: StageContext
    ) -> StageOutput:
        po_id = require(data, "purchaseOrderId", self.stage)
        await job.report_progress(10)
        await ctx.update_progress(po_id, self.stage.value, 10, 0, 0)

        drafts = await load_drafts(data, po_id, ctx)
        if not drafts:
            logger.info(
                f"No product drafts for purchase_order_id={po_id}, skipping image attachment"
            )
            stage_result = {
                "success": True,
                "skipped": True,
                "reason": "No product drafts available",
            }
            return StageOutput(
                stage_result=stage_result,
                next_stage_data=data,
                next_stage=Stage.SHOPIFY_SYNC,
                skipped=True,
            )

        await ctx.update_progress(po_id, self.stage.value, 20, 0, len(drafts))
        projector = ctx.projector(self.stage, data)

        if ctx.config.pipeline.image_mode == "async":
            envelope = JobEnvelope(
                workflow_id=job.workflow_id,
                stage=IMAGE_SEARCH_QUEUE,
                payload={
                    "workflowId": job.workflow_id,
                    "merchantId": data.get("merchantId"),
                    "purchaseOrderId": po_id,
                    "productDrafts": drafts,
                },
                max_attempts=ctx.config.transport.max_attempts,
            )
            await ctx.transport.add_job(IMAGE_SEARCH_QUEUE, envelope)
            await projector.publish_stage_complete(
                f"Queued image search for {len(drafts)} drafts"
            )
            stage_result = {
                "mode": "async",
                "queuedDrafts": len(drafts),
                "imageSearchJobId": envelope.job_id,
                "purchaseOrderId": po_id,
            }
        else:
            batch = await attach_images(
                drafts, ctx, purchase_order_id=po_id, workflow_id=job.workflow_id
            )
            await projector.publish_stage_complete(
                f"Found images for {batch.images_found} of {len(drafts)} drafts"
            )
            stage_result = {
                "mode": "sync",
                "processedDrafts": batch.processed_drafts,
                "imagesFound": batch.images_found,
                "imagesSaved": batch.images_saved,
                "failedSearches": batch.failed_searches,
                "timedOutSearches": batch.timed_out,
                "purchaseOrderId": po_id,
            }

        await job.report_progress(90)
        return StageOutput(
            stage_result=stage_result,
            next_stage_data={**data, "imageAttachmentResult": stage_result},
            next_stage=Stage.SHOPIFY_SYNC,
        )
