"""SHOPIFY_SYNC: push the purchase order and its drafts to the storefront."""

from __future__ import annotations

import logging
from typing import Any

from ..contracts import Stage, StageJob, StageOutput
from ..errors import TransientConnectionError, ValidationFailedError
from .base import StageContext, StageProcessor, require

logger = logging.getLogger(__name__)


class StoreSyncProcessor(StageProcessor):
    stage = Stage.SHOPIFY_SYNC

    async def process(
        self, job: StageJob, data: dict[str, Any], ctx: StageContext
    ) -> StageOutput:
        po_id = require(data, "purchaseOrderId", self.stage)
        await job.report_progress(10)
        await ctx.update_progress(po_id, self.stage.value, 10, 0, 0)

        purchase_order = await ctx.retry(
            lambda: ctx.repository.get_purchase_order(po_id), f"Load purchase order {po_id}"
        )
        if purchase_order is None:
            raise ValidationFailedError(f"Purchase order {po_id} not found")
        drafts = await ctx.retry(
            lambda: ctx.repository.list_product_drafts(po_id), f"Load drafts for {po_id}"
        )
        await ctx.update_progress(po_id, self.stage.value, 50, 0, len(drafts))

        result = await ctx.retry(
            lambda: ctx.sync.sync_purchase_order(purchase_order, drafts),
            f"Store sync for {po_id}",
        )
        if not result.success:
            raise TransientConnectionError(
                f"Store sync failed for purchase order {po_id}: {result.message}"
            )

        await job.report_progress(90)
        await ctx.update_progress(po_id, self.stage.value, 90, len(drafts), len(drafts))
        logger.info(
            f"Synced purchase_order_id={po_id} with {len(drafts)} drafts for workflow_id={job.workflow_id}"
        )
        await ctx.projector(self.stage, data).publish_stage_complete(
            "Purchase order synced", {"shopifyOrderId": result.reference_id}
        )

        stage_result = {
            "shopifyOrderId": result.reference_id,
            "syncedDrafts": len(drafts),
            "syncMessage": result.message,
        }
        return StageOutput(
            stage_result=stage_result,
            next_stage_data={**data, **stage_result},
            next_stage=Stage.STATUS_UPDATE,
        )
