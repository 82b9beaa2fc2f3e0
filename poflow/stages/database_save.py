"""DATABASE_SAVE: persist the parsed purchase order and its line items."""

from __future__ import annotations

import logging
from typing import Any

from ..contracts import Stage, StageJob, StageOutput
from ..errors import ValidationFailedError
from .base import StageContext, StageProcessor, require

logger = logging.getLogger(__name__)


class DatabaseSaveProcessor(StageProcessor):
    stage = Stage.DATABASE_SAVE

    async def process(
        self, job: StageJob, data: dict[str, Any], ctx: StageContext
    ) -> StageOutput:
        merchant_id = require(data, "merchantId", self.stage)
        ai_result = data.get("aiResult")
        if not ai_result:
            raise ValidationFailedError("No AI result available for database save")

        po_id = data.get("purchaseOrderId")
        await job.report_progress(10)
        await ctx.update_progress(po_id, self.stage.value, 10, 0, 0)
        await ctx.update_progress(po_id, self.stage.value, 30, 0, 0)

        saved = await ctx.retry(
            lambda: ctx.repository.persist_ai_results(
                ai_result,
                merchant_id,
                data.get("fileName"),
                purchase_order_id=po_id,
                upload_id=data.get("uploadId"),
                workflow_id=job.workflow_id,
            ),
            f"Persist AI results for {job.workflow_id}",
        )

        purchase_order = saved.purchase_order
        if purchase_order is None or not purchase_order.id:
            raise ValidationFailedError("Database save validation failed: no purchase order created")
        if not saved.line_items:
            raise ValidationFailedError(
                f"Database save validation failed: no line items saved (PO ID: {purchase_order.id})",
                purchase_order_id=purchase_order.id,
            )

        await job.report_progress(90)
        await ctx.update_progress(
            purchase_order.id, self.stage.value, 90, len(saved.line_items), len(saved.line_items)
        )
        logger.info(
            f"Saved purchase_order_id={purchase_order.id} with {len(saved.line_items)} "
            f"line items for workflow_id={job.workflow_id}"
        )

        stage_result = {
            "purchaseOrderId": purchase_order.id,
            "merchantId": merchant_id,
            "purchaseOrderNumber": purchase_order.number,
            "supplierName": purchase_order.supplier_name,
            "lineItemIds": [item.id for item in saved.line_items],
            "lineItemCount": len(saved.line_items),
            "totalAmount": purchase_order.total_amount,
        }
        return StageOutput(
            stage_result=stage_result,
            next_stage_data={**data, **stage_result},
            next_stage=Stage.PRODUCT_DRAFT_CREATION,
        )
