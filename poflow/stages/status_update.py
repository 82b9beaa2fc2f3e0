"""STATUS_UPDATE: write the final status and derived fields onto the purchase order."""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..contracts import Stage, StageJob, StageOutput, utcnow
from ..persistence.extraction import compute_total_amount, normalize_confidence
from ..supplier import extract_supplier_name, usable_name
from .base import StageContext, StageProcessor

logger = logging.getLogger(__name__)

COMPLETED_NOTE = "Processing completed successfully - all stages completed"
REVIEW_NOTE = "Processing completed - requires merchant review due to low confidence or complexity"


def final_fields(data: dict[str, Any], threshold: float) -> dict[str, Any]:
    """Status plus every derived field the accumulated data supports."""
    ai_result = data.get("aiResult") or {}
    confidence = normalize_confidence(data.get("confidence"))
    if confidence is None:
        confidence = normalize_confidence(ai_result.get("confidence"))

    review_needed = bool(data.get("reviewNeeded")) or (
        confidence is not None and confidence < threshold
    )
    fields: dict[str, Any] = {
        "status": "review_needed" if review_needed else "completed",
        "job_status": "completed",
        "job_completed_at": utcnow(),
        "job_error": None,
        "processing_notes": REVIEW_NOTE if review_needed else COMPLETED_NOTE,
    }
    if confidence is not None:
        fields["confidence"] = confidence

    supplier = extract_supplier_name(ai_result) or usable_name(data.get("supplierName"))
    if supplier:
        fields["supplier_name"] = supplier

    extracted = ai_result.get("extractedData") or ai_result.get("extracted_data")
    if isinstance(extracted, dict):
        total = compute_total_amount(extracted)
        if total:
            fields["total_amount"] = total
    return fields


class StatusUpdateProcessor(StageProcessor):
    stage = Stage.STATUS_UPDATE

    async def process(
        self, job: StageJob, data: dict[str, Any], ctx: StageContext
    ) -> StageOutput:
        po_id: Optional[str] = data.get("purchaseOrderId")
        await job.report_progress(10)
        threshold = ctx.config.pipeline.review_confidence_threshold
        fields = final_fields(data, threshold)
        fallback_used = False

        if po_id:
            try:
                await ctx.retry(
                    lambda: ctx.repository.update_purchase_order(po_id, **fields),
                    f"Final status update for {po_id}",
                )
            except Exception as exc:
                logger.warning(
                    f"Full status update failed for purchase_order_id={po_id}, "
                    f"writing status only: {exc}"
                )
                fallback_used = True
                await ctx.retry(
                    lambda: ctx.repository.update_purchase_order(
                        po_id,
                        status=fields["status"],
                        job_status="completed",
                        job_completed_at=fields["job_completed_at"],
                    ),
                    f"Fallback status update for {po_id}",
                )
        else:
            logger.warning(
                f"No purchase order id for workflow_id={job.workflow_id}, skipping status update"
            )

        await job.report_progress(90)
        await ctx.projector(self.stage, data).publish_stage_complete(
            "Purchase order processed", {"status": fields["status"]}
        )

        stage_result = {
            "finalStatus": fields["status"],
            "purchaseOrderId": po_id,
            "requiresReview": fields["status"] == "review_needed",
            "supplierName": fields.get("supplier_name"),
            "confidence": fields.get("confidence"),
            "totalAmount": fields.get("total_amount"),
            "fallbackUsed": fallback_used,
        }
        return StageOutput(stage_result=stage_result, next_stage_data={}, next_stage=None)
