"""PRODUCT_DRAFT_CREATION: one reviewable draft per line item, priced by merchant rules."""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from ..contracts import Stage, StageJob, StageOutput
from ..errors import ValidationFailedError
from ..persistence.models import LineItem, MerchantSession, ProductDraft, PurchaseOrder
from .base import StageContext, StageProcessor, require

logger = logging.getLogger(__name__)


def draft_summary(draft: ProductDraft, line_item: Optional[LineItem] = None) -> dict[str, Any]:
    """Fields later stages need about a draft, without another lookup."""
    return {
        "id": draft.id,
        "lineItemId": draft.line_item_id,
        "title": draft.original_title,
        "sku": line_item.sku if line_item else None,
        "brand": line_item.brand if line_item else None,
        "price": draft.price_refined,
    }


def estimated_margin(original: float, refined: float) -> float:
    if original > 0 and refined > original:
        return round((refined - original) / refined * 100, 2)
    return 0.0


class ProductDraftProcessor(StageProcessor):
    stage = Stage.PRODUCT_DRAFT_CREATION

    async def _session(self, merchant_id: str, ctx: StageContext) -> MerchantSession:
        session = await ctx.repository.find_session(merchant_id)
        if session is not None:
            return session
        logger.warning(f"No session found for merchant {merchant_id}, creating temporary session")
        return await ctx.repository.create_session(
            MerchantSession(
                merchant_id=merchant_id,
                shop=f"temp-{merchant_id}-{int(time.time() * 1000)}",
                state="temporary",
                is_online=False,
                access_token="temp-token-for-processing",
            )
        )

    async def _create_draft(
        self,
        line_item: LineItem,
        purchase_order: PurchaseOrder,
        session: MerchantSession,
        confidence: float,
        ctx: StageContext,
    ) -> ProductDraft:
        title = line_item.product_name or f"Product from PO {purchase_order.number}"
        pricing = await ctx.pricing.test_pricing_rules(
            purchase_order.merchant_id,
            {
                "title": title,
                "price": line_item.unit_cost,
                "sku": line_item.sku,
                "description": line_item.description or "",
            },
        )
        original = line_item.unit_cost or 0.0
        refined = pricing.adjusted_price
        if not refined or refined <= 0:
            refined = round(original * ctx.config.pipeline.fallback_markup, 2) if original > 0 else 0.0

        notes = f"Auto-generated from PO processing with {round(confidence * 100)}% AI confidence"
        if pricing.applied_rules:
            rules = ", ".join(rule.description for rule in pricing.applied_rules)
            notes += f"\nRefinement rules applied: {rules}"

        return await ctx.repository.create_product_draft(
            ProductDraft(
                merchant_id=purchase_order.merchant_id,
                session_id=session.id,
                purchase_order_id=purchase_order.id,
                line_item_id=line_item.id,
                supplier_id=purchase_order.supplier_id,
                original_title=title,
                original_description=line_item.description
                or f"Product imported from Purchase Order {purchase_order.number}",
                original_price=original,
                price_refined=refined,
                estimated_margin=estimated_margin(original, refined),
                review_notes=notes,
            )
        )

    async def process(
        self, job: StageJob, data: dict[str, Any], ctx: StageContext
    ) -> StageOutput:
        merchant_id = require(data, "merchantId", self.stage)
        po_id = require(data, "purchaseOrderId", self.stage)
        await job.report_progress(10)

        purchase_order = await ctx.retry(
            lambda: ctx.repository.get_purchase_order(po_id), f"Load purchase order {po_id}"
        )
        if purchase_order is None:
            raise ValidationFailedError(f"Purchase order {po_id} not found")
        line_items = await ctx.retry(
            lambda: ctx.repository.list_line_items(po_id), f"Load line items for {po_id}"
        )
        if not line_items:
            raise ValidationFailedError("No line items found in database for this purchase order")

        total = len(line_items)
        await ctx.update_progress(po_id, self.stage.value, 30, 0, total)
        session = await ctx.retry(
            lambda: self._session(merchant_id, ctx), f"Resolve session for {merchant_id}"
        )
        confidence = data.get("confidence") or purchase_order.confidence or 0.0
        projector = ctx.projector(self.stage, data)

        drafts: list[dict[str, Any]] = []
        created = skipped = failed = 0
        for index, line_item in enumerate(line_items):
            try:
                existing = await ctx.repository.find_product_draft(line_item.id)
                if existing is not None:
                    drafts.append(draft_summary(existing, line_item))
                    skipped += 1
                else:
                    draft = await self._create_draft(
                        line_item, purchase_order, session, confidence, ctx
                    )
                    drafts.append(draft_summary(draft, line_item))
                    created += 1
            except Exception as exc:
                failed += 1
                logger.error(
                    f"Failed to create product draft for line item {line_item.id} "
                    f"(workflow_id={job.workflow_id}): {exc}"
                )

            await projector.publish_linear_progress(index, total, "line item")
            await ctx.update_progress(
                po_id, self.stage.value, round(30 + (index + 1) / total * 60), index + 1, total
            )

        await job.report_progress(90)
        logger.info(
            f"Product drafts for purchase_order_id={po_id}: {created} created, "
            f"{skipped} already existed, {failed} failed"
        )

        stage_result = {
            "purchaseOrderId": po_id,
            "merchantId": merchant_id,
            "sessionId": session.id,
            "productDrafts": drafts,
            "draftsCreated": created,
            "draftsSkipped": skipped,
            "failedItems": failed,
        }
        return StageOutput(
            stage_result=stage_result,
            next_stage_data={**data, **stage_result},
            next_stage=Stage.IMAGE_ATTACHMENT,
        )
