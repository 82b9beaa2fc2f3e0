"""Repository abstraction for purchase-order persistence."""

from __future__ import annotations

import logging
import time
from typing import Any, Optional, Protocol

from ..contracts import utcnow
from ..errors import ValidationFailedError
from ..supplier import extract_supplier_name
from .extraction import build_line_items, compute_total_amount, normalize_confidence
from .models import (
    LineItem,
    MerchantSession,
    ProductDraft,
    ProductImage,
    PurchaseOrder,
    SaveResult,
    Upload,
)

logger = logging.getLogger(__name__)


class PurchaseOrderRepository(Protocol):
    """Protocol for purchase-order persistence backends.

    Backends raise :class:`~poflow.errors.LockContentionError` when a row
    stays locked past their bounded lock timeout.
    """

    async def connect(self) -> None:
        """Open connections and ensure the schema exists."""

    async def disconnect(self) -> None:
        """Release connections."""

    async def health_check(self) -> bool:
        """Return ``True`` when the backend answers a trivial query."""

    async def create_purchase_order(self, purchase_order: PurchaseOrder) -> PurchaseOrder:
        """Insert a purchase order."""

    async def get_purchase_order(self, purchase_order_id: str) -> PurchaseOrder | None:
        """Fetch a purchase order by id."""

    async def update_purchase_order(
        self, purchase_order_id: str, **fields: Any
    ) -> PurchaseOrder | None:
        """Apply ``fields`` to a purchase order; ``None`` if it does not exist."""

    async def create_line_items(self, line_items: list[LineItem]) -> list[LineItem]:
        """Insert line items."""

    async def replace_line_items(
        self, purchase_order_id: str, line_items: list[LineItem]
    ) -> list[LineItem]:
        """Atomically swap every line item of a purchase order."""

    async def list_line_items(self, purchase_order_id: str) -> list[LineItem]:
        """Line items of a purchase order in insertion order."""

    async def find_product_draft(self, line_item_id: str) -> ProductDraft | None:
        """Existing draft for a line item, if any."""

    async def create_product_draft(self, draft: ProductDraft) -> ProductDraft:
        """Insert a product draft."""

    async def list_product_drafts(self, purchase_order_id: str) -> list[ProductDraft]:
        """Drafts of a purchase order."""

    async def create_product_image(self, image: ProductImage) -> ProductImage:
        """Insert a product image."""

    async def list_product_images(self, product_draft_id: str) -> list[ProductImage]:
        """Images of a draft ordered by position."""

    async def find_session(self, merchant_id: str) -> MerchantSession | None:
        """Most recent session for a merchant."""

    async def create_session(self, session: MerchantSession) -> MerchantSession:
        """Insert a merchant session."""

    async def get_upload(self, upload_id: str) -> Upload | None:
        """Fetch an upload record."""

    async def create_upload(self, upload: Upload) -> Upload:
        """Insert an upload record."""

    async def persist_ai_results(
        self,
        ai_result: dict[str, Any],
        merchant_id: str,
        file_name: Optional[str] = None,
        *,
        purchase_order_id: Optional[str] = None,
        upload_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> SaveResult:
        """Create or update the purchase order and its line items from an AI result.

        An existing purchase order keeps its id and has its line items
        replaced, so re-running the save after a retry never duplicates
        rows. The order stays ``processing`` until the pipeline finalizes it.
        """
        started = time.monotonic()
        extracted = ai_result.get("extracted_data") or ai_result.get("extractedData")
        if not isinstance(extracted, dict):
            raise ValidationFailedError("No extracted data in AI result")

        raw_confidence = ai_result.get("confidence")
        confidence = normalize_confidence(raw_confidence)
        item_confidences = (
            raw_confidence.get("itemBreakdown") if isinstance(raw_confidence, dict) else None
        )
        model = ai_result.get("model")
        fields: dict[str, Any] = {
            "merchant_id": merchant_id,
            "number": extracted.get("poNumber") or extracted.get("number"),
            "supplier_name": extract_supplier_name({"extractedData": extracted}),
            "confidence": confidence,
            "total_amount": compute_total_amount(extracted),
            "currency": extracted.get("currency") or "USD",
            "raw_data": extracted,
            "file_name": file_name,
            "upload_id": upload_id,
            "workflow_id": workflow_id,
            "status": "processing",
            "job_status": "processing",
            "processing_notes": f"Processed by {model}" if model else None,
        }

        existing = (
            await self.get_purchase_order(purchase_order_id) if purchase_order_id else None
        )
        if existing is not None:
            purchase_order = await self.update_purchase_order(
                existing.id, **{k: v for k, v in fields.items() if v is not None}
            )
        else:
            if not fields["number"]:
                fields["number"] = f"AI-{int(time.time() * 1000)}"
            if purchase_order_id:
                fields["id"] = purchase_order_id
            purchase_order = await self.create_purchase_order(
                PurchaseOrder(job_started_at=utcnow(), **fields)
            )

        line_items = build_line_items(extracted, purchase_order.id, item_confidences)
        if not line_items:
            logger.warning(
                f"No line items found in extracted data for purchase_order_id={purchase_order.id}"
            )
        saved = await self.replace_line_items(purchase_order.id, line_items)
        logger.info(
            f"Persisted purchase_order_id={purchase_order.id} with {len(saved)} line items"
        )
        return SaveResult(
            purchase_order=purchase_order,
            line_items=saved,
            processing_time_ms=int((time.monotonic() - started) * 1000),
        )
