"""In-memory implementation of the purchase-order repository."""

from __future__ import annotations

from typing import Any, Dict

from ..contracts import utcnow
from .models import (
    LineItem,
    MerchantSession,
    ProductDraft,
    ProductImage,
    PurchaseOrder,
    Upload,
)
from .repository import PurchaseOrderRepository


class InMemoryPurchaseOrderRepository(PurchaseOrderRepository):
    """Store entities in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._purchase_orders: Dict[str, PurchaseOrder] = {}
        self._line_items: Dict[str, LineItem] = {}
        self._drafts: Dict[str, ProductDraft] = {}
        self._images: Dict[str, ProductImage] = {}
        self._sessions: Dict[str, MerchantSession] = {}
        self._uploads: Dict[str, Upload] = {}

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def health_check(self) -> bool:
        return True

    # ------------------------------------------------------------------
    async def create_purchase_order(self, purchase_order: PurchaseOrder) -> PurchaseOrder:
        self._purchase_orders[purchase_order.id] = purchase_order.model_copy(deep=True)
        return purchase_order

    async def get_purchase_order(self, purchase_order_id: str) -> PurchaseOrder | None:
        po = self._purchase_orders.get(purchase_order_id)
        return po.model_copy(deep=True) if po else None

    async def update_purchase_order(
        self, purchase_order_id: str, **fields: Any
    ) -> PurchaseOrder | None:
        po = self._purchase_orders.get(purchase_order_id)
        if po is None:
            return None
        updated = po.model_copy(update={**fields, "updated_at": utcnow()})
        self._purchase_orders[purchase_order_id] = updated
        return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def create_line_items(self, line_items: list[LineItem]) -> list[LineItem]:
        for item in line_items:
            self._line_items[item.id] = item.model_copy()
        return line_items

    async def replace_line_items(
        self, purchase_order_id: str, line_items: list[LineItem]
    ) -> list[LineItem]:
        self._line_items = {
            key: item
            for key, item in self._line_items.items()
            if item.purchase_order_id != purchase_order_id
        }
        return await self.create_line_items(line_items)

    async def list_line_items(self, purchase_order_id: str) -> list[LineItem]:
        return [
            item.model_copy()
            for item in self._line_items.values()
            if item.purchase_order_id == purchase_order_id
        ]

    # ------------------------------------------------------------------
    async def find_product_draft(self, line_item_id: str) -> ProductDraft | None:
        for draft in self._drafts.values():
            if draft.line_item_id == line_item_id:
                return draft.model_copy()
        return None

    async def create_product_draft(self, draft: ProductDraft) -> ProductDraft:
        self._drafts[draft.id] = draft.model_copy()
        return draft

    async def list_product_drafts(self, purchase_order_id: str) -> list[ProductDraft]:
        return [
            draft.model_copy()
            for draft in self._drafts.values()
            if draft.purchase_order_id == purchase_order_id
        ]

    async def create_product_image(self, image: ProductImage) -> ProductImage:
        self._images[image.id] = image.model_copy()
        return image

    async def list_product_images(self, product_draft_id: str) -> list[ProductImage]:
        images = [
            image.model_copy()
            for image in self._images.values()
            if image.product_draft_id == product_draft_id
        ]
        return sorted(images, key=lambda image: image.position)

    # ------------------------------------------------------------------
    async def find_session(self, merchant_id: str) -> MerchantSession | None:
        sessions = [s for s in self._sessions.values() if s.merchant_id == merchant_id]
        if not sessions:
            return None
        return max(sessions, key=lambda s: s.created_at).model_copy()

    async def create_session(self, session: MerchantSession) -> MerchantSession:
        self._sessions[session.id] = session.model_copy()
        return session

    async def get_upload(self, upload_id: str) -> Upload | None:
        upload = self._uploads.get(upload_id)
        return upload.model_copy() if upload else None

    async def create_upload(self, upload: Upload) -> Upload:
        self._uploads[upload.id] = upload.model_copy()
        return upload
