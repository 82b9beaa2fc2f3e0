"""Entities owned by the persistence collaborator."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from ..contracts import utcnow

PurchaseOrderStatus = Literal[
    "pending", "processing", "completed", "failed", "review_needed"
]


def new_id() -> str:
    return uuid.uuid4().hex


class PurchaseOrder(BaseModel):
    """Purchase order whose status the pipeline keeps consistent."""

    id: str = Field(default_factory=new_id)
    merchant_id: str
    number: Optional[str] = None
    supplier_name: Optional[str] = None
    supplier_id: Optional[str] = None
    status: PurchaseOrderStatus = "processing"
    job_status: Optional[str] = None
    job_error: Optional[str] = None
    processing_notes: Optional[str] = None
    confidence: Optional[float] = None
    total_amount: Optional[float] = None
    currency: str = "USD"
    file_name: Optional[str] = None
    upload_id: Optional[str] = None
    workflow_id: Optional[str] = None
    raw_data: Optional[dict[str, Any]] = None
    job_started_at: Optional[datetime] = None
    job_completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class LineItem(BaseModel):
    id: str = Field(default_factory=new_id)
    purchase_order_id: str
    sku: str
    product_name: str
    description: Optional[str] = None
    quantity: int = 1
    unit_cost: float = 0.0
    total_cost: float = 0.0
    brand: Optional[str] = None
    confidence: Optional[float] = None
    status: str = "pending"


class ProductDraft(BaseModel):
    """Reviewable product created from one line item."""

    id: str = Field(default_factory=new_id)
    merchant_id: str
    session_id: Optional[str] = None
    purchase_order_id: str
    line_item_id: str
    supplier_id: Optional[str] = None
    original_title: str
    original_description: Optional[str] = None
    original_price: float = 0.0
    price_refined: float = 0.0
    estimated_margin: float = 0.0
    review_notes: Optional[str] = None
    status: str = "DRAFT"
    created_at: datetime = Field(default_factory=utcnow)


class ProductImage(BaseModel):
    id: str = Field(default_factory=new_id)
    product_draft_id: str
    original_url: str
    alt_text: Optional[str] = None
    position: int = 0
    source: Optional[str] = None
    confidence: Optional[float] = None


class MerchantSession(BaseModel):
    """Credential context a merchant's drafts are created under."""

    id: str = Field(default_factory=new_id)
    merchant_id: str
    shop: str
    state: str = "active"
    is_online: bool = False
    access_token: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Upload(BaseModel):
    id: str = Field(default_factory=new_id)
    merchant_id: str
    file_url: str
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None


class SaveResult(BaseModel):
    """Outcome of persisting one AI parsing result."""

    success: bool = True
    purchase_order: PurchaseOrder
    line_items: list[LineItem] = Field(default_factory=list)
    processing_time_ms: int = 0
