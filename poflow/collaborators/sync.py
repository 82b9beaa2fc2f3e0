"""Storefront sync collaborator."""

from __future__ import annotations

import logging
import time
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from ..errors import AuthenticationError, RateLimitedError
from ..persistence.models import ProductDraft, PurchaseOrder

logger = logging.getLogger(__name__)


class SyncResult(BaseModel):
    success: bool
    reference_id: Optional[str] = None
    message: Optional[str] = None


class StoreSync(Protocol):
    async def sync_purchase_order(
        self, purchase_order: PurchaseOrder, drafts: list[ProductDraft]
    ) -> SyncResult: ...


class RecordingStoreSync:
    """Offline sync that records calls and returns generated reference ids."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, list[str]]] = []

    async def sync_purchase_order(
        self, purchase_order: PurchaseOrder, drafts: list[ProductDraft]
    ) -> SyncResult:
        self.calls.append((purchase_order.id, [d.id for d in drafts]))
        reference_id = f"shopify_{purchase_order.id}_{int(time.time() * 1000)}"
        return SyncResult(
            success=True,
            reference_id=reference_id,
            message=f"Recorded {len(drafts)} drafts",
        )


class HttpStoreSync:
    """POST the purchase order and its drafts to a sync endpoint."""

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def sync_purchase_order(
        self, purchase_order: PurchaseOrder, drafts: list[ProductDraft]
    ) -> SyncResult:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        body = {
            "purchaseOrder": purchase_order.model_dump(mode="json", exclude={"raw_data"}),
            "drafts": [d.model_dump(mode="json") for d in drafts],
        }
        async with httpx.AsyncClient(
            timeout=self._timeout_seconds, transport=self._transport
        ) as client:
            resp = await client.post(self._url, json=body, headers=headers)

        if resp.status_code in (401, 403):
            raise AuthenticationError(f"Store sync rejected credentials ({resp.status_code})")
        if resp.status_code == 429:
            raise RateLimitedError("Store sync rate limited")
        resp.raise_for_status()

        data = resp.json() if resp.content else {}
        reference_id = data.get("referenceId") or data.get("id")
        logger.info(
            f"Synced purchase_order_id={purchase_order.id} reference_id={reference_id}"
        )
        return SyncResult(
            success=bool(data.get("success", True)),
            reference_id=reference_id,
            message=data.get("message"),
        )
