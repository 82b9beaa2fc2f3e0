"""Persistence layer for purchase orders and their drafts."""

from __future__ import annotations

import os
from typing import Optional

from ..config import PoflowConfig, load_config
from .inmemory import InMemoryPurchaseOrderRepository
from .models import (
    LineItem,
    MerchantSession,
    ProductDraft,
    ProductImage,
    PurchaseOrder,
    SaveResult,
    Upload,
)
from .repository import PurchaseOrderRepository
from .sqlite import SQLitePurchaseOrderRepository

from .postgres import PostgresPurchaseOrderRepository


def get_repository(
    database_url: Optional[str] = None, config: Optional[PoflowConfig] = None
) -> PurchaseOrderRepository:
    """Factory function to build a purchase-order repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``POFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned. Every call builds a new
    repository; the runtime owns the instance.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("POFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryPurchaseOrderRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLitePurchaseOrderRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        return PostgresPurchaseOrderRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "LineItem",
    "MerchantSession",
    "ProductDraft",
    "ProductImage",
    "PurchaseOrder",
    "SaveResult",
    "Upload",
    "PurchaseOrderRepository",
    "InMemoryPurchaseOrderRepository",
    "SQLitePurchaseOrderRepository",
    "PostgresPurchaseOrderRepository",
    "get_repository",
]
