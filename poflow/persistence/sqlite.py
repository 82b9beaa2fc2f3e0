"""SQLite implementation of the purchase-order repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Optional, Type, TypeVar

from pydantic import BaseModel

from ..contracts import utcnow
from ..errors import LockContentionError
from .models import (
    LineItem,
    MerchantSession,
    ProductDraft,
    ProductImage,
    PurchaseOrder,
    Upload,
)
from .repository import PurchaseOrderRepository

ModelT = TypeVar("ModelT", bound=BaseModel)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS purchase_orders (
        id TEXT PRIMARY KEY,
        merchant_id TEXT NOT NULL,
        status TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS line_items (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT UNIQUE NOT NULL,
        purchase_order_id TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_drafts (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT UNIQUE NOT NULL,
        purchase_order_id TEXT NOT NULL,
        line_item_id TEXT UNIQUE NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_images (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT UNIQUE NOT NULL,
        product_draft_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS merchant_sessions (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT UNIQUE NOT NULL,
        merchant_id TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS uploads (
        id TEXT PRIMARY KEY,
        merchant_id TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
)


class SQLitePurchaseOrderRepository(PurchaseOrderRepository):
    """Persist entities using SQLite.

    Each entity is stored as a JSON document next to the columns it is
    looked up by. ``busy_timeout`` bounds how long a write waits for a
    competing writer before failing with :class:`LockContentionError`.
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = 5.0):
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        self._mutex = threading.Lock()
        self._conn = sqlite3.connect(
            self.db_path, timeout=busy_timeout, check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout * 1000)}")
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._conn:
            for statement in _SCHEMA:
                self._conn.execute(statement)

    # ------------------------------------------------------------------
    # Helper methods
    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        def locked() -> Any:
            with self._mutex:
                try:
                    return fn(*args)
                except sqlite3.OperationalError as exc:
                    message = str(exc).lower()
                    if "locked" in message or "busy" in message:
                        raise LockContentionError(f"SQLite write contention: {exc}") from exc
                    raise

        return await asyncio.to_thread(locked)

    def _execute(self, query: str, *params: Any) -> None:
        with self._conn:
            self._conn.execute(query, params)

    def _fetch(self, query: str, *params: Any) -> list[sqlite3.Row]:
        return self._conn.execute(query, params).fetchall()

    async def _insert(self, table: str, model: BaseModel, **columns: Any) -> None:
        names = ["id", *columns, "data"]
        placeholders = ", ".join("?" for _ in names)
        await self._run(
            self._execute,
            f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
            model.id,
            *columns.values(),
            model.model_dump_json(),
        )

    async def _select(
        self, model_cls: Type[ModelT], query: str, *params: Any
    ) -> list[ModelT]:
        rows = await self._run(self._fetch, query, *params)
        return [model_cls.model_validate_json(row["data"]) for row in rows]

    async def _select_one(
        self, model_cls: Type[ModelT], query: str, *params: Any
    ) -> Optional[ModelT]:
        found = await self._select(model_cls, query, *params)
        return found[0] if found else None

    # ------------------------------------------------------------------
    # Repository API
    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        await asyncio.to_thread(self._conn.close)

    async def health_check(self) -> bool:
        rows = await self._run(self._fetch, "SELECT 1 AS ok")
        return bool(rows and rows[0]["ok"] == 1)

    async def create_purchase_order(self, purchase_order: PurchaseOrder) -> PurchaseOrder:
        await self._insert(
            "purchase_orders",
            purchase_order,
            merchant_id=purchase_order.merchant_id,
            status=purchase_order.status,
        )
        return purchase_order

    async def get_purchase_order(self, purchase_order_id: str) -> PurchaseOrder | None:
        return await self._select_one(
            PurchaseOrder, "SELECT data FROM purchase_orders WHERE id = ?", purchase_order_id
        )

    def _update_purchase_order(
        self, purchase_order_id: str, fields: dict[str, Any]
    ) -> Optional[PurchaseOrder]:
        with self._conn:
            row = self._conn.execute(
                "SELECT data FROM purchase_orders WHERE id = ?", (purchase_order_id,)
            ).fetchone()
            if row is None:
                return None
            current = PurchaseOrder.model_validate_json(row["data"])
            updated = PurchaseOrder.model_validate(
                {**current.model_dump(), **fields, "updated_at": utcnow()}
            )
            self._conn.execute(
                "UPDATE purchase_orders SET status = ?, data = ? WHERE id = ?",
                (updated.status, updated.model_dump_json(), purchase_order_id),
            )
        return updated

    async def update_purchase_order(
        self, purchase_order_id: str, **fields: Any
    ) -> PurchaseOrder | None:
        return await self._run(self._update_purchase_order, purchase_order_id, fields)

    # ------------------------------------------------------------------
    def _insert_line_items(self, line_items: list[LineItem], replace: Optional[str]) -> None:
        with self._conn:
            if replace is not None:
                self._conn.execute(
                    "DELETE FROM line_items WHERE purchase_order_id = ?", (replace,)
                )
            self._conn.executemany(
                "INSERT INTO line_items (id, purchase_order_id, data) VALUES (?, ?, ?)",
                [(i.id, i.purchase_order_id, i.model_dump_json()) for i in line_items],
            )

    async def create_line_items(self, line_items: list[LineItem]) -> list[LineItem]:
        await self._run(self._insert_line_items, line_items, None)
        return line_items

    async def replace_line_items(
        self, purchase_order_id: str, line_items: list[LineItem]
    ) -> list[LineItem]:
        await self._run(self._insert_line_items, line_items, purchase_order_id)
        return line_items

    async def list_line_items(self, purchase_order_id: str) -> list[LineItem]:
        return await self._select(
            LineItem,
            "SELECT data FROM line_items WHERE purchase_order_id = ? ORDER BY seq",
            purchase_order_id,
        )

    # ------------------------------------------------------------------
    async def find_product_draft(self, line_item_id: str) -> ProductDraft | None:
        return await self._select_one(
            ProductDraft,
            "SELECT data FROM product_drafts WHERE line_item_id = ?",
            line_item_id,
        )

    async def create_product_draft(self, draft: ProductDraft) -> ProductDraft:
        await self._insert(
            "product_drafts",
            draft,
            purchase_order_id=draft.purchase_order_id,
            line_item_id=draft.line_item_id,
        )
        return draft

    async def list_product_drafts(self, purchase_order_id: str) -> list[ProductDraft]:
        return await self._select(
            ProductDraft,
            "SELECT data FROM product_drafts WHERE purchase_order_id = ? ORDER BY seq",
            purchase_order_id,
        )

    async def create_product_image(self, image: ProductImage) -> ProductImage:
        await self._insert(
            "product_images",
            image,
            product_draft_id=image.product_draft_id,
            position=image.position,
        )
        return image

    async def list_product_images(self, product_draft_id: str) -> list[ProductImage]:
        return await self._select(
            ProductImage,
            "SELECT data FROM product_images WHERE product_draft_id = ? ORDER BY position, seq",
            product_draft_id,
        )

    # ------------------------------------------------------------------
    async def find_session(self, merchant_id: str) -> MerchantSession | None:
        return await self._select_one(
            MerchantSession,
            "SELECT data FROM merchant_sessions WHERE merchant_id = ? ORDER BY seq DESC LIMIT 1",
            merchant_id,
        )

    async def create_session(self, session: MerchantSession) -> MerchantSession:
        await self._insert("merchant_sessions", session, merchant_id=session.merchant_id)
        return session

    async def get_upload(self, upload_id: str) -> Upload | None:
        return await self._select_one(
            Upload, "SELECT data FROM uploads WHERE id = ?", upload_id
        )

    async def create_upload(self, upload: Upload) -> Upload:
        await self._insert("uploads", upload, merchant_id=upload.merchant_id)
        return upload
