"""PostgreSQL implementation of the purchase-order repository."""

from __future__ import annotations

import functools
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar

import asyncpg
from pydantic import BaseModel

from ..contracts import utcnow
from ..errors import LockContentionError, OperationTimeoutError, TransientConnectionError
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
T = TypeVar("T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS purchase_orders (
    id TEXT PRIMARY KEY,
    merchant_id TEXT NOT NULL,
    status TEXT NOT NULL,
    data JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS line_items (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT UNIQUE NOT NULL,
    purchase_order_id TEXT NOT NULL,
    data JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS product_drafts (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT UNIQUE NOT NULL,
    purchase_order_id TEXT NOT NULL,
    line_item_id TEXT UNIQUE NOT NULL,
    data JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS product_images (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT UNIQUE NOT NULL,
    product_draft_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    data JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS merchant_sessions (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT UNIQUE NOT NULL,
    merchant_id TEXT NOT NULL,
    data JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS uploads (
    id TEXT PRIMARY KEY,
    merchant_id TEXT NOT NULL,
    data JSONB NOT NULL
);
"""


def _translate_errors(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Map asyncpg failures onto the pipeline error taxonomy."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await fn(*args, **kwargs)
        except (asyncpg.exceptions.LockNotAvailableError, asyncpg.exceptions.DeadlockDetectedError) as exc:
            raise LockContentionError(f"Postgres lock contention: {exc}") from exc
        except asyncpg.exceptions.QueryCanceledError as exc:
            raise OperationTimeoutError(f"Postgres statement timeout: {exc}") from exc
        except (asyncpg.exceptions.PostgresConnectionError, ConnectionError) as exc:
            raise TransientConnectionError(f"Postgres connection failed: {exc}") from exc

    return wrapper


class PostgresPurchaseOrderRepository(PurchaseOrderRepository):
    """Persist entities using PostgreSQL.

    ``lock_timeout`` and ``statement_timeout`` are set per connection so a
    contended row fails fast instead of blocking the worker.
    """

    def __init__(
        self,
        dsn: str,
        lock_timeout_ms: int = 5000,
        statement_timeout_ms: int = 15000,
        min_size: int = 1,
        max_size: int = 5,
    ):
        self._dsn = dsn
        self.lock_timeout_ms = lock_timeout_ms
        self.statement_timeout_ms = statement_timeout_ms
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(
            self._dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            server_settings={
                "lock_timeout": str(self.lock_timeout_ms),
                "statement_timeout": str(self.statement_timeout_ms),
            },
        )
        async with self._pool.acquire() as conn:
            await conn.execute(_SCHEMA)

    async def disconnect(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _acquire(self) -> asyncpg.Pool:
        if self._pool is None:
            await self.connect()
        return self._pool

    async def health_check(self) -> bool:
        pool = await self._acquire()
        return await pool.fetchval("SELECT 1") == 1

    # ------------------------------------------------------------------
    @_translate_errors
    async def _insert(self, table: str, model: BaseModel, **columns: Any) -> None:
        pool = await self._acquire()
        names = ["id", *columns, "data"]
        placeholders = ", ".join(f"${i}" for i in range(1, len(names) + 1))
        await pool.execute(
            f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
            model.id,
            *columns.values(),
            model.model_dump_json(),
        )

    @_translate_errors
    async def _select(
        self, model_cls: Type[ModelT], query: str, *params: Any
    ) -> list[ModelT]:
        pool = await self._acquire()
        rows = await pool.fetch(query, *params)
        return [model_cls.model_validate_json(row["data"]) for row in rows]

    async def _select_one(
        self, model_cls: Type[ModelT], query: str, *params: Any
    ) -> Optional[ModelT]:
        found = await self._select(model_cls, query, *params)
        return found[0] if found else None

    # ------------------------------------------------------------------
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
            PurchaseOrder,
            "SELECT data::text AS data FROM purchase_orders WHERE id = $1",
            purchase_order_id,
        )

    @_translate_errors
    async def update_purchase_order(
        self, purchase_order_id: str, **fields: Any
    ) -> PurchaseOrder | None:
        pool = await self._acquire()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT data::text AS data FROM purchase_orders WHERE id = $1 FOR UPDATE",
                    purchase_order_id,
                )
                if row is None:
                    return None
                current = PurchaseOrder.model_validate_json(row["data"])
                updated = PurchaseOrder.model_validate(
                    {**current.model_dump(), **fields, "updated_at": utcnow()}
                )
                await conn.execute(
                    "UPDATE purchase_orders SET status = $1, data = $2::jsonb WHERE id = $3",
                    updated.status,
                    updated.model_dump_json(),
                    purchase_order_id,
                )
        return updated

    # ------------------------------------------------------------------
    @_translate_errors
    async def _insert_line_items(
        self, line_items: list[LineItem], replace: Optional[str]
    ) -> None:
        pool = await self._acquire()
        async with pool.acquire() as conn:
            async with conn.transaction():
                if replace is not None:
                    await conn.execute(
                        "DELETE FROM line_items WHERE purchase_order_id = $1", replace
                    )
                await conn.executemany(
                    "INSERT INTO line_items (id, purchase_order_id, data) VALUES ($1, $2, $3::jsonb)",
                    [(i.id, i.purchase_order_id, i.model_dump_json()) for i in line_items],
                )

    async def create_line_items(self, line_items: list[LineItem]) -> list[LineItem]:
        await self._insert_line_items(line_items, None)
        return line_items

    async def replace_line_items(
        self, purchase_order_id: str, line_items: list[LineItem]
    ) -> list[LineItem]:
        await self._insert_line_items(line_items, purchase_order_id)
        return line_items

    async def list_line_items(self, purchase_order_id: str) -> list[LineItem]:
        return await self._select(
            LineItem,
            "SELECT data::text AS data FROM line_items WHERE purchase_order_id = $1 ORDER BY seq",
            purchase_order_id,
        )

    # ------------------------------------------------------------------
    async def find_product_draft(self, line_item_id: str) -> ProductDraft | None:
        return await self._select_one(
            ProductDraft,
            "SELECT data::text AS data FROM product_drafts WHERE line_item_id = $1",
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
            "SELECT data::text AS data FROM product_drafts WHERE purchase_order_id = $1 ORDER BY seq",
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
            "SELECT data::text AS data FROM product_images WHERE product_draft_id = $1 ORDER BY position, seq",
            product_draft_id,
        )

    # ------------------------------------------------------------------
    async def find_session(self, merchant_id: str) -> MerchantSession | None:
        return await self._select_one(
            MerchantSession,
            "SELECT data::text AS data FROM merchant_sessions WHERE merchant_id = $1 ORDER BY seq DESC LIMIT 1",
            merchant_id,
        )

    async def create_session(self, session: MerchantSession) -> MerchantSession:
        await self._insert("merchant_sessions", session, merchant_id=session.merchant_id)
        return session

    async def get_upload(self, upload_id: str) -> Upload | None:
        return await self._select_one(
            Upload, "SELECT data::text AS data FROM uploads WHERE id = $1", upload_id
        )

    async def create_upload(self, upload: Upload) -> Upload:
        await self._insert("uploads", upload, merchant_id=upload.merchant_id)
        return upload
