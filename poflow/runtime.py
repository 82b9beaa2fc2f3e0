"""Container for the clients a pipeline process needs.

Everything the orchestrator and the stage processors talk to is built here
once per process and passed down explicitly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy import text

from .collaborators import (
    DocumentParser,
    FileStorage,
    HttpFileStorage,
    HttpImageSearcher,
    HttpStoreSync,
    ImageSearcher,
    NullImageSearcher,
    PricingEngine,
    PydanticAIDocumentParser,
    RecordingStoreSync,
    RulePricingEngine,
    StoreSync,
)
from .config import PoflowConfig, load_config
from .db import ExecutionLog
from .locking import PurchaseOrderLock, get_lock
from .persistence import PurchaseOrderRepository, get_repository
from .progress import InMemoryProgressChannel, ProgressChannel, RedisProgressChannel
from .store import StageResultStore, WorkflowRunStore, get_stores
from .transports import BaseTransport, get_transport

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: PoflowConfig
    stage_store: StageResultStore
    run_store: WorkflowRunStore
    lock: PurchaseOrderLock
    transport: BaseTransport
    repository: PurchaseOrderRepository
    parser: DocumentParser
    images: ImageSearcher
    pricing: PricingEngine
    storage: FileStorage
    sync: StoreSync
    progress_channel: ProgressChannel
    execution_log: Optional[ExecutionLog] = None
    redis_client: Any = None
    _connected: bool = field(default=False, repr=False)

    async def connect(self) -> None:
        if self._connected:
            return
        await self.transport.connect()
        await self.repository.connect()
        if self.execution_log is not None:
            await self.execution_log.init_db()
        self._connected = True
        logger.info("Runtime connected")

    async def health_check(self) -> Dict[str, bool]:
        """Probe each backing service; a failing probe reports ``False``."""
        checks: Dict[str, bool] = {}
        try:
            checks["repository"] = await self.repository.health_check()
        except Exception as exc:
            logger.warning(f"Repository health check failed: {exc}")
            checks["repository"] = False

        if self.redis_client is not None:
            try:
                checks["redis"] = bool(await self.redis_client.ping())
            except Exception as exc:
                logger.warning(f"Redis health check failed: {exc}")
                checks["redis"] = False

        if self.execution_log is not None:
            try:
                async with self.execution_log.session() as session:
                    await session.execute(text("SELECT 1"))
                checks["execution_log"] = True
            except Exception as exc:
                logger.warning(f"Execution log health check failed: {exc}")
                checks["execution_log"] = False
        return checks

    async def shutdown(self) -> None:
        await self.transport.disconnect()
        await self.repository.disconnect()
        if self.execution_log is not None:
            await self.execution_log.close()
        if self.redis_client is not None:
            await self.redis_client.aclose()
        self._connected = False
        logger.info("Runtime shut down")

    async def __aenter__(self) -> "Runtime":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()


def _uses_redis(config: PoflowConfig) -> bool:
    return "redis" in (
        config.transport.backend,
        config.store.backend,
        config.lock.backend,
    )


def build_runtime(config: Optional[PoflowConfig] = None, **overrides: Any) -> Runtime:
    """Build a :class:`Runtime` from configuration.

    Any field of :class:`Runtime` may be passed as a keyword to replace the
    configured client, which is how tests inject fakes.
    """
    config = config or load_config()
    collab = config.collaborators

    redis_client = overrides.pop("redis_client", None)
    if redis_client is None and _uses_redis(config):
        from .utils.redis import create_redis

        redis_client = create_redis(config.transport.redis)

    if "stage_store" not in overrides or "run_store" not in overrides:
        stage_store, run_store = get_stores(config, redis_client=redis_client)
        overrides.setdefault("stage_store", stage_store)
        overrides.setdefault("run_store", run_store)

    if "lock" not in overrides:
        overrides["lock"] = get_lock(config, redis_client=redis_client)
    if "transport" not in overrides:
        overrides["transport"] = get_transport(config=config, redis_client=redis_client)
    if "repository" not in overrides:
        overrides["repository"] = get_repository(config=config)
    if "execution_log" not in overrides and config.execution_log_url:
        overrides["execution_log"] = ExecutionLog(config.execution_log_url)
    if "parser" not in overrides:
        overrides["parser"] = PydanticAIDocumentParser(collab.ai_model)
    if "images" not in overrides:
        overrides["images"] = (
            HttpImageSearcher(collab.image_search_url, collab.http_timeout_seconds)
            if collab.image_search_url
            else NullImageSearcher()
        )
    if "pricing" not in overrides:
        overrides["pricing"] = RulePricingEngine(config.pricing_for)
    if "storage" not in overrides:
        overrides["storage"] = HttpFileStorage(collab.http_timeout_seconds)
    if "sync" not in overrides:
        overrides["sync"] = (
            HttpStoreSync(
                collab.store_sync_url,
                token=collab.store_sync_token,
                timeout_seconds=collab.http_timeout_seconds,
            )
            if collab.store_sync_url
            else RecordingStoreSync()
        )
    if "progress_channel" not in overrides:
        overrides["progress_channel"] = (
            RedisProgressChannel(redis_client)
            if redis_client is not None
            else InMemoryProgressChannel()
        )

    return Runtime(config=config, redis_client=redis_client, **overrides)
