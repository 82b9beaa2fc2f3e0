"""Per-purchase-order mutual exclusion.

Two jobs may target the same purchase order (duplicate deliveries, a user
retry while an old run is still finishing). The lock makes the second
writer wait instead of racing. Tokens older than ``max_age`` are reclaimed
so a crashed holder cannot block the purchase order forever.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from .config import LockConfig, PoflowConfig
from .errors import LockTimeoutError

logger = logging.getLogger(__name__)

ReleaseFn = Callable[[], Awaitable[None]]


async def _noop_release() -> None:
    return None


@dataclass
class LockToken:
    owner_workflow_id: Optional[str]
    stage: Optional[str]
    acquired_at: float
    token: str = field(default_factory=lambda: uuid.uuid4().hex)


class PurchaseOrderLock:
    """In-process lock keyed by purchase-order id."""

    def __init__(
        self,
        poll_interval: float = 0.25,
        max_poll_interval: float = 1.0,
        max_age: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.poll_interval = poll_interval
        self.max_poll_interval = max_poll_interval
        self.max_age = max_age
        self._clock = clock
        self._tokens: Dict[str, LockToken] = {}
        self._mutex = asyncio.Lock()

    async def _try_acquire(
        self, purchase_order_id: str, workflow_id: Optional[str], stage: Optional[str]
    ) -> Optional[LockToken]:
        async with self._mutex:
            now = self._clock()
            held = self._tokens.get(purchase_order_id)
            if held is not None:
                age = now - held.acquired_at
                if age < self.max_age:
                    return None
                logger.warning(
                    f"Reclaiming stale lock on purchase order {purchase_order_id} "
                    f"held by workflow_id={held.owner_workflow_id} stage={held.stage} "
                    f"for {age:.0f}s"
                )
            token = LockToken(workflow_id, stage, now)
            self._tokens[purchase_order_id] = token
            return token

    async def acquire(
        self,
        purchase_order_id: Optional[str],
        *,
        workflow_id: Optional[str] = None,
        stage: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ReleaseFn:
        """Wait until the purchase order is free and take the lock.

        Returns an idempotent release function. When ``purchase_order_id`` is
        empty no lock is taken and a no-op release is returned.
        """
        if not purchase_order_id:
            return _noop_release

        deadline = None if timeout is None else self._clock() + timeout
        interval = self.poll_interval
        while True:
            token = await self._try_acquire(purchase_order_id, workflow_id, stage)
            if token is not None:
                break
            if deadline is not None and self._clock() >= deadline:
                raise LockTimeoutError(
                    f"Timed out waiting for lock on purchase order {purchase_order_id}"
                )
            logger.debug(
                f"Purchase order {purchase_order_id} locked, workflow_id={workflow_id} waiting"
            )
            await asyncio.sleep(interval)
            interval = min(interval * 1.5, self.max_poll_interval)

        released = False

        async def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            async with self._mutex:
                current = self._tokens.get(purchase_order_id)
                if current is not None and current.token == token.token:
                    del self._tokens[purchase_order_id]

        return release

    @asynccontextmanager
    async def hold(
        self,
        purchase_order_id: Optional[str],
        *,
        workflow_id: Optional[str] = None,
        stage: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[None]:
        release = await self.acquire(
            purchase_order_id, workflow_id=workflow_id, stage=stage, timeout=timeout
        )
        try:
            yield
        finally:
            await release()

    def snapshot(self) -> Dict[str, LockToken]:
        return dict(self._tokens)


_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisPurchaseOrderLock(PurchaseOrderLock):
    """Distributed variant using ``SET NX PX``; expiry acts as the max-age safeguard."""

    def __init__(
        self,
        redis_client: Any,
        poll_interval: float = 0.25,
        max_poll_interval: float = 1.0,
        max_age: float = 600.0,
    ) -> None:
        super().__init__(poll_interval, max_poll_interval, max_age)
        self._redis = redis_client

    def _key(self, purchase_order_id: str) -> str:
        return f"poflow:lock:po:{purchase_order_id}"

    async def _try_acquire(
        self, purchase_order_id: str, workflow_id: Optional[str], stage: Optional[str]
    ) -> Optional[LockToken]:
        token = LockToken(workflow_id, stage, time.time())
        acquired = await self._redis.set(
            self._key(purchase_order_id),
            token.token,
            nx=True,
            px=int(self.max_age * 1000),
        )
        return token if acquired else None

    async def acquire(
        self,
        purchase_order_id: Optional[str],
        *,
        workflow_id: Optional[str] = None,
        stage: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ReleaseFn:
        if not purchase_order_id:
            return _noop_release

        deadline = None if timeout is None else time.monotonic() + timeout
        interval = self.poll_interval
        while True:
            token = await self._try_acquire(purchase_order_id, workflow_id, stage)
            if token is not None:
                break
            if deadline is not None and time.monotonic() >= deadline:
                raise LockTimeoutError(
                    f"Timed out waiting for lock on purchase order {purchase_order_id}"
                )
            await asyncio.sleep(interval)
            interval = min(interval * 1.5, self.max_poll_interval)

        released = False
        key = self._key(purchase_order_id)

        async def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            await self._redis.eval(_RELEASE_SCRIPT, 1, key, token.token)

        return release

    def snapshot(self) -> Dict[str, LockToken]:
        return {}


def get_lock(
    config: Optional[PoflowConfig] = None, redis_client: Any = None
) -> PurchaseOrderLock:
    """Factory returning the configured purchase-order lock."""
    lock_conf: LockConfig = config.lock if config else LockConfig()
    if lock_conf.backend == "inmemory":
        return PurchaseOrderLock(
            poll_interval=lock_conf.poll_interval_seconds,
            max_poll_interval=lock_conf.max_poll_interval_seconds,
            max_age=lock_conf.max_age_seconds,
        )
    elif lock_conf.backend == "redis":
        from .utils.redis import create_redis

        client = redis_client or create_redis(config.transport.redis)
        return RedisPurchaseOrderLock(
            client,
            poll_interval=lock_conf.poll_interval_seconds,
            max_poll_interval=lock_conf.max_poll_interval_seconds,
            max_age=lock_conf.max_age_seconds,
        )
    else:
        raise ValueError(f"Unsupported lock backend: {lock_conf.backend}")
