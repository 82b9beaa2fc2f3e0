from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel

from ..errors import (
    ErrorKind,
    OperationTimeoutError,
    RetryExhaustedError,
    classify_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(
    attempt: int,
    initial_delay: float,
    factor: float = 2.0,
    max_delay: Optional[float] = None,
    jitter: float = 0.0,
) -> float:
    """Compute exponential backoff for the 1-based ``attempt`` with optional jitter."""
    delay = initial_delay * factor ** max(0, attempt - 1)
    if max_delay is not None:
        delay = min(delay, max_delay)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    operation_name: str = "operation",
    max_retries: int = 3,
    initial_delay_ms: int = 200,
    backoff_factor: float = 2.0,
    max_delay_ms: Optional[int] = 3000,
    classify: Callable[[BaseException], ErrorKind] = classify_error,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` with bounded retries and exponential backoff.

    ``max_retries`` is the total number of attempts. Fatal errors are raised
    unchanged on the first occurrence; retryable errors are retried until the
    attempts run out, at which point :class:`RetryExhaustedError` is raised
    from the last error.
    """
    attempts = max(1, max_retries)
    for attempt in range(1, attempts + 1):
        try:
            result = await operation()
        except Exception as exc:
            if isinstance(exc, RetryExhaustedError) or classify(exc) != "retryable":
                logger.debug(f"{operation_name} raised non-retryable error: {exc}")
                raise
            if attempt >= attempts:
                logger.error(f"{operation_name} failed after {attempt} attempts: {exc}")
                raise RetryExhaustedError(operation_name, attempt, exc) from exc
            delay = compute_backoff(
                attempt,
                initial_delay_ms / 1000,
                backoff_factor,
                max_delay_ms / 1000 if max_delay_ms is not None else None,
            )
            logger.warning(
                f"{operation_name} attempt {attempt}/{attempts} failed: {exc}. "
                f"Retrying in {delay:.2f}s"
            )
            await sleep(delay)
            continue
        if attempt > 1:
            logger.info(f"{operation_name} succeeded on attempt {attempt}")
        return result
    raise AssertionError("unreachable")  # pragma: no cover


class RetryPolicy(BaseModel):
    """Reusable retry settings."""

    max_retries: int = 3
    initial_delay_ms: int = 200
    backoff_factor: float = 2.0
    max_delay_ms: Optional[int] = 3000

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        return await with_retry(
            operation,
            operation_name=operation_name,
            max_retries=self.max_retries,
            initial_delay_ms=self.initial_delay_ms,
            backoff_factor=self.backoff_factor,
            max_delay_ms=self.max_delay_ms,
            sleep=sleep,
        )


async def with_timeout(
    awaitable: Awaitable[T], seconds: float, *, operation_name: str = "operation"
) -> T:
    """Await ``awaitable`` for at most ``seconds``."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise OperationTimeoutError(
            f"{operation_name} timed out after {seconds:.1f}s"
        ) from exc


def adaptive_timeout(
    size_bytes: int,
    base_seconds: float = 90.0,
    per_100kb_seconds: float = 15.0,
    max_extra_seconds: float = 90.0,
) -> float:
    """Timeout budget for an LLM call scaled by the input size."""
    extra = min((size_bytes // (100 * 1024)) * per_100kb_seconds, max_extra_seconds)
    return base_seconds + extra
