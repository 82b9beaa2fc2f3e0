"""Error taxonomy for the purchase-order pipeline.

Errors fall into three groups:

* fatal: abort the stage immediately and fail the workflow,
* retryable: transient, handled by :func:`poflow.utils.retry.with_retry`
  for sub-operations and by queue redelivery for whole stages,
* tolerated: logged and counted by the stage itself, never raised.
"""

from __future__ import annotations

import asyncio
import socket
from typing import Any, Literal, Optional

ErrorKind = Literal["fatal", "retryable"]

_FATAL_STATUS_CODES = {400, 401, 403, 404, 422}
_RETRYABLE_STATUS_CODES = {408, 409, 423, 425, 429}

_RETRYABLE_PATTERNS = (
    "connection reset",
    "connection refused",
    "econnrefused",
    "econnreset",
    "timed out",
    "timeout",
    "deadlock",
    "could not obtain lock",
    "database is locked",
    "lock timeout",
    "too many connections",
    "connection pool timeout",
    "can't reach database server",
    "engine is not yet connected",
    "rate limit",
)

_FATAL_PATTERNS = ("unauthorized", "forbidden", "invalid api key", "malformed")


class PoflowError(Exception):
    """Base class for all pipeline errors."""


class FatalError(PoflowError):
    """Non-retryable error; retrying would produce the same result."""


class AuthenticationError(FatalError):
    """Credentials were rejected by an external service."""


class MalformedInputError(FatalError):
    """The input document or job payload is unusable."""


class UnsupportedFileTypeError(MalformedInputError):
    """The uploaded file type cannot be parsed."""


class MissingIdentifierError(FatalError):
    """A required identifier (merchant id, purchase order id) is absent."""


class ValidationFailedError(FatalError):
    """A collaborator reported success but its result violates an invariant."""

    def __init__(self, message: str, purchase_order_id: Optional[str] = None):
        super().__init__(message)
        self.purchase_order_id = purchase_order_id


class RetryableError(PoflowError):
    """Transient error that may succeed on a later attempt."""


class TransientConnectionError(RetryableError):
    """Connection to an external service was reset or refused."""


class LockContentionError(RetryableError):
    """A row or resource lock could not be obtained in time."""


class RateLimitedError(RetryableError):
    """An external service asked us to slow down."""


class OperationTimeoutError(RetryableError):
    """A bounded wait elapsed before the operation finished."""


class LockTimeoutError(PoflowError):
    """A purchase-order lock could not be acquired before the caller deadline."""


class RetryExhaustedError(PoflowError):
    """Raised when :func:`with_retry` runs out of attempts."""

    def __init__(self, operation_name: str, attempts: int, last_error: BaseException):
        self.operation_name = operation_name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation_name} failed after {attempts} attempts: {last_error}"
        )


class StageFailedError(PoflowError):
    """Raised by the orchestrator after recording a stage failure."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        self.message = message
        super().__init__(f"{stage} failed: {message}")

    @property
    def retryable(self) -> bool:
        cause = self.__cause__
        return cause is not None and classify_error(cause) == "retryable"


def extract_http_status_code(error: BaseException) -> Optional[int]:
    for field_name in ("status_code", "status", "http_status"):
        parsed = _to_int_or_none(getattr(error, field_name, None))
        if parsed is not None:
            return parsed

    response = getattr(error, "response", None)
    if response is not None:
        parsed = _to_int_or_none(getattr(response, "status_code", None))
        if parsed is not None:
            return parsed
    return None


def classify_error(error: BaseException) -> ErrorKind:
    """Classify ``error`` as ``"fatal"`` or ``"retryable"``.

    Unknown errors are fatal so that programming bugs are not retried. An
    exhausted retry takes the kind of its last error, so the job queue can
    still redeliver the whole stage.
    """
    if isinstance(error, RetryExhaustedError):
        return classify_error(error.last_error)
    if isinstance(error, FatalError):
        return "fatal"
    if isinstance(error, RetryableError):
        return "retryable"

    status_code = extract_http_status_code(error)
    if status_code is not None:
        if status_code in _FATAL_STATUS_CODES:
            return "fatal"
        if status_code in _RETRYABLE_STATUS_CODES or 500 <= status_code <= 599:
            return "retryable"

    if isinstance(
        error, (ConnectionError, TimeoutError, asyncio.TimeoutError, socket.timeout)
    ):
        return "retryable"
    if isinstance(error, OSError) and not isinstance(
        error, (FileNotFoundError, PermissionError)
    ):
        return "retryable"

    message = str(error).lower()
    if any(pattern in message for pattern in _FATAL_PATTERNS):
        return "fatal"
    if any(pattern in message for pattern in _RETRYABLE_PATTERNS):
        return "retryable"
    class_name = error.__class__.__name__.lower()
    if "timeout" in class_name or "connection" in class_name:
        return "retryable"
    return "fatal"


def is_retryable(error: BaseException) -> bool:
    return classify_error(error) == "retryable"


def friendly_message(stage: str, error: BaseException) -> str:
    """Human-readable note stored on the purchase order when a stage fails."""
    return f"Processing failed at {stage} stage: {_root_message(error)}"


def _root_message(error: BaseException) -> str:
    if isinstance(error, RetryExhaustedError):
        return str(error)
    if isinstance(error, StageFailedError):
        return error.message
    return str(error) or error.__class__.__name__


def _to_int_or_none(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
