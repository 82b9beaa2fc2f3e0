import asyncio

import httpx
import pytest

from poflow.errors import (
    LockContentionError,
    MalformedInputError,
    MissingIdentifierError,
    RetryExhaustedError,
    StageFailedError,
    TransientConnectionError,
    UnsupportedFileTypeError,
    classify_error,
    friendly_message,
    is_retryable,
)


class StatusError(Exception):
    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


@pytest.mark.parametrize(
    "error",
    [
        MalformedInputError("bad document"),
        UnsupportedFileTypeError("application/zip"),
        MissingIdentifierError("merchantId is required"),
        StatusError(401),
        StatusError(422),
        ValueError("unexpected shape"),
        KeyError("aiResult"),
        FileNotFoundError("po.pdf"),
        PermissionError("uploads/po.pdf"),
        RetryExhaustedError("save", 3, MalformedInputError("bad document")),
    ],
)
def test_fatal_errors(error):
    assert classify_error(error) == "fatal"


@pytest.mark.parametrize(
    "error",
    [
        TransientConnectionError("connection reset by peer"),
        LockContentionError("row locked"),
        StatusError(503),
        StatusError(429),
        ConnectionResetError(),
        asyncio.TimeoutError(),
        RuntimeError("database is locked"),
        RuntimeError("Can't reach database server at db:5432"),
        OSError(113, "No route to host"),
        RetryExhaustedError("save", 3, TransientConnectionError("reset")),
        RetryExhaustedError("sync", 3, StatusError(503)),
    ],
)
def test_retryable_errors(error):
    assert classify_error(error) == "retryable"


def test_status_code_read_from_response():
    request = httpx.Request("POST", "https://sync.test")
    response = httpx.Response(502, request=request)
    error = httpx.HTTPStatusError("bad gateway", request=request, response=response)
    assert is_retryable(error)


def test_fatal_message_pattern_wins_over_retryable():
    assert classify_error(RuntimeError("Unauthorized: token timeout")) == "fatal"


def test_stage_failed_error_retryable_follows_cause():
    try:
        try:
            raise TransientConnectionError("reset")
        except TransientConnectionError as exc:
            raise StageFailedError("shopify_sync", str(exc)) from exc
    except StageFailedError as failed:
        assert failed.retryable
        assert failed.stage == "shopify_sync"

    assert not StageFailedError("ai_parsing", "no cause").retryable


def test_friendly_message_names_stage():
    message = friendly_message("database_save", ValueError("no line items"))
    assert message == "Processing failed at database_save stage: no line items"
    assert "after 3 attempts" in friendly_message(
        "ai_parsing", RetryExhaustedError("AI parsing", 3, TimeoutError("slow"))
    )
