import asyncio

import pytest

from poflow.errors import (
    MalformedInputError,
    OperationTimeoutError,
    RetryExhaustedError,
    TransientConnectionError,
)
from poflow.utils.retry import (
    RetryPolicy,
    adaptive_timeout,
    compute_backoff,
    with_retry,
    with_timeout,
)


class Recorder:
    def __init__(self, failures):
        self.failures = list(failures)
        self.calls = 0
        self.sleeps = []

    async def operation(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return "ok"

    async def sleep(self, seconds):
        self.sleeps.append(seconds)


@pytest.mark.asyncio
async def test_retry_recovers_from_transient_errors():
    recorder = Recorder([TransientConnectionError("reset"), TransientConnectionError("reset")])

    result = await with_retry(
        recorder.operation, operation_name="save", sleep=recorder.sleep
    )

    assert result == "ok"
    assert recorder.calls == 3
    assert recorder.sleeps == [0.2, 0.4]


@pytest.mark.asyncio
async def test_retry_exhaustion_makes_exactly_max_attempts():
    errors = [TransientConnectionError(f"reset {n}") for n in range(5)]
    recorder = Recorder(errors)

    with pytest.raises(RetryExhaustedError) as info:
        await with_retry(
            recorder.operation,
            operation_name="Persist AI results",
            max_retries=3,
            sleep=recorder.sleep,
        )

    assert recorder.calls == 3
    assert info.value.attempts == 3
    assert "Persist AI results failed after 3 attempts" in str(info.value)
    assert str(info.value.__cause__) == "reset 2"
    assert len(recorder.sleeps) == 2


@pytest.mark.asyncio
async def test_fatal_error_is_not_retried():
    recorder = Recorder([MalformedInputError("not a purchase order")])

    with pytest.raises(MalformedInputError):
        await with_retry(recorder.operation, sleep=recorder.sleep)

    assert recorder.calls == 1
    assert recorder.sleeps == []


@pytest.mark.asyncio
async def test_nested_exhaustion_is_not_retried_again():
    recorder = Recorder([TransientConnectionError(f"reset {n}") for n in range(9)])

    async def inner():
        return await with_retry(
            recorder.operation, operation_name="inner", max_retries=3, sleep=recorder.sleep
        )

    with pytest.raises(RetryExhaustedError) as info:
        await with_retry(inner, operation_name="outer", max_retries=3, sleep=recorder.sleep)

    assert recorder.calls == 3
    assert info.value.operation_name == "inner"


@pytest.mark.asyncio
async def test_policy_uses_configured_delays():
    recorder = Recorder([TransientConnectionError("reset")] * 3)
    policy = RetryPolicy(max_retries=4, initial_delay_ms=100, backoff_factor=3, max_delay_ms=500)

    assert await policy.run(recorder.operation, "sync", sleep=recorder.sleep) == "ok"
    assert recorder.sleeps == pytest.approx([0.1, 0.3, 0.5])


def test_compute_backoff_caps_delay():
    assert compute_backoff(1, 0.2) == 0.2
    assert compute_backoff(3, 0.2) == pytest.approx(0.8)
    assert compute_backoff(10, 0.2, max_delay=3.0) == 3.0
    assert 0.2 <= compute_backoff(1, 0.2, jitter=0.1) <= 0.3


@pytest.mark.asyncio
async def test_with_timeout_raises_operation_timeout():
    with pytest.raises(OperationTimeoutError, match="image search timed out"):
        await with_timeout(asyncio.sleep(1), 0.01, operation_name="image search")

    assert await with_timeout(asyncio.sleep(0, result=5), 1) == 5


def test_adaptive_timeout_scales_with_size():
    assert adaptive_timeout(10 * 1024) == 90.0
    assert adaptive_timeout(250 * 1024) == 120.0
    assert adaptive_timeout(50 * 1024 * 1024) == 180.0
