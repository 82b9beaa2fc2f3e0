import asyncio

import pytest

from poflow.errors import LockTimeoutError
from poflow.locking import PurchaseOrderLock


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_second_holder_waits_for_release():
    lock = PurchaseOrderLock(poll_interval=0.01, max_poll_interval=0.02)
    events = []

    async def holder(name, hold_for):
        async with lock.hold("po-1", workflow_id=name):
            events.append(f"{name}:start")
            await asyncio.sleep(hold_for)
            events.append(f"{name}:end")

    first = asyncio.create_task(holder("wf_a", 0.05))
    await asyncio.sleep(0.01)
    second = asyncio.create_task(holder("wf_b", 0))
    await asyncio.gather(first, second)

    assert events == ["wf_a:start", "wf_a:end", "wf_b:start", "wf_b:end"]
    assert lock.snapshot() == {}


@pytest.mark.asyncio
async def test_different_purchase_orders_do_not_block():
    lock = PurchaseOrderLock(poll_interval=0.01)
    release_a = await lock.acquire("po-1")
    release_b = await asyncio.wait_for(lock.acquire("po-2"), timeout=0.5)

    assert set(lock.snapshot()) == {"po-1", "po-2"}
    await release_a()
    await release_b()


@pytest.mark.asyncio
async def test_acquire_times_out():
    lock = PurchaseOrderLock(poll_interval=0.01, max_poll_interval=0.01)
    release = await lock.acquire("po-1", workflow_id="wf_a")

    with pytest.raises(LockTimeoutError):
        await lock.acquire("po-1", workflow_id="wf_b", timeout=0.05)

    await release()


@pytest.mark.asyncio
async def test_stale_lock_is_reclaimed(caplog):
    clock = FakeClock()
    lock = PurchaseOrderLock(poll_interval=0.01, max_age=10, clock=clock)
    stale_release = await lock.acquire("po-1", workflow_id="wf_crashed", stage="database_save")

    clock.now = 11
    with caplog.at_level("WARNING"):
        release = await asyncio.wait_for(
            lock.acquire("po-1", workflow_id="wf_new"), timeout=0.5
        )

    assert lock.snapshot()["po-1"].owner_workflow_id == "wf_new"
    assert "Reclaiming stale lock" in caplog.text

    # The crashed holder releasing late must not free the new holder's lock.
    await stale_release()
    assert lock.snapshot()["po-1"].owner_workflow_id == "wf_new"
    await release()
    assert lock.snapshot() == {}


@pytest.mark.asyncio
async def test_release_is_idempotent():
    lock = PurchaseOrderLock()
    release = await lock.acquire("po-1")
    await release()
    await release()

    other = await lock.acquire("po-1")
    await release()
    assert "po-1" in lock.snapshot()
    await other()


@pytest.mark.asyncio
async def test_missing_purchase_order_id_takes_no_lock():
    lock = PurchaseOrderLock()
    release = await lock.acquire(None)
    assert lock.snapshot() == {}
    await release()
