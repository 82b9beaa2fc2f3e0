import pytest

from poflow.contracts import PIPELINE, Stage
from poflow.store import (
    InMemoryStageResultStore,
    InMemoryWorkflowRunStore,
    WorkflowRun,
    merge_for_dispatch,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class BrokenStageResultStore(InMemoryStageResultStore):
    async def _read_all(self, workflow_id):
        raise ConnectionError("redis unavailable")


@pytest.mark.asyncio
async def test_accumulates_results_across_stages():
    store = InMemoryStageResultStore()
    await store.save_stage_result(
        "wf_1", Stage.AI_PARSING.value, {"aiResult": {"success": True}, "confidence": 0.9}
    )
    await store.save_stage_result(
        "wf_1",
        Stage.DATABASE_SAVE.value,
        {"purchaseOrderId": "po-1", "merchantId": "shop-1", "lineItemCount": 3},
    )

    data = await store.get_accumulated_data("wf_1")

    assert data["aiResult"] == {"success": True}
    assert data["confidence"] == 0.9
    assert data["purchaseOrderId"] == "po-1"
    assert data["workflowId"] == "wf_1"
    assert set(data["previousStages"]) == {"ai_parsing", "database_save"}
    assert data["previousStages"]["database_save"]["keys"] == [
        "lineItemCount",
        "merchantId",
        "purchaseOrderId",
    ]


@pytest.mark.asyncio
async def test_later_empty_identifier_does_not_erase_earlier_one():
    store = InMemoryStageResultStore()
    await store.save_stage_result("wf_1", "database_save", {"purchaseOrderId": "po-1"})
    await store.save_stage_result(
        "wf_1", "product_draft_creation", {"purchaseOrderId": None, "draftsCreated": 3}
    )

    data = await store.get_accumulated_data("wf_1")
    assert data["purchaseOrderId"] == "po-1"
    assert data["draftsCreated"] == 3


@pytest.mark.asyncio
async def test_later_stage_wins_on_conflict():
    store = InMemoryStageResultStore()
    await store.save_stage_result("wf_1", "ai_parsing", {"confidence": 0.4})
    await store.save_stage_result("wf_1", "database_save", {"confidence": 0.8})

    assert (await store.get_accumulated_data("wf_1"))["confidence"] == 0.8
    assert await store.get_stage_result("wf_1", "ai_parsing") == {"confidence": 0.4}
    assert await store.get_stage_result("wf_1", "shopify_sync") is None


def test_merge_for_dispatch_reasserts_caller_identifiers():
    merged = merge_for_dispatch(
        {"merchantId": "shop-1", "purchaseOrderId": "po-new", "note": "caller"},
        {"purchaseOrderId": "po-old", "note": "accumulated", "lineItemCount": 3},
    )
    assert merged["purchaseOrderId"] == "po-new"
    assert merged["merchantId"] == "shop-1"
    assert merged["note"] == "accumulated"
    assert merged["lineItemCount"] == 3


def test_merge_for_dispatch_keeps_accumulated_identifier_when_caller_has_none():
    merged = merge_for_dispatch({"purchaseOrderId": None}, {"purchaseOrderId": "po-1"})
    assert merged["purchaseOrderId"] == "po-1"


@pytest.mark.asyncio
async def test_unavailable_store_falls_back_to_caller_data(caplog):
    store = BrokenStageResultStore()
    fallback = {"merchantId": "shop-1", "purchaseOrderId": "po-1"}

    with caplog.at_level("WARNING"):
        data = await store.get_accumulated_data("wf_1", fallback=fallback)

    assert data == fallback
    assert data is not fallback
    assert "identifiers may be lost" in caplog.text


@pytest.mark.asyncio
async def test_results_expire_after_ttl_and_extend():
    clock = FakeClock()
    store = InMemoryStageResultStore(ttl_seconds=60, clock=clock)
    await store.save_stage_result("wf_1", "ai_parsing", {"confidence": 0.9})

    clock.now += 50
    await store.extend_ttl("wf_1", 60)
    clock.now += 50
    assert await store.get_stage_result("wf_1", "ai_parsing") == {"confidence": 0.9}

    clock.now += 61
    assert await store.get_accumulated_data("wf_1") == {
        "workflowId": "wf_1",
        "previousStages": {},
    }


@pytest.mark.asyncio
async def test_clear_workflow_results():
    store = InMemoryStageResultStore()
    await store.save_stage_result("wf_1", "ai_parsing", {"confidence": 0.9})
    await store.save_stage_result("wf_2", "ai_parsing", {"confidence": 0.5})

    await store.clear_workflow_results("wf_1")

    assert await store.get_stage_result("wf_1", "ai_parsing") is None
    assert await store.get_stage_result("wf_2", "ai_parsing") == {"confidence": 0.5}


@pytest.mark.asyncio
async def test_run_store_round_trip_and_active_listing():
    clock = FakeClock()
    runs = InMemoryWorkflowRunStore(ttl_seconds=100, clock=clock)
    active = WorkflowRun(workflow_id="wf_1", payload={"merchantId": "shop-1"})
    done = WorkflowRun(workflow_id="wf_2", status="completed")
    await runs.save(active)
    await runs.save(done)

    loaded = await runs.get("wf_1")
    assert loaded.merchant_id == "shop-1"
    assert [run.workflow_id for run in await runs.list_active()] == ["wf_1"]

    clock.now += 101
    assert await runs.get("wf_1") is None


def test_run_starts_with_every_stage_pending():
    run = WorkflowRun(workflow_id="wf_1")
    assert list(run.stages) == [stage.value for stage in PIPELINE]
    assert all(state.status == "pending" for state in run.stages.values())
    assert run.progress_percent == 0


def test_mark_stage_progress_never_moves_backwards():
    run = WorkflowRun(workflow_id="wf_1")
    run.mark_stage("ai_parsing", "completed")
    run.mark_stage("database_save", "completed")
    assert run.progress_percent == 33
    assert run.completed_stages() == ["ai_parsing", "database_save"]

    run.progress_percent = 50
    run.mark_stage("product_draft_creation", "processing")
    assert run.progress_percent == 50
    assert run.current_stage == "product_draft_creation"
