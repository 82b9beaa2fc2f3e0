import pytest
import pytest_asyncio

from poflow.db import ExecutionLog
from poflow.db.models import StageExecution, WorkflowExecution


@pytest_asyncio.fixture
async def execution_log(tmp_path):
    log = ExecutionLog(f"sqlite+aiosqlite:///{tmp_path / 'executions.db'}")
    await log.init_db()
    yield log
    await log.close()


@pytest.mark.asyncio
async def test_execution_log_lifecycle(execution_log):
    run = await execution_log.record_workflow_start(
        "wf_1", purchase_order_id="po-1", merchant_id="shop-1", current_stage="ai_parsing"
    )
    assert run.workflow_id == "wf_1"
    assert run.status == "active"

    step = await execution_log.record_stage_start(
        "wf_1", "database_save", {"merchantId": "shop-1", "aiResult": {}}, attempt=2
    )
    assert step.stage == "database_save"
    assert step.input_keys == ["aiResult", "merchantId"]

    await execution_log.record_stage_result(step.id, {"lineItemCount": 3})
    await execution_log.update_workflow("wf_1", progress=33)
    await execution_log.record_workflow_finished("wf_1", "completed")

    workflow = await execution_log.get_workflow_execution("wf_1")
    assert workflow.status == "completed"
    assert workflow.progress == 100
    assert workflow.current_stage == "database_save"
    assert workflow.completed_at is not None

    stages = await execution_log.list_stage_executions("wf_1")
    assert [(s.stage, s.status, s.attempt) for s in stages] == [("database_save", "completed", 2)]
    assert stages[0].output == {"lineItemCount": 3}


@pytest.mark.asyncio
async def test_record_stage_error(execution_log):
    await execution_log.record_workflow_start("wf_err")
    step = await execution_log.record_stage_start("wf_err", "ai_parsing", {})

    await execution_log.record_stage_error(step.id, "boom")
    await execution_log.record_workflow_finished("wf_err", "failed", "Processing failed")

    async with execution_log.session() as session:
        row = await session.get(StageExecution, step.id)
        assert row.status == "failed"
        assert row.error_message == "boom"
        assert row.finished_at is not None

    workflow = await execution_log.get_workflow_execution("wf_err")
    assert workflow.status == "failed"
    assert workflow.error_message == "Processing failed"


@pytest.mark.asyncio
async def test_updates_for_unknown_rows_are_ignored(execution_log):
    await execution_log.update_workflow("wf_missing", progress=10)
    assert await execution_log.get_workflow_execution("wf_missing") is None


@pytest.mark.asyncio
async def test_workflow_start_is_idempotent(execution_log):
    await execution_log.record_workflow_start("wf_dup", merchant_id="shop-1")
    await execution_log.record_workflow_start("wf_dup", merchant_id="shop-1")
    assert (await execution_log.get_workflow_execution("wf_dup")).merchant_id == "shop-1"


@pytest.mark.parametrize(
    "column",
    [
        WorkflowExecution.__table__.c.started_at,
        WorkflowExecution.__table__.c.completed_at,
        StageExecution.__table__.c.started_at,
        StageExecution.__table__.c.finished_at,
    ],
)
def test_timestamp_columns_are_timezone_aware(column):
    assert column.type.timezone is True


@pytest.mark.asyncio
async def test_timestamps_are_recorded(execution_log):
    run = await execution_log.record_workflow_start("wf_ts")
    step = await execution_log.record_stage_start("wf_ts", "ai_parsing", {})
    await execution_log.record_stage_result(step.id, {})

    assert run.started_at is not None
    stages = await execution_log.list_stage_executions("wf_ts")
    assert stages[0].started_at is not None
    assert stages[0].finished_at is not None
