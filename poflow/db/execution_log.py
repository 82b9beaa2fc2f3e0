from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

from ..contracts import utcnow
from .models import StageExecution, WorkflowExecution


class ExecutionLog:
    """Async audit log of workflow and stage executions."""

    def __init__(self, database_url: str) -> None:
        connect_args = (
            {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        )
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    async def record_workflow_start(
        self,
        workflow_id: str,
        purchase_order_id: Optional[str] = None,
        merchant_id: Optional[str] = None,
        current_stage: Optional[str] = None,
    ) -> WorkflowExecution:
        row = WorkflowExecution(
            workflow_id=workflow_id,
            purchase_order_id=purchase_order_id,
            merchant_id=merchant_id,
            current_stage=current_stage,
        )
        async with self.session() as session:
            row = await session.merge(row)
            await session.commit()
        return row

    async def update_workflow(self, workflow_id: str, **fields: Any) -> None:
        async with self.session() as session:
            row = await session.get(WorkflowExecution, workflow_id)
            if row is None:
                return
            for key, value in fields.items():
                setattr(row, key, value)
            await session.commit()

    async def record_workflow_finished(
        self, workflow_id: str, status: str, error_message: Optional[str] = None
    ) -> None:
        fields: dict[str, Any] = {"status": status, "completed_at": utcnow()}
        if status == "completed":
            fields["progress"] = 100
        if error_message is not None:
            fields["error_message"] = error_message
        await self.update_workflow(workflow_id, **fields)

    async def record_stage_start(
        self, workflow_id: str, stage: str, payload: dict, attempt: int = 1
    ) -> StageExecution:
        row = StageExecution(
            workflow_id=workflow_id,
            stage=stage,
            attempt=attempt,
            input_keys=sorted(payload),
        )
        async with self.session() as session:
            session.add(row)
            workflow = await session.get(WorkflowExecution, workflow_id)
            if workflow is not None:
                workflow.current_stage = stage
            await session.commit()
            await session.refresh(row)
        return row

    async def record_stage_result(
        self, stage_execution_id: UUID, output: dict, status: str = "completed"
    ) -> None:
        async with self.session() as session:
            row = await session.get(StageExecution, stage_execution_id)
            if row is None:
                return
            row.output = output
            row.status = status
            row.finished_at = utcnow()
            await session.commit()

    async def record_stage_error(self, stage_execution_id: UUID, error: str) -> None:
        async with self.session() as session:
            row = await session.get(StageExecution, stage_execution_id)
            if row is None:
                return
            row.status = "failed"
            row.error_message = error
            row.finished_at = utcnow()
            await session.commit()

    async def get_workflow_execution(self, workflow_id: str) -> WorkflowExecution | None:
        async with self.session() as session:
            return await session.get(WorkflowExecution, workflow_id)

    async def list_stage_executions(self, workflow_id: str) -> list[StageExecution]:
        async with self.session() as session:
            result = await session.execute(
                select(StageExecution)
                .where(StageExecution.workflow_id == workflow_id)
                .order_by(StageExecution.started_at)
            )
            return list(result.scalars().all())
