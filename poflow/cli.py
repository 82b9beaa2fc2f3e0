"""Command line interface for running poflow workers and inspecting workflows."""

from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import typer

from .config import PoflowConfig, load_config
from .contracts import BinaryPayload, Stage
from .orchestrator import WorkflowOrchestrator
from .runtime import build_runtime
from .worker import DEFAULT_QUEUES, StageWorker

T = TypeVar("T")

app = typer.Typer(help="CLI for poflow purchase-order workflows")

# Command groups
worker_app = typer.Typer(help="Commands for running stage workers")
workflow_app = typer.Typer(help="Commands for managing workflows")

app.add_typer(worker_app, name="worker")
app.add_typer(workflow_app, name="workflow")

TEXT_SUFFIXES = {".txt", ".csv", ".json", ".md"}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", help="Path to YAML config (default: $POFLOW_CONFIG or config.yaml)"
    ),
    log_level: Optional[str] = typer.Option(None, help="Override the configured log level"),
) -> None:
    """poflow CLI entry point."""
    loaded = load_config(str(config) if config else None)
    if log_level:
        loaded.log_level = log_level.upper()
    configure_logging(loaded.log_level)
    ctx.obj = loaded


def _run(
    config: PoflowConfig, action: Callable[[WorkflowOrchestrator], Awaitable[T]]
) -> T:
    async def runner() -> T:
        async with build_runtime(config) as runtime:
            return await action(WorkflowOrchestrator(runtime))

    return asyncio.run(runner())


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


@worker_app.command("run")
def worker_run(
    ctx: typer.Context,
    queue: Optional[List[str]] = typer.Option(
        None, help="Queue to consume; repeat for several (default: all)"
    ),
    lifespan: Optional[float] = None,
) -> None:
    """
    Run a worker consuming the stage queues.

    Args:
        queue: Queues to consume (default: every stage queue plus image-search)
        lifespan: Worker timeout in seconds (default: run indefinitely)

    Example:
        poflow worker run
        poflow worker run --queue ai-parsing --lifespan 300
    """
    queues = queue or list(DEFAULT_QUEUES)
    typer.echo(f"Starting worker on: {', '.join(queues)}")

    async def action(orchestrator: WorkflowOrchestrator) -> None:
        await StageWorker(orchestrator, queues=queues).start(lifespan=lifespan)

    _run(ctx.obj, action)


@worker_app.command("run-once")
def worker_run_once(ctx: typer.Context) -> None:
    """Process queued jobs until every queue is empty, then exit."""

    async def action(orchestrator: WorkflowOrchestrator) -> int:
        return await StageWorker(orchestrator).run_until_idle()

    handled = _run(ctx.obj, action)
    typer.echo(f"Processed {handled} jobs")


def _document_fields(path: Path, mime_type: Optional[str]) -> dict[str, Any]:
    mime_type = mime_type or mimetypes.guess_type(path.name)[0] or "application/pdf"
    if path.suffix.lower() in TEXT_SUFFIXES or mime_type.startswith("text/"):
        return {"content": path.read_text(), "mimeType": mime_type}
    payload = BinaryPayload.from_bytes(path.read_bytes(), media_type=mime_type)
    return {"fileBuffer": payload.model_dump(), "mimeType": mime_type}


@workflow_app.command("start")
def workflow_start(
    ctx: typer.Context,
    file: Path,
    merchant_id: str = typer.Option(..., help="Merchant that owns the purchase order"),
    purchase_order_id: Optional[str] = typer.Option(
        None, help="Existing purchase order to fill in"
    ),
    mime_type: Optional[str] = typer.Option(None, help="Override the detected MIME type"),
    run_inline: bool = typer.Option(
        False, help="Process the workflow in this process before exiting"
    ),
) -> None:
    """
    Start a workflow for a purchase-order document.

    Example:
        poflow workflow start ./po-1042.pdf --merchant-id shop-123
        poflow workflow start ./po.txt --merchant-id shop-123 --run-inline
    """
    if not file.is_file():
        typer.secho(f"File not found: {file}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    data = {
        "merchantId": merchant_id,
        "purchaseOrderId": purchase_order_id,
        "fileName": file.name,
        **_document_fields(file, mime_type),
    }

    async def action(orchestrator: WorkflowOrchestrator) -> dict[str, Any]:
        workflow_id = await orchestrator.start_workflow(data)
        if run_inline:
            await StageWorker(orchestrator).run_until_idle()
        return await orchestrator.get_workflow_status(workflow_id)

    status = _run(ctx.obj, action)
    typer.echo(f"Workflow ID: {status['workflowId']}")
    if run_inline:
        _echo_json(status)


@workflow_app.command("status")
def workflow_status(ctx: typer.Context, workflow_id: str) -> None:
    """Show the status of each stage of a workflow."""
    status = _run(ctx.obj, lambda o: o.get_workflow_status(workflow_id))
    _echo_json(status)
    if status["status"] == "not_found":
        raise typer.Exit(code=1)


@workflow_app.command("progress")
def workflow_progress(ctx: typer.Context, workflow_id: str) -> None:
    """Show the overall progress percentage of a workflow."""
    _echo_json(_run(ctx.obj, lambda o: o.get_workflow_progress(workflow_id)))


@workflow_app.command("retry")
def workflow_retry(
    ctx: typer.Context,
    workflow_id: str,
    from_stage: Optional[Stage] = typer.Option(
        None, help="Stage to restart from (default: the stage that failed)"
    ),
) -> None:
    """Re-schedule a failed workflow."""
    try:
        envelope = _run(
            ctx.obj,
            lambda o: o.retry_workflow(
                workflow_id, from_stage.value if from_stage else None
            ),
        )
    except ValueError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Re-scheduled {envelope.stage} for workflow {workflow_id}")


@workflow_app.command("sweep")
def workflow_sweep(ctx: typer.Context) -> None:
    """Fail workflows that have been stuck longer than the configured threshold."""
    failed = _run(ctx.obj, lambda o: o.cleanup_expired())
    if not failed:
        typer.echo("No stuck workflows")
        return
    for workflow_id in failed:
        typer.echo(f"{workflow_id}\tfailed")


@app.command("health")
def health(ctx: typer.Context) -> None:
    """Check connectivity of the configured backends."""
    checks = _run(ctx.obj, lambda o: o.runtime.health_check())
    for name, ok in checks.items():
        colour = typer.colors.GREEN if ok else typer.colors.RED
        typer.secho(f"{name}\t{'ok' if ok else 'unavailable'}", fg=colour)
    if not all(checks.values()):
        raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
