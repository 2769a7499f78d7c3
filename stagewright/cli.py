"""Command line interface for operating the stage engine."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Coroutine, List, Optional, TypeVar

import typer

from .bootstrap import build_catalog, build_engine, build_leases
from .catalog import SelectionRequest
from .config import load_config
from .contracts import ResultStatus, StageResult
from .engine import LeaseReaper
from .errors import StagewrightError
from .ingestion import CompletionIngestor, CompletionListener
from .persistence import get_repository
from .transports import get_transport

T = TypeVar("T")

app = typer.Typer(help="CLI for the stagewright stage engine")

# Command groups
workorder_app = typer.Typer(help="Commands for managing work orders")
operation_app = typer.Typer(help="Commands for operations")
workflow_app = typer.Typer(help="Commands for inspecting workflows")
completions_app = typer.Typer(help="Commands for consuming worker completions")
leases_app = typer.Typer(help="Commands for worker leases")

app.add_typer(workorder_app, name="workorder")
app.add_typer(operation_app, name="operation")
app.add_typer(workflow_app, name="workflow")
app.add_typer(completions_app, name="completions")
app.add_typer(leases_app, name="leases")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except StagewrightError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


def _parse_json(value: Optional[str], option: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except ValueError:
        typer.secho(f"{option} must be valid JSON", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level (defaults to the configured one)"
    ),
) -> None:
    """stagewright CLI entry point."""
    level = (log_level or load_config().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ----------------------------------------------------------------------
# Work orders


@workorder_app.command("create")
def workorder_create(
    title: str,
    goal: str = typer.Option("", help="Goal description (markdown)"),
    priority: str = typer.Option("medium", help="p0, high, medium or low"),
    tag: List[str] = typer.Option([], "--tag", help="Tag; repeat for several"),
    code: Optional[str] = typer.Option(None, help="Human-friendly work order code"),
) -> None:
    """
    Create a planned work order.

    Example:
        stagewright workorder create "Fix login crash" --priority p0 --tag bug
    """
    engine = build_engine()
    work_order = _run(
        engine.create_work_order(title, goal_md=goal, priority=priority, tags=tag, code=code)
    )
    typer.echo(work_order.id)


@workorder_app.command("start")
def workorder_start(
    work_order_id: str,
    workflow: Optional[str] = typer.Option(None, help="Use this workflow instead of selecting one"),
    flag: List[str] = typer.Option([], "--flag", help="Context flag set to true; repeatable"),
    context: Optional[str] = typer.Option(None, help="Start context as a JSON object"),
) -> None:
    """
    Select a workflow and dispatch the first effective stage.

    Example:
        stagewright workorder start <id> --flag hasUnknowns --flag touchesSecurity
    """
    start_context = _parse_json(context, "--context") or {}
    if not isinstance(start_context, dict):
        typer.secho("--context must be a JSON object", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)
    for name in flag:
        start_context[name] = True

    engine = build_engine()
    work_order = _run(engine.start_work_order(work_order_id, start_context, workflow))
    refs = ", ".join(stage.ref for stage in work_order.stage_plan)
    typer.echo(f"Work order {work_order.id} started on {work_order.workflow_id}: {refs}")


@workorder_app.command("list")
def workorder_list() -> None:
    """List work orders with their state and workflow."""

    async def _list():
        async with get_repository().transaction() as uow:
            return await uow.list_work_orders()

    work_orders = _run(_list())
    if not work_orders:
        typer.echo("No work orders found")
        return
    for wo in work_orders:
        typer.echo(f"{wo.id}\t{wo.state.value}\t{wo.workflow_id or '-'}\t{wo.title}")


@workorder_app.command("show")
def workorder_show(work_order_id: str) -> None:
    """
    Show a work order with its operations, stories and activity trail.

    Example:
        stagewright workorder show <id>
    """

    async def _show():
        async with get_repository().transaction() as uow:
            wo = await uow.get_work_order(work_order_id)
            if wo is None:
                return None, [], [], []
            return (
                wo,
                await uow.list_operations(work_order_id),
                await uow.list_stories(work_order_id=work_order_id),
                await uow.list_activities(work_order_id),
            )

    wo, operations, stories, activities = _run(_show())
    if wo is None:
        typer.echo("Work order not found")
        raise typer.Exit(code=1)

    typer.echo(f"Work order {wo.id}: {wo.state.value}")
    typer.echo(f"Title: {wo.title}")
    if wo.workflow_id:
        typer.echo(f"Workflow: {wo.workflow_id} (stage {wo.current_stage})")
    if wo.blocked_reason:
        typer.echo(f"Blocked: {wo.blocked_reason}")
    for op in operations:
        typer.echo(f"- {op.title}: {op.status.value} [{op.id}]")
        for story in (s for s in stories if s.operation_id == op.id):
            typer.echo(f"    * {story.story_key}: {story.status.value}")
    for activity in activities:
        typer.echo(f"{activity.ts.isoformat()} {activity.type}: {activity.summary}")


@workorder_app.command("cancel")
def workorder_cancel(
    work_order_id: str,
    reason: Optional[str] = typer.Option(None, help="Why the work order is cancelled"),
) -> None:
    """Cancel a work order and its open operations."""
    engine = build_engine()
    work_order = _run(engine.cancel_work_order(work_order_id, reason))
    typer.echo(f"Work order {work_order.id}: {work_order.state.value}")


# ----------------------------------------------------------------------
# Operations


@operation_app.command("complete")
def operation_complete(
    operation_id: str,
    status: ResultStatus = typer.Option(ResultStatus.COMPLETED, help="Result status"),
    feedback: Optional[str] = typer.Option(None, help="Reviewer feedback"),
    output: Optional[str] = typer.Option(None, help="Result output as JSON"),
    artifact: List[str] = typer.Option([], "--artifact", help="Artifact path or URL"),
    token: Optional[str] = typer.Option(None, help="Completion token for idempotency"),
    worker: Optional[str] = typer.Option(None, help="Worker id holding the lease"),
) -> None:
    """
    Report a worker result for an operation.

    Example:
        stagewright operation complete <op-id> --status rejected --feedback "Missing tests"
    """
    result = StageResult(
        status=status,
        output=_parse_json(output, "--output"),
        feedback=feedback,
        artifacts=artifact,
        completion_token=token,
        worker_id=worker,
    )
    ingestor = CompletionIngestor(build_engine())
    ingestion = _run(ingestor.ingest(operation_id, result))
    if ingestion.status == "duplicate":
        typer.echo(f"Duplicate completion {ingestion.completion_token}; nothing changed")
        return
    outcome = ingestion.outcome
    typer.echo(
        f"{outcome.action}: work order {outcome.work_order_id} is "
        f"{outcome.work_order_state.value}"
        + (f", next operation {outcome.next_operation_id}" if outcome.next_operation_id else "")
    )


# ----------------------------------------------------------------------
# Workflows


@workflow_app.command("list")
def workflow_list() -> None:
    """List known workflows; the default one is marked with '*'."""
    catalog = build_catalog(load_config())
    default = catalog.selection.default_workflow_id
    for workflow in _run(catalog.list_workflows()):
        marker = "*" if workflow.id == default else " "
        typer.echo(f"{marker} {workflow.id}\t{workflow.description or ''}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show the stages of a workflow with their gates and conditions."""
    catalog = build_catalog(load_config())
    workflow = _run(catalog.load(workflow_id))
    typer.echo(f"Workflow {workflow.id}")
    for index, stage in enumerate(workflow.stages):
        details = [f"agent={stage.agent}", f"type={stage.type}"]
        if stage.review_gate_for:
            details.append(f"reviews={stage.review_gate_for}")
        if stage.condition is not None:
            details.append(
                f"when={stage.condition.model_dump(by_alias=True, exclude_defaults=True)}"
            )
        typer.echo(f"{index}. {stage.ref} ({', '.join(details)})")


@workflow_app.command("select")
def workflow_select(
    title: str = typer.Option("", help="Work order title"),
    goal: str = typer.Option("", help="Work order goal"),
    priority: Optional[str] = typer.Option(None, help="Work order priority"),
    tag: List[str] = typer.Option([], "--tag", help="Tag; repeat for several"),
    workflow: Optional[str] = typer.Option(None, help="Explicitly requested workflow"),
) -> None:
    """Preview which workflow a work order would be routed to."""
    catalog = build_catalog(load_config())
    request = SelectionRequest(title=title, goal=goal, priority=priority, tags=tag)
    selection = _run(catalog.resolve(workflow, request))
    rule = f" (rule {selection.matched_rule_id})" if selection.matched_rule_id else ""
    typer.echo(f"{selection.workflow_id}: {selection.reason}{rule}")


# ----------------------------------------------------------------------
# Completions and leases


@completions_app.command("listen")
def completions_listen(
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """Consume completion messages from the transport and apply them."""
    config = load_config()
    transport = get_transport(config=config)
    engine = build_engine(config, transport=transport)
    listener = CompletionListener(transport, CompletionIngestor(engine))
    typer.echo("Listening for completions")
    _run(listener.start(lifespan=lifespan))
    typer.echo(f"Processed {listener.processed_count} completions")


@leases_app.command("reap")
def leases_reap() -> None:
    """Re-dispatch operations whose worker lease expired."""
    config = load_config()
    engine = build_engine(config)
    reaper = LeaseReaper(engine, build_leases(config, engine.repository))
    outcomes = _run(reaper.reap())
    if not outcomes:
        typer.echo("No expired leases")
        return
    for outcome in outcomes:
        typer.echo(f"{outcome.operation_id}\t{outcome.action}")


if __name__ == "__main__":
    app()
