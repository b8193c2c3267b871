"""Workflow commands: drive the engine and render its results."""

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable, Coroutine
from pathlib import Path
from typing import Any, TypeVar

import click
import structlog

from harness_workflow.catalog import WORKFLOW_DEFINITIONS, describe_workflow, missing_modules
from harness_workflow.config.settings import HarnessSettings
from harness_workflow.engine.persistence import FileWorkflowStore
from harness_workflow.engine.workflow_engine import WorkflowEngine
from harness_workflow.enums import GuardLevel, StepStatus, WorkflowStatus
from harness_workflow.exceptions import HarnessError
from harness_workflow.external.mapper import build_agent_hint, sync_workflow_state
from harness_workflow.models.domain import WorkflowEvent, WorkflowInstance
from harness_workflow.models.results import EngineResult

log = structlog.get_logger(__name__)

T = TypeVar("T")

# Exit codes for semantic error reporting
EXIT_SUCCESS = 0
EXIT_ACTION_REFUSED = 1
EXIT_NOT_INSTALLED = 2
EXIT_INTERRUPTED = 130

STEP_MARKERS = {
    StepStatus.PENDING: "[ ]",
    StepStatus.RUNNING: "[>]",
    StepStatus.WAITING_CHECKPOINT: "[?]",
    StepStatus.COMPLETED: "[x]",
    StepStatus.SKIPPED: "[-]",
    StepStatus.FAILED: "[!]",
}


def build_engine(root: Path, settings: HarnessSettings, **overrides: Any) -> WorkflowEngine:
    store = FileWorkflowStore(root, settings.workflow.workflows_directory)
    return WorkflowEngine(store, defaults=settings.engine_config(**overrides))


def _emit_json(document: Any) -> None:
    click.echo(json.dumps(document, indent=2, ensure_ascii=False))


def _print_steps(instance: WorkflowInstance) -> None:
    for step in instance.steps:
        marker = STEP_MARKERS[step.status]
        line = f"  {marker} {step.order}. {step.agent}: {step.action}"
        if step.checkpoint:
            line += f" (checkpoint: {step.checkpoint})"
        if step.retry_count:
            line += f" [retries: {step.retry_count}]"
        click.echo(line)
        if step.error and step.status is StepStatus.FAILED:
            click.echo(f"       error: {step.error}")


def _print_instance(instance: WorkflowInstance) -> None:
    click.echo(
        f"{instance.id} ({instance.workflow_type}) status: {instance.status.value}  "
        f"step {instance.current_step}/{instance.total_steps}"
    )
    if instance.context.description:
        click.echo(f"  {instance.context.description}")
    _print_steps(instance)


def _print_result(result: EngineResult) -> None:
    if not result.success:
        click.echo(f"Error: {result.message}", err=True)
        if result.allowed_actions:
            click.echo(f"Allowed actions: {', '.join(result.allowed_actions)}", err=True)
        return

    click.echo(result.message)
    instance = result.instance
    if instance is None or instance.is_terminal:
        return
    if instance.status is WorkflowStatus.RUNNING:
        click.echo("")
        click.echo(build_agent_hint(instance.current, instance.workflow_type))
    next_action = result.next_action
    if next_action and next_action.dispatch_hint:
        hint = next_action.dispatch_hint
        click.echo(f"Dispatch: {hint.agent_type} (model: {hint.model})")
    click.echo(f"Next: {', '.join(result.allowed_actions)}")


async def _apply(
    ctx: click.Context,
    action: Callable[[WorkflowEngine], Awaitable[EngineResult]],
    **overrides: Any,
) -> EngineResult:
    """Run one engine action and mirror the outcome into the external tool."""
    root: Path = ctx.obj["root"]
    settings: HarnessSettings = ctx.obj["settings"]
    result = await action(build_engine(root, settings, **overrides))

    if result.success and result.instance is not None and result.instance.config.sync_to_external:
        outcome = await sync_workflow_state(
            root,
            result.instance,
            directory=settings.external.memory_directory,
            max_outcome_notes=settings.external.max_outcome_notes,
        )
        log.debug("external_sync", synced=outcome.synced, skipped=outcome.skipped, failed=outcome.failed)
    return result


def _run(name: str, coroutine: Coroutine[Any, Any, T]) -> T:
    """Run a command coroutine, turning every failure into an exit code."""
    try:
        return asyncio.run(coroutine)
    except HarnessError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{name}_error", exc_info=True)
        sys.exit(EXIT_ACTION_REFUSED)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error(f"{name}_unexpected", exc_info=True)
        sys.exit(EXIT_ACTION_REFUSED)


def _run_action(
    ctx: click.Context,
    name: str,
    action: Callable[[WorkflowEngine], Awaitable[EngineResult]],
    **overrides: Any,
) -> None:
    result = _run(name, _apply(ctx, action, **overrides))

    if ctx.obj["json"]:
        _emit_json(result.to_document())
    else:
        _print_result(result)
    if not result.success:
        sys.exit(EXIT_ACTION_REFUSED)


@click.command()
@click.argument("workflow", required=False)
@click.pass_context
def guide(ctx: click.Context, workflow: str | None) -> None:
    """Show available workflows, or the pipeline of one WORKFLOW."""
    settings: HarnessSettings = ctx.obj["settings"]

    if workflow is None:
        if ctx.obj["json"]:
            _emit_json([definition.to_document() for definition in WORKFLOW_DEFINITIONS.values()])
            return
        click.echo("Available workflows:")
        for name, definition in WORKFLOW_DEFINITIONS.items():
            missing = missing_modules(definition, settings.modules)
            mark = click.style("[OK]", fg="green") if not missing else click.style("[--]", fg="yellow")
            click.echo(f"  {mark} {name} - {definition.description}")
            if missing:
                click.echo(f"       missing modules: {', '.join(missing)}")
        click.echo("")
        click.echo("Start one with: harness start <workflow>")
        return

    definition = WORKFLOW_DEFINITIONS.get(workflow)
    if definition is None:
        click.echo(f"Error: Unknown workflow: {workflow}. Available: {', '.join(WORKFLOW_DEFINITIONS)}", err=True)
        sys.exit(EXIT_ACTION_REFUSED)

    if ctx.obj["json"]:
        _emit_json(definition.to_document())
        return
    missing = missing_modules(definition, settings.modules)
    if missing:
        click.echo(f"Warning: missing modules: {', '.join(missing)}; some steps may be limited.")
    click.echo(describe_workflow(definition))


@click.command()
@click.argument("workflow")
@click.option("--context", "context_json", help="Workflow context as a JSON object")
@click.option("--description", help="Short description of the task")
@click.option(
    "--guard-level",
    type=click.Choice([level.value for level in GuardLevel]),
    default=None,
    help="Override the configured guard level",
)
@click.option("--auto-dispatch", is_flag=True, help="Attach dispatch hints to each step")
@click.option("--team-mode", default=None, help="Override the workflow's team mode")
@click.pass_context
def start(
    ctx: click.Context,
    workflow: str,
    context_json: str | None,
    description: str | None,
    guard_level: str | None,
    auto_dispatch: bool,
    team_mode: str | None,
) -> None:
    """Start WORKFLOW and make it the active workflow."""
    context: dict[str, Any] = {}
    if context_json:
        try:
            context = json.loads(context_json)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"not valid JSON: {e}", param_hint="--context") from e
        if not isinstance(context, dict):
            raise click.BadParameter("must be a JSON object", param_hint="--context")
    if description:
        context["description"] = description

    _run_action(
        ctx,
        "start",
        lambda engine: engine.start(workflow, context),
        guard_level=guard_level,
        auto_dispatch=auto_dispatch or None,
        team_mode=team_mode,
    )


@click.command()
@click.option("--result", "step_result", help="Summary of what the step produced")
@click.pass_context
def advance(ctx: click.Context, step_result: str | None) -> None:
    """Complete the current step and move to the next one."""
    _run_action(ctx, "advance", lambda engine: engine.advance(result=step_result))


@click.command()
@click.option("--approver", help="Who approved the checkpoint")
@click.pass_context
def approve(ctx: click.Context, approver: str | None) -> None:
    """Approve the current checkpoint."""
    _run_action(ctx, "approve", lambda engine: engine.approve(approver))


@click.command()
@click.option("--reason", help="Why the checkpoint is rejected")
@click.pass_context
def reject(ctx: click.Context, reason: str | None) -> None:
    """Reject the current checkpoint."""
    _run_action(ctx, "reject", lambda engine: engine.reject(reason))


@click.command()
@click.pass_context
def retry(ctx: click.Context) -> None:
    """Retry the failed step."""
    _run_action(ctx, "retry", lambda engine: engine.retry())


@click.command()
@click.option("--reason", help="Why the step is skipped")
@click.pass_context
def skip(ctx: click.Context, reason: str | None) -> None:
    """Skip a failed or optional step."""
    _run_action(ctx, "skip", lambda engine: engine.skip(reason))


@click.command()
@click.option("--error", "error_text", required=True, help="What went wrong")
@click.pass_context
def fail(ctx: click.Context, error_text: str) -> None:
    """Mark the running step as failed."""
    _run_action(ctx, "fail", lambda engine: engine.fail(error_text))


@click.command()
@click.option("--reason", help="Why the workflow is aborted")
@click.pass_context
def abort(ctx: click.Context, reason: str | None) -> None:
    """Abort the active workflow."""
    _run_action(ctx, "abort", lambda engine: engine.abort(reason))


@click.command()
@click.argument("workflow_id", required=False)
@click.pass_context
def status(ctx: click.Context, workflow_id: str | None) -> None:
    """Show the active workflow, or WORKFLOW_ID."""
    engine = build_engine(ctx.obj["root"], ctx.obj["settings"])
    instance = _run("status", engine.status(workflow_id))

    if ctx.obj["json"]:
        _emit_json(instance.to_document() if instance else {"active": False, "workflowId": workflow_id})
        return
    if instance is None:
        if workflow_id:
            click.echo(f"Workflow not found: {workflow_id}")
        else:
            click.echo("No active workflow. Start one with: harness start <workflow>")
        return

    _print_instance(instance)
    if instance.status is WorkflowStatus.RUNNING:
        click.echo("")
        click.echo(build_agent_hint(instance.current, instance.workflow_type))


@click.command("list")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Maximum number of workflows")
@click.pass_context
def list_workflows(ctx: click.Context, limit: int | None) -> None:
    """List recent workflows, newest first."""
    settings: HarnessSettings = ctx.obj["settings"]
    engine = build_engine(ctx.obj["root"], settings)

    async def _collect() -> tuple[list[WorkflowInstance], str | None]:
        instances = await engine.list_recent(limit or settings.workflow.list_limit)
        return instances, (await engine.active_pointer()).active_workflow_id

    instances, active_id = _run("list", _collect())
    if ctx.obj["json"]:
        _emit_json([instance.to_document() for instance in instances])
        return
    if not instances:
        click.echo("No workflows yet.")
        return
    for instance in instances:
        marker = "*" if instance.id == active_id else " "
        click.echo(
            f"{marker} {instance.id}  {instance.status.value:<18} "
            f"step {instance.current_step}/{instance.total_steps}  {instance.updated_at}"
        )


def _format_event(event: WorkflowEvent) -> str:
    details = ", ".join(f"{key}={value}" for key, value in event.data.items() if value not in ("", None, {}))
    return f"  {event.timestamp}  {event.type.value:<20} {details}".rstrip()


@click.command()
@click.argument("workflow_id", required=False)
@click.pass_context
def history(ctx: click.Context, workflow_id: str | None) -> None:
    """Show the event history of the active workflow, or WORKFLOW_ID."""
    engine = build_engine(ctx.obj["root"], ctx.obj["settings"])
    events = _run("history", engine.history(workflow_id))

    if ctx.obj["json"]:
        _emit_json([event.to_document() for event in events])
        return
    if not events:
        click.echo("No history recorded.")
        return
    for event in events:
        click.echo(_format_event(event))


WORKFLOW_COMMANDS = [guide, start, advance, approve, reject, retry, skip, fail, abort, status, list_workflows, history]
