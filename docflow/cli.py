"""Command line interface for the docflow engine."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from docflow import WorkflowEngine, get_instance_store, load_config
from docflow.catalog import load_definitions
from docflow.errors import ValidationError, WorkflowError
from docflow.models import DocumentEvent

app = typer.Typer(help="CLI for docflow document workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for workflow definitions")
instance_app = typer.Typer(help="Commands for inspecting workflow instances")
escalation_app = typer.Typer(help="Commands for time-based escalation")

app.add_typer(workflow_app, name="workflow")
app.add_typer(instance_app, name="instance")
app.add_typer(escalation_app, name="escalation")


@app.callback()
def main() -> None:
    """Docflow CLI entry point."""
    logging.basicConfig(
        level=load_config().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine() -> WorkflowEngine:
    return WorkflowEngine.from_config(store=get_instance_store())


@workflow_app.command("list")
def workflow_list(
    category: Optional[str] = None,
    active_only: bool = typer.Option(False, "--active", help="Only show active definitions"),
) -> None:
    """
    List workflow definitions known to the catalog.

    Includes built-in workflows and any definitions loaded from the
    ``engine.catalog_paths`` configured in docflow.yaml.

    Example:
        docflow workflow list --category financial
        # Output: high_value_approval    v1.0.0    financial    active
    """
    engine = _engine()
    definitions = engine.get_workflows(category=category, is_active=True if active_only else None)
    if not definitions:
        typer.echo("No workflows found")
        return
    for definition in definitions:
        state = "active" if definition.is_active else "inactive"
        typer.echo(f"{definition.id}\tv{definition.version}\t{definition.category}\t{state}")


@workflow_app.command("validate")
def workflow_validate(path: Path) -> None:
    """
    Validate workflow definitions in a YAML file or directory.

    Example:
        docflow workflow validate ./workflows
        # Output: OK vendor_onboarding (3 steps)
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        definitions = load_definitions(path)
    except ValidationError as exc:
        typer.secho(f"Invalid workflow definition: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    for definition in definitions:
        typer.echo(f"OK {definition.id} ({len(definition.steps)} steps)")


@instance_app.command("list")
def instance_list(
    active_only: bool = typer.Option(False, "--active", help="Only show non-terminal instances"),
    workflow_id: Optional[str] = None,
) -> None:
    """
    List workflow instances with their current status.

    Example:
        docflow instance list --active
        # Output: 3f2b...    high_value_approval    INV-1    in_progress
    """
    store = get_instance_store()
    if active_only:
        instances = asyncio.run(store.list_active())
    else:
        instances = asyncio.run(store.list(workflow_id=workflow_id))
    if not instances:
        typer.echo("No instances found")
        return
    for instance in instances:
        typer.echo(
            f"{instance.id}\t{instance.workflow_id}\t{instance.document_id}\t{instance.status}"
        )


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """
    Show an instance with its step history and approvals.

    Example:
        docflow instance show 3f2b...
        # Output: Instance 3f2b...: in_progress (high_value_approval v1.0.0)
        #         - manager_approval: approval completed by alice (12.0s)
    """
    store = get_instance_store()
    instance = asyncio.run(store.get(instance_id))
    if instance is None:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)
    typer.echo(
        f"Instance {instance.id}: {instance.status} "
        f"({instance.workflow_id} v{instance.workflow_version})"
    )
    typer.echo(f"Document: {instance.document_id}")
    if instance.current_step:
        typer.echo(f"Current step: {instance.current_step}")
    for entry in instance.history:
        typer.echo(
            f"- {entry.step_id}: {entry.action} {entry.status} by {entry.actor_id}"
            + (f" ({entry.duration:.1f}s)" if entry.duration else "")
            + (f" - {entry.notes}" if entry.notes else "")
        )
    for record in instance.approvals:
        typer.echo(f"* {record.step_id}: {record.approver_id} {record.decision}")


@app.command("trigger")
def trigger(event_json: str) -> None:
    """
    Feed a document event to the engine and start every matching workflow.

    EVENT_JSON is either a JSON object or the path of a file containing one.

    Example:
        docflow trigger '{"document_id": "INV-1", "amount": 250000}'
        docflow trigger ./events/inv-1.json
        # Output: high_value_approval    3f2b...
    """
    try:
        if Path(event_json).is_file():
            event_json = Path(event_json).read_text()
        event = DocumentEvent.model_validate(json.loads(event_json))
    except ValueError as exc:
        typer.secho(f"Invalid event: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    engine = _engine()
    instance_ids = asyncio.run(engine.trigger_workflow(event))
    if not instance_ids:
        typer.echo("No workflows matched")
        return
    for instance_id in instance_ids:
        instance = asyncio.run(engine.get_workflow_instance(instance_id))
        typer.echo(f"{instance.workflow_id}\t{instance_id}")


@app.command("analytics")
def analytics(organization: Optional[str] = None) -> None:
    """
    Summarise terminal instances in the configured store.

    Example:
        docflow analytics --organization acme
        # Output: 4 workflow(s): 3 completed, 1 failed, 0 cancelled (75% completion)
    """
    engine = _engine()
    asyncio.run(engine.restore_analytics())
    summary = engine.get_analytics(organization)
    typer.echo(
        f"{summary.total_workflows} workflow(s): {summary.completed_workflows} completed, "
        f"{summary.failed_workflows} failed, {summary.cancelled_workflows} cancelled "
        f"({summary.completion_rate:.0%} completion)"
    )
    if summary.completed_workflows:
        typer.echo(f"Average duration: {summary.average_duration:.0f}s")
    for bottleneck in summary.bottlenecks:
        typer.echo(
            f"- {bottleneck.workflow_id}.{bottleneck.step}: "
            f"{bottleneck.average_delay:.0f}s avg ({bottleneck.impact})"
        )


@escalation_app.command("sweep")
def escalation_sweep(
    interval: Optional[float] = typer.Option(
        None, help="Repeat the sweep every INTERVAL seconds instead of running once"
    ),
    lifespan: Optional[float] = typer.Option(
        None, help="Stop repeating after this many seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Evaluate escalation ladders for all active instances.

    Example:
        docflow escalation sweep
        docflow escalation sweep --interval 300 --lifespan 3600
    """
    engine = _engine()

    async def _run() -> int:
        loop = asyncio.get_running_loop()
        start = loop.time()
        fired = 0
        while True:
            try:
                escalations = await engine.sweep_escalations()
            except WorkflowError as exc:
                typer.secho(f"Sweep failed: {exc}", fg=typer.colors.RED)
                raise typer.Exit(code=1)
            for item in escalations:
                typer.echo(f"{item.instance_id}\t{item.step_id}\tlevel {item.level}\t{item.assignee}")
            fired += len(escalations)
            if interval is None:
                return fired
            if lifespan is not None and loop.time() - start + interval > lifespan:
                return fired
            await asyncio.sleep(interval)

    total = asyncio.run(_run())
    typer.echo(f"{total} escalation(s) fired")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
