"""CLI entry point for the workflow automation engine.

Commands:
- flowengine init: Create config and database
- flowengine validate: Check a workflow definition file
- flowengine load: Store a workflow definition
- flowengine enqueue: Queue an execution for a workflow
- flowengine tick: Run one pass of every polling loop
- flowengine serve: Run the engine until interrupted
- flowengine status: Show executions or one execution's trail
- flowengine notify: Report an external event to a waiting execution
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
import pydantic
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from flowengine import __version__
from flowengine.core.config import EngineConfig, load_engine_config, write_default_config
from flowengine.core.engine import AutomationEngine, EngineError
from flowengine.core.graph_schema import WorkflowDefinition
from flowengine.core.models import ExecutionStatus, TriggerContext
from flowengine.core.state import Database

console = Console()

STATUS_STYLES = {
    ExecutionStatus.PENDING: "white",
    ExecutionStatus.RUNNING: "blue",
    ExecutionStatus.WAITING: "yellow",
    ExecutionStatus.COMPLETED: "green",
    ExecutionStatus.FAILED: "red",
    ExecutionStatus.STOPPED: "magenta",
}


def _config(ctx: click.Context) -> EngineConfig:
    return ctx.obj["config"]


def _open_engine(ctx: click.Context) -> AutomationEngine:
    config = _config(ctx)
    return AutomationEngine(Database(config.db_path), config=config)


def _load_definition(workflow_file: str) -> WorkflowDefinition:
    """Read a YAML or JSON workflow file. Exits with a readable error on bad input."""
    try:
        with open(workflow_file) as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            console.print(
                f"[red]Error: Invalid content in '{workflow_file}'. "
                f"Expected a mapping, got {type(data).__name__}.[/red]"
            )
            sys.exit(1)
        return WorkflowDefinition.model_validate(data)
    except yaml.YAMLError as e:
        console.print(f"[red]Error parsing file '{workflow_file}':[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating workflow schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {loc}: {escape(err['msg'])}")
        sys.exit(1)


def _print_issues(issues: list[str]) -> None:
    for issue in issues:
        console.print(f"  [yellow]- {escape(issue)}[/yellow]")


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Config file (default: $FLOWENGINE_CONFIG or .flowengine/config.yaml)",
)
@click.pass_context
def main(ctx: click.Context, config_path: str | None) -> None:
    """Flowengine - CRM workflow automation runtime."""
    ctx.ensure_object(dict)
    try:
        ctx.obj["config_path"] = config_path
        ctx.obj["config"] = load_engine_config(config_path)
    except (yaml.YAMLError, pydantic.ValidationError) as e:
        console.print(f"[red]Invalid configuration:[/red] {escape(str(e))}")
        sys.exit(1)


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Create the default config file and initialise the database."""
    config_path = write_default_config(ctx.obj["config_path"] or ".flowengine/config.yaml")
    config = _config(ctx)
    Database(config.db_path)
    console.print(
        Panel(f"Config: {config_path}\nDatabase: {config.db_path}", title="Flowengine initialised")
    )


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
def validate(workflow_file: str) -> None:
    """Validate a workflow definition (YAML or JSON)."""
    workflow = _load_definition(workflow_file)
    issues = workflow.validate_graph()
    if issues:
        console.print(f"[yellow]{len(issues)} issue(s) in '{workflow.id}':[/yellow]")
        _print_issues(issues)
        sys.exit(1)

    console.print("[green]Workflow validation passed[/green]")
    console.print(f"  Nodes: {len(workflow.nodes)}")
    console.print(f"  Edges: {len(workflow.edges)}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.pass_context
def load(ctx: click.Context, workflow_file: str) -> None:
    """Store a workflow definition so executions can be enqueued for it."""
    workflow = _load_definition(workflow_file)
    issues = workflow.validate_graph()
    if issues:
        console.print("[yellow]Stored with warnings:[/yellow]")
        _print_issues(issues)

    Database(_config(ctx).db_path).save_workflow(workflow)
    console.print(f"[green]Loaded workflow '{workflow.id}'[/green] ({len(workflow.nodes)} nodes)")


@main.command()
@click.argument("workflow_id")
@click.option("--lead-id", help="Lead the execution runs against")
@click.option("--contact-id", help="Contact the execution runs against")
@click.option("--opportunity-id", help="Opportunity the execution runs against")
@click.option("--email", help="Email address for email actions")
@click.option("--phone", help="Phone number for SMS actions")
@click.option("--payload", default="{}", help="Trigger payload as a JSON object")
@click.pass_context
def enqueue(
    ctx: click.Context,
    workflow_id: str,
    lead_id: str | None,
    contact_id: str | None,
    opportunity_id: str | None,
    email: str | None,
    phone: str | None,
    payload: str,
) -> None:
    """Queue a pending execution of WORKFLOW_ID."""
    try:
        payload_data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--payload") from e
    if not isinstance(payload_data, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--payload")

    trigger = TriggerContext(
        lead_id=lead_id,
        contact_id=contact_id,
        opportunity_id=opportunity_id,
        email_address=email,
        phone_number=phone,
        payload=payload_data,
    )
    try:
        execution_id = _open_engine(ctx).enqueue_execution(workflow_id, trigger)
    except EngineError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(f"[blue]Enqueued execution: {execution_id}[/blue]")


@main.command()
@click.pass_context
def tick(ctx: click.Context) -> None:
    """Run one pass of every polling loop and report what was processed."""
    engine = _open_engine(ctx)
    counts = asyncio.run(engine.tick())

    table = Table(title="Tick")
    table.add_column("Loop", style="cyan")
    table.add_column("Processed", justify="right")
    for loop_name, count in counts.items():
        table.add_row(loop_name, str(count))
    console.print(table)


@main.command()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    help="Logging level",
)
@click.pass_context
def serve(ctx: click.Context, log_level: str) -> None:
    """Run the engine's polling loops until interrupted."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )
    engine = _open_engine(ctx)
    config = _config(ctx)
    console.print(
        Panel(
            f"Database: {config.db_path}\n"
            f"Intervals: pending {config.pending_interval}s, delays {config.delay_interval}s, "
            f"goals {config.goal_interval}s, schedules {config.schedule_interval}s",
            title="Flowengine",
        )
    )
    try:
        asyncio.run(engine.serve())
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/yellow]")


@main.command()
@click.option("--workflow-id", "-w", help="Filter by workflow ID")
@click.option("--execution-id", "-e", help="Show specific execution")
@click.option("--limit", type=int, default=20, help="Maximum executions to list")
@click.pass_context
def status(
    ctx: click.Context, workflow_id: str | None, execution_id: str | None, limit: int
) -> None:
    """Show recent executions, or one execution with its action trail."""
    db_path = Path(_config(ctx).db_path)
    if not db_path.exists():
        console.print("[yellow]No flowengine database found. Run 'flowengine init' first.[/yellow]")
        return
    db = Database(db_path)

    if execution_id:
        execution = db.get_execution(execution_id)
        if not execution:
            console.print(f"[red]Error:[/red] Execution '{execution_id}' not found")
            sys.exit(1)

        style = STATUS_STYLES[execution.status]
        lines = [
            f"Workflow: {execution.workflow_id}",
            f"Status: [{style}]{execution.status.value}[/{style}]",
            f"Current node: {execution.current_node_id or '-'}",
            f"Executed: {' -> '.join(execution.executed_node_ids) or '-'}",
        ]
        if execution.error_message:
            lines.append(f"Error: [red]{escape(execution.error_message)}[/red]")
        console.print(Panel("\n".join(lines), title=f"Execution {execution.id}"))

        actions = Table(title="Actions")
        actions.add_column("Node", style="cyan")
        actions.add_column("Type")
        actions.add_column("Status")
        actions.add_column("Error", style="red")
        for record in db.get_action_records(execution.id):
            actions.add_row(
                record.node_id, record.action_type, record.status.value, record.error_message or ""
            )
        console.print(actions)

        waiting = [s for s in db.get_suspensions(execution.id) if s.status.value == "waiting"]
        for suspension in waiting:
            due = suspension.resume_at or suspension.timeout_at
            console.print(
                f"[yellow]Waiting at '{suspension.node_id}' ({suspension.kind.value}) "
                f"until {due.isoformat() if due else '?'}[/yellow]"
            )
        return

    executions = db.list_executions(workflow_id=workflow_id, limit=limit)
    table = Table(title="Executions")
    table.add_column("ID", style="cyan")
    table.add_column("Workflow")
    table.add_column("Status")
    table.add_column("Current node")
    table.add_column("Created")
    for execution in executions:
        style = STATUS_STYLES[execution.status]
        table.add_row(
            execution.id,
            execution.workflow_id,
            f"[{style}]{execution.status.value}[/{style}]",
            execution.current_node_id or "",
            execution.created_at.isoformat(timespec="seconds") if execution.created_at else "",
        )
    console.print(table)


@main.command()
@click.argument("execution_id")
@click.argument("event_type")
@click.pass_context
def notify(ctx: click.Context, execution_id: str, event_type: str) -> None:
    """Tell a waiting execution that EVENT_TYPE happened."""
    if _open_engine(ctx).notify_event(execution_id, event_type):
        console.print(f"[green]Event '{event_type}' delivered; resumes on the next delay pass[/green]")
    else:
        console.print(f"[yellow]No waiting execution matched '{event_type}'[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    main()
