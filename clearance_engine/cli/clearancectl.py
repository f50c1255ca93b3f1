#!/usr/bin/env python3
"""
Clearance Control CLI - Command Line Interface for the Clearance Engine.

Provides commands for opening clearance requests, resolving steps, signing
bookends, viewing progress and activity, and archiving completed requests.
"""

import logging
import sys
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import load_config
from ..errors import ClearanceError
from ..models import ClearancePurpose, RequestStatus, SignatureTag, StepAnnotations, StepStatus
from ..workflows import ClearanceWorkflow

# Setup logging
logging.basicConfig(level=logging.WARNING, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Rich console for pretty output
console = Console()

STATUS_STYLES = {
    StepStatus.PENDING: "dim",
    StepStatus.AVAILABLE: "yellow",
    StepStatus.CLEARED: "green",
    StepStatus.REJECTED: "red",
}


class ClearanceController:
    """Main controller for Clearance Engine operations."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize the clearance controller."""
        self.config = load_config(config_path)
        self.workflow = ClearanceWorkflow(self.config)


def fail(error: Exception):
    """Print a refused action and exit non-zero."""
    if isinstance(error, ClearanceError):
        console.print(f"[red]✗ {error.code}: {error.message}[/red]")
    else:
        console.print(f"[red]✗ {error}[/red]")
    sys.exit(1)


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True), help='Path to configuration file (JSON or YAML)')
@click.option('--verbose', '-v', is_flag=True, help='Show engine log output')
@click.pass_context
def cli(ctx, config, verbose):
    """Clearance Engine Control CLI - Staff Clearance Workflows"""
    if verbose:
        logging.getLogger().setLevel(logging.INFO)
    ctx.ensure_object(dict)
    ctx.obj['controller'] = ClearanceController(config)


@cli.command()
@click.pass_context
def workflow(ctx):
    """Show the step catalog."""
    definition = ctx.obj['controller'].workflow.definition

    table = Table(title=f"Clearance Workflow ({len(definition)} steps)")
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Stage", style="green")
    table.add_column("Step", style="yellow")
    table.add_column("Roles", style="magenta")
    table.add_column("Depends On", style="blue")
    table.add_column("Signature", style="red")

    for template in definition.templates:
        depends = ", ".join(str(o) for o in template.depends_on) or "-"
        cluster = definition.cluster_for(template.order)
        if len(cluster) > 1:
            depends += f" (with {', '.join(str(o) for o in cluster if o != template.order)})"
        table.add_row(
            str(template.order),
            definition.stage(template.stage).name,
            template.name,
            ", ".join(template.allowed_roles),
            depends,
            template.signature_tag.value if template.signature_tag else "",
        )

    console.print(table)
    console.print(f"Archive role: [bold]{definition.archive_role}[/bold]")


@cli.command()
@click.argument('staff_id')
@click.option('--purpose', type=click.Choice([p.value for p in ClearancePurpose]), required=True)
@click.option('--initiator', help='User ID of the initiator')
@click.pass_context
def create(ctx, staff_id, purpose, initiator):
    """Open a clearance request for a staff member."""
    engine = ctx.obj['controller'].workflow

    try:
        request_id = engine.create_request(
            staff_id, purpose, {"user_id": initiator} if initiator else None
        )
        request = engine.get_request(request_id)
    except (ClearanceError, ValueError) as e:
        fail(e)

    console.print(f"[green]✓ Created clearance request {request.reference_code}[/green]")
    console.print(f"Request ID: {request.id}")


@cli.command()
@click.argument('step_id')
@click.option('--role', required=True, help='Role you act in')
@click.option('--user', 'user_id', required=True, help='Your user ID')
@click.option('--outcome', type=click.Choice([StepStatus.CLEARED.value, StepStatus.REJECTED.value]), default='cleared')
@click.option('--comment', help='Comment to record')
@click.option('--signature', help='Signature payload')
@click.option('--notes', help='Notes to record')
@click.option('--signature-type', type=click.Choice([t.value for t in SignatureTag]), help='Bookend signature type')
@click.pass_context
def resolve(ctx, step_id, role, user_id, outcome, comment, signature, notes, signature_type):
    """Clear or reject a step."""
    engine = ctx.obj['controller'].workflow

    try:
        result = engine.resolve_step(
            step_id,
            role,
            user_id,
            outcome,
            annotations=StepAnnotations(comment=comment, signature=signature, notes=notes),
            signature_type=signature_type,
        )
    except (ClearanceError, ValueError) as e:
        fail(e)

    display_resolution(result)


@cli.command()
@click.argument('request_id')
@click.argument('signature_type', type=click.Choice([t.value for t in SignatureTag]))
@click.option('--role', required=True, help='Role you act in')
@click.option('--user', 'user_id', required=True, help='Your user ID')
@click.option('--outcome', type=click.Choice([StepStatus.CLEARED.value, StepStatus.REJECTED.value]), default='cleared')
@click.option('--comment', help='Comment to record')
@click.option('--signature', help='Signature payload')
@click.pass_context
def sign(ctx, request_id, signature_type, role, user_id, outcome, comment, signature):
    """Record the initial or final top-authority signature."""
    engine = ctx.obj['controller'].workflow

    try:
        result = engine.sign_bookend(
            request_id,
            signature_type,
            role,
            user_id,
            outcome=outcome,
            annotations=StepAnnotations(comment=comment, signature=signature),
        )
    except (ClearanceError, ValueError) as e:
        fail(e)

    display_resolution(result)


@cli.command()
@click.argument('request_id')
@click.pass_context
def status(ctx, request_id):
    """Show the progress of a clearance request."""
    engine = ctx.obj['controller'].workflow

    try:
        request = engine.get_request(request_id)
        summary = engine.get_status(request_id)
    except ClearanceError as e:
        fail(e)

    progress = summary.overall_progress
    console.print(Panel.fit(
        f"[bold blue]{summary.reference_code}[/bold blue]  {request.staff_id} ({request.purpose.value})\n"
        f"Status: {summary.status.value}  Stage {summary.current_stage}  "
        f"{progress.completed_steps}/{progress.total_steps} cleared ({progress.completion_percentage}%)"
    ))

    if summary.is_blocked and request.rejection_reason:
        console.print(f"[red]Rejected: {request.rejection_reason}[/red]")

    table = Table()
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Stage", style="green")
    table.add_column("Step", style="yellow")
    table.add_column("Status")
    table.add_column("Acted By", style="blue")
    table.add_column("Step ID", style="dim")

    for stage in summary.stages_summary:
        for step in stage.steps:
            style = STATUS_STYLES[step.status]
            table.add_row(
                str(step.order),
                stage.name,
                step.name,
                f"[{style}]{step.status.value}[/{style}]",
                step.acted_by or "",
                step.id,
            )

    console.print(table)


@cli.command(name='list')
@click.option('--status', 'status_filter', type=click.Choice([s.value for s in RequestStatus]), help='Filter by status')
@click.option('--staff-id', help='Filter by staff member')
@click.option('--limit', default=50, help='Maximum number of requests to show')
@click.pass_context
def list_requests(ctx, status_filter, staff_id, limit):
    """List clearance requests."""
    engine = ctx.obj['controller'].workflow

    requests = engine.list_requests(status=status_filter, staff_id=staff_id)[:limit]
    if not requests:
        console.print("[yellow]No clearance requests found[/yellow]")
        return

    table = Table(title=f"Clearance Requests ({len(requests)})")
    table.add_column("Reference", style="cyan")
    table.add_column("Staff ID", style="green")
    table.add_column("Purpose", style="yellow")
    table.add_column("Status", style="magenta")
    table.add_column("Initiated", style="blue")
    table.add_column("Request ID", style="dim")

    for request in requests:
        table.add_row(
            request.reference_code,
            request.staff_id,
            request.purpose.value,
            request.status.value,
            request.initiated_at.strftime("%Y-%m-%d %H:%M"),
            request.id,
        )

    console.print(table)


@cli.command()
@click.argument('request_id')
@click.option('--role', required=True, help='Role you act in')
@click.option('--user', 'user_id', required=True, help='Your user ID')
@click.option('--signature', help='Archive signature payload')
@click.pass_context
def archive(ctx, request_id, role, user_id, signature):
    """Archive a completed clearance request."""
    engine = ctx.obj['controller'].workflow

    try:
        request = engine.archive_request(request_id, role, user_id, signature)
    except ClearanceError as e:
        fail(e)

    console.print(f"[green]✓ Archived {request.reference_code}[/green]")


@cli.command()
@click.argument('role')
@click.pass_context
def inbox(ctx, role):
    """Show steps a role can act on now."""
    engine = ctx.obj['controller'].workflow

    steps = engine.get_available_steps_for_role(role)
    if not steps:
        console.print(f"[yellow]Nothing waiting for {role}[/yellow]")
        return

    table = Table(title=f"Inbox for {role} ({len(steps)})")
    table.add_column("Reference", style="cyan")
    table.add_column("Staff ID", style="green")
    table.add_column("#", justify="right")
    table.add_column("Step", style="yellow")
    table.add_column("Step ID", style="dim")

    for step in steps:
        table.add_row(step.reference_code, step.staff_id, str(step.order), step.name, step.id)

    console.print(table)


@cli.command()
@click.argument('request_id')
@click.pass_context
def activity(ctx, request_id):
    """Show the activity trail of a request."""
    engine = ctx.obj['controller'].workflow

    try:
        records = engine.get_activity_trail(request_id)
    except ClearanceError as e:
        fail(e)

    if not records:
        console.print(f"[yellow]No activity recorded for {request_id}[/yellow]")
        return

    table = Table(title=f"Activity for {records[0].reference_code or request_id}")
    table.add_column("Timestamp", style="cyan")
    table.add_column("Action", style="green")
    table.add_column("User", style="yellow")
    table.add_column("Role", style="magenta")
    table.add_column("Description", style="blue")

    for record in records:
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.action,
            record.user_id or "",
            record.role or "",
            record.description,
        )

    console.print(table)


@cli.command()
@click.pass_context
def stats(ctx):
    """Show request statistics."""
    summary = ctx.obj['controller'].workflow.get_requests_summary()

    console.print("[bold blue]Clearance Statistics[/bold blue]")
    console.print(f"Total Requests: {summary['total_requests']}")
    console.print(f"Total Steps: {summary['total_steps']}")

    for title, key in (("Requests by Status", "requests_by_status"), ("Requests by Purpose", "requests_by_purpose")):
        if summary[key]:
            console.print(f"\n{title}:")
            for name, count in summary[key].items():
                console.print(f"  {name}: {count}")


@cli.command()
@click.option('--port', default=8000, help='Port to run the API server on')
@click.option('--host', default='127.0.0.1', help='Host to bind the API server to')
def serve(port, host):
    """Start the Clearance Engine API server."""
    from ..api.server import start_server

    console.print(f"[green]Starting Clearance Engine API server on {host}:{port}[/green]")
    console.print("[blue]Press Ctrl+C to stop[/blue]")

    try:
        start_server(host=host, port=port, reload=False)
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped[/yellow]")


def display_resolution(result):
    """Display the outcome of a step resolution."""
    step = result.updated_instance
    icon = "✓" if step.status == StepStatus.CLEARED else "✗"
    color = "green" if step.status == StepStatus.CLEARED else "red"
    console.print(f"[{color}]{icon} Step {step.template_order} ({step.name}) {step.status.value}[/{color}]")
    console.print(f"Request status: {result.request_status.value}")

    if result.changed_instances:
        table = Table(title="Now Available")
        table.add_column("#", style="cyan", justify="right")
        table.add_column("Step", style="yellow")
        table.add_column("Roles", style="magenta")
        table.add_column("Step ID", style="dim")
        for changed in result.changed_instances:
            table.add_row(str(changed.template_order), changed.name, ", ".join(changed.allowed_roles), changed.id)
        console.print(table)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
