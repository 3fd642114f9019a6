"""Main CLI entry point."""

import signal
import sys
from contextlib import contextmanager
from typing import Optional

import click
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn
from rich.table import Table
from rich.panel import Panel
from rich.markup import escape

from converge import __version__
from converge.cli.common import DEFAULT_DECLARATION, console, fail, get_state_manager, load_config
from converge.cli.output import output
from converge.orchestrator.executor import ExecutionResult, Outcome, ProgressCallback, ResourceResult
from converge.orchestrator.orchestrator import ProvisioningOrchestrator
from converge.orchestrator.planner import Operation, Plan
from converge.providers.base import load_registry
from converge.utils.errors import ConvergeError
from converge.utils.logging import setup_logging, get_logger

logger = get_logger(__name__)

OPERATION_STYLES = {
    Operation.CREATE: ("+", "green"),
    Operation.UPDATE: ("~", "yellow"),
    Operation.DELETE: ("-", "red"),
    Operation.NO_OP: ("=", "dim"),
}

OUTCOME_STYLES = {
    Outcome.APPLIED: "green",
    Outcome.FAILED: "red",
    Outcome.BLOCKED: "yellow",
    Outcome.SKIPPED_NOOP: "dim",
    Outcome.CANCELLED: "magenta",
}


@click.group()
@click.version_option(__version__, prog_name="converge")
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.option('--file', '-f', 'declaration_file', default=DEFAULT_DECLARATION, show_default=True,
              help='Declaration file (YAML or JSON)')
@click.option('--state', 'state_path', help='State file path (overrides settings.state_path)')
@click.pass_context
def cli(ctx, log_level, declaration_file, state_path):
    """Converge declared infrastructure with its recorded state."""
    ctx.ensure_object(dict)
    ctx.obj['declaration_file'] = declaration_file
    ctx.obj['state_path'] = state_path
    ctx.obj['log_level'] = log_level

    setup_logging(log_level)


def create_orchestrator(ctx, max_workers: Optional[int] = None) -> ProvisioningOrchestrator:
    """Create provisioning orchestrator with all dependencies."""
    declaration = load_config(ctx)
    try:
        registry = load_registry(declaration.provider)
    except ConvergeError as e:
        fail("Error loading provider:", e)

    return ProvisioningOrchestrator(
        declaration=declaration,
        state_manager=get_state_manager(ctx, declaration),
        registry=registry,
        max_workers=max_workers,
    )


@contextmanager
def cancel_on_interrupt(orchestrator: ProvisioningOrchestrator):
    """Turn the first Ctrl-C into a graceful cancellation."""
    def handler(signum, frame):
        console.print("\n[yellow]Interrupted: finishing in-flight operations...[/yellow]")
        orchestrator.cancel()
        signal.signal(signal.SIGINT, previous)

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


class RichProgressCallback(ProgressCallback):
    """Progress callback that displays updates using Rich."""

    def __init__(self, progress: Progress, task_id):
        self.progress = progress
        self.task_id = task_id
        self.completed = 0

    def on_start(self, total: int):
        self.progress.update(self.task_id, total=total)

    def on_resource_start(self, key: str, operation: Operation):
        self.progress.update(
            self.task_id,
            description=f"[cyan]{operation.value}:[/cyan] {key}"
        )

    def on_resource_complete(self, key: str, result: ResourceResult):
        if result.outcome == Outcome.SKIPPED_NOOP:
            return
        self.completed += 1
        style = OUTCOME_STYLES[result.outcome]
        self.progress.update(
            self.task_id,
            completed=self.completed,
            description=f"[{style}]{result.outcome.value}[/{style}] {key}"
        )

    def on_complete(self, success: bool):
        status = "[green]Complete[/green]" if success else "[red]Finished with errors[/red]"
        self.progress.update(self.task_id, description=status)


def run_with_progress(orchestrator: ProvisioningOrchestrator, label: str, func) -> ExecutionResult:
    with cancel_on_interrupt(orchestrator), Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console
    ) as progress:
        task_id = progress.add_task(f"[cyan]{label}...", total=None)
        return func(RichProgressCallback(progress, task_id))


def print_plan(plan: Plan) -> None:
    table = Table(title="Plan")
    table.add_column("", width=1)
    table.add_column("Resource", style="cyan", no_wrap=True)
    table.add_column("Operation")
    table.add_column("Reason", style="dim")

    for step in plan.steps:
        symbol, style = OPERATION_STYLES[step.operation]
        reason = step.reason
        if step.changed_attributes:
            reason = f"{reason}: {', '.join(step.changed_attributes)}"
        table.add_row(f"[{style}]{symbol}[/{style}]", step.key, f"[{style}]{step.operation.value}[/{style}]", escape(reason))

    console.print(table)
    summary = plan.get_summary()
    console.print(
        f"\n[bold]Plan:[/bold] [green]{summary['create']} to create[/green], "
        f"[yellow]{summary['update']} to update[/yellow], "
        f"[red]{summary['delete']} to delete[/red], {summary['no-op']} unchanged"
    )


def print_result(result: ExecutionResult, title: str) -> None:
    table = Table(title=title)
    table.add_column("Resource", style="cyan", no_wrap=True)
    table.add_column("Operation")
    table.add_column("Outcome")
    table.add_column("Detail", style="dim")

    for key, resource_result in result.results.items():
        style = OUTCOME_STYLES[resource_result.outcome]
        table.add_row(
            key,
            resource_result.operation.value,
            f"[{style}]{resource_result.outcome.value}[/{style}]",
            escape(resource_result.detail()),
        )

    console.print()
    console.print(table)

    summary = result.get_summary()
    body = (
        f"Applied: {summary['applied']}\n"
        f"Unchanged: {summary['skipped-noop']}\n"
        f"Failed: {summary['failed']}\n"
        f"Blocked: {summary['blocked']}\n"
        f"Cancelled: {summary['cancelled']}\n"
        f"Duration: {result.duration:.2f}s"
    )
    if result.is_success():
        console.print(Panel.fit(f"[green]✓ {title} successful[/green]\n\n{body}", border_style="green"))
    else:
        console.print(Panel.fit(f"[red]✗ {title} incomplete[/red]\n\n{body}", border_style="red"))


@cli.command()
@click.option('--refresh', is_flag=True, help='Read live resources to detect drift before diffing')
@click.pass_context
def plan(ctx, refresh):
    """Show what apply would change."""
    orchestrator = create_orchestrator(ctx)
    try:
        result = orchestrator.plan(refresh=refresh)
    except ConvergeError as e:
        fail("Planning failed:", e)

    print_plan(result)


@cli.command()
@click.option('--parallel/--sequential', default=True, help='Run independent resources concurrently')
@click.option('--max-workers', type=click.IntRange(1, 64), help='Maximum concurrent provider calls')
@click.option('--refresh', is_flag=True, help='Read live resources to detect drift before diffing')
@click.pass_context
def apply(ctx, parallel, max_workers, refresh):
    """Create, update and delete resources until they match the declaration."""
    orchestrator = create_orchestrator(ctx, max_workers=max_workers)
    declaration = orchestrator.declaration

    console.print(Panel.fit(
        f"[bold]Applying {declaration.project.name}[/bold]\n"
        f"Environment: {declaration.project.environment}\n"
        f"Provider: {declaration.provider.name} ({declaration.provider.project}/{declaration.provider.region})\n"
        f"Mode: {'parallel' if parallel else 'sequential'}",
        title="Apply",
        border_style="cyan"
    ))

    try:
        result = run_with_progress(
            orchestrator,
            "Applying",
            lambda callback: orchestrator.apply(parallel=parallel, progress_callback=callback, refresh=refresh)
        )
    except ConvergeError as e:
        fail("Apply aborted:", e)

    print_result(result, "Apply")
    sys.exit(result.exit_code())


@cli.command()
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def destroy(ctx, yes):
    """Delete every recorded resource, dependents first."""
    orchestrator = create_orchestrator(ctx)

    try:
        destruction_plan = orchestrator.plan_destruction()
    except ConvergeError as e:
        fail("Planning destruction failed:", e)

    if not destruction_plan.steps:
        console.print("[yellow]No recorded resources to destroy[/yellow]")
        return

    console.print(Panel.fit(
        "[bold red]⚠ WARNING: This will destroy resources[/bold red]\n\n"
        + "\n".join(f"  - {step.key}" for step in destruction_plan.steps),
        title="Destruction Plan",
        border_style="red"
    ))

    if not yes and not click.confirm("Are you sure you want to destroy these resources?", default=False):
        console.print("[yellow]Destruction cancelled[/yellow]")
        return

    try:
        result = run_with_progress(
            orchestrator,
            "Destroying",
            lambda callback: orchestrator.destroy(progress_callback=callback)
        )
    except ConvergeError as e:
        fail("Destroy aborted:", e)

    print_result(result, "Destroy")
    if not result.is_success():
        console.print("\n[yellow]Resources that were not deleted are still recorded in state[/yellow]")
    sys.exit(result.exit_code())


@cli.group()
def state():
    """Inspect and repair the state file."""


@state.command('list')
@click.pass_context
def state_list(ctx):
    """List recorded resources."""
    manager = get_state_manager(ctx)
    try:
        current = manager.load()
    except ConvergeError as e:
        fail("Cannot read state:", e)

    if not current.records:
        console.print("[dim]No resources recorded[/dim]")
        return

    table = Table(title=f"State (serial {current.serial})")
    table.add_column("Resource", style="cyan", no_wrap=True)
    table.add_column("ID", overflow="fold")
    table.add_column("Converged")
    table.add_column("Updated", style="dim")
    for key in sorted(current.records):
        record = current.records[key]
        table.add_row(
            key,
            record.resource_id,
            "[green]yes[/green]" if record.converged else "[yellow]pending[/yellow]",
            record.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@state.command('recover')
@click.pass_context
def state_recover(ctx):
    """Restore the state file from its last good backup."""
    manager = get_state_manager(ctx)
    try:
        recovered = manager.recover()
    except ConvergeError as e:
        fail("Recovery failed:", e)
    console.print(
        f"[green]✓ State recovered[/green] (serial {recovered.serial}, {len(recovered.records)} resources)"
    )


@state.command('reset')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def state_reset(ctx, yes):
    """Move the state file aside and start from empty state."""
    if not yes and not click.confirm(
        "Recorded resources will no longer be tracked. Continue?", default=False
    ):
        console.print("[yellow]Reset cancelled[/yellow]")
        return

    manager = get_state_manager(ctx)
    try:
        manager.reset()
    except ConvergeError as e:
        fail("Reset failed:", e)
    console.print("[green]✓ State reset[/green]")


cli.add_command(output)


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
