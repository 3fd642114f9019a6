"""Output command for showing derived outputs."""

import json

import click
from rich.markup import escape
from rich.table import Table

from converge.cli.common import console, fail, get_state_manager
from converge.utils.errors import ConvergeError

MASK = "<sensitive>"


@click.command()
@click.argument('name', required=False)
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table',
              help='Output format')
@click.option('--show-sensitive', is_flag=True, help='Print values marked sensitive')
@click.pass_context
def output(ctx, name, output_format, show_sensitive):
    """Show outputs recorded by the last apply."""
    manager = get_state_manager(ctx)
    try:
        outputs = manager.load().outputs
    except ConvergeError as e:
        fail("Cannot read state:", e)

    if name:
        if name not in outputs:
            fail(f"Output '{name}' not found")
        outputs = {name: outputs[name]}

    values = {key: _display_value(entry, show_sensitive) for key, entry in sorted(outputs.items())}

    if output_format == 'json':
        click.echo(json.dumps(values, indent=2, sort_keys=True))
        return

    if name:
        value = values[name]
        click.echo(value if isinstance(value, str) else json.dumps(value))
        return

    if not values:
        console.print("[dim]No outputs found[/dim]")
        return

    _output_table(values)


def _display_value(entry, show_sensitive: bool):
    if isinstance(entry, dict) and "value" in entry:
        if entry.get("sensitive") and not show_sensitive:
            return MASK
        return entry["value"]
    return entry


def _output_table(values: dict):
    table = Table(title="Outputs")
    table.add_column("Name", style="cyan")
    table.add_column("Value", style="green")

    for key, value in values.items():
        table.add_row(key, escape(value if isinstance(value, str) else json.dumps(value)))

    console.print(table)
