"""Helpers shared by CLI commands."""

import sys
from typing import Optional

from rich.console import Console

from converge.config.parser import ConfigValidationError, Declaration, load_declaration
from converge.state.manager import StateManager
from converge.utils.errors import ConvergeError

console = Console()

DEFAULT_DECLARATION = "converge.yaml"


def fail(message: str, error: Optional[Exception] = None) -> None:
    """Print an error and exit non-zero."""
    console.print(f"[red]{message}[/red]")
    if isinstance(error, ConfigValidationError):
        console.print(str(error), markup=False)
    elif isinstance(error, ConvergeError):
        console.print(error.to_user_message(), markup=False)
    elif error is not None:
        console.print(str(error), markup=False)
    sys.exit(1)


def load_config(ctx) -> Declaration:
    """Load and validate the declaration file."""
    path = ctx.obj['declaration_file']
    try:
        return load_declaration(path)
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Declaration file not found: {path}")
        console.print(f"\nCreate [cyan]{DEFAULT_DECLARATION}[/cyan] or pass [cyan]--file[/cyan].")
        sys.exit(1)
    except ConvergeError as e:
        fail("Declaration validation failed:", e)


def get_state_manager(ctx, declaration: Optional[Declaration] = None) -> StateManager:
    """State manager for ``--state`` or the declaration's ``settings.state_path``."""
    path = ctx.obj.get('state_path')
    if not path:
        if declaration is None:
            declaration = load_config(ctx)
        path = declaration.settings.state_path
    return StateManager(path)
