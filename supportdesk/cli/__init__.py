"""
SupportDesk - Command Line Interface

Operator tooling for the tenant isolation kernel. Built with Typer for
the command tree and Rich for output.

Usage:
    $ supportdesk --help
    $ supportdesk serve --port 8000
    $ supportdesk tenant list
    $ supportdesk tenant add-origin acme "https://*.acme.com"
    $ supportdesk token mint user-1 --role agent --tenant acme
    $ supportdesk origin match https://app.acme.com "*.acme.com"
    $ supportdesk kernel classify /api/master/tenants

Sub-command Groups:
    tenant  - Inspect tenants and manage their CORS allow-lists
    token   - Mint and inspect access tokens
    origin  - Validate and test origin patterns offline
    kernel  - Show the active isolation policy

For detailed help on any command:
    $ supportdesk <group> <command> --help
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Coroutine, TypeVar

import typer
from rich.console import Console

from supportdesk import __version__

if TYPE_CHECKING:
    from supportdesk.multitenancy.kernel import TenantKernel

T = TypeVar("T")

# Create main console for output
console = Console()
err_console = Console(stderr=True)

# Create main application
app = typer.Typer(
    name="supportdesk",
    help="SupportDesk - multi-tenant support chat backend",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

# Create sub-command groups
tenant_app = typer.Typer(
    name="tenant",
    help="Inspect tenants and manage their CORS allow-lists",
    no_args_is_help=True,
)

token_app = typer.Typer(
    name="token",
    help="Mint and inspect access tokens",
    no_args_is_help=True,
)

origin_app = typer.Typer(
    name="origin",
    help="Validate and test origin patterns offline",
    no_args_is_help=True,
)

kernel_app = typer.Typer(
    name="kernel",
    help="Show the active isolation policy",
    no_args_is_help=True,
)

# Register sub-commands
app.add_typer(tenant_app, name="tenant")
app.add_typer(token_app, name="token")
app.add_typer(origin_app, name="origin")
app.add_typer(kernel_app, name="kernel")


# ---------------------------------------------------------------------------
# Kernel access
# ---------------------------------------------------------------------------

_kernel: TenantKernel | None = None


def use_kernel(kernel: TenantKernel | None) -> None:
    """Point the CLI at a specific kernel (None restores the SQL default)."""
    global _kernel
    _kernel = kernel


def get_kernel() -> TenantKernel:
    """The kernel commands operate on, built from settings on first use."""
    global _kernel
    if _kernel is None:
        from supportdesk.config.settings import settings
        from supportdesk.multitenancy.sql import sql_kernel

        _kernel = sql_kernel(settings)
    return _kernel


def run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Root callbacks
# ---------------------------------------------------------------------------


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"SupportDesk version {__version__}")
        raise typer.Exit()


def verbose_callback(value: bool) -> None:
    """Set verbose mode."""
    if value:
        logging.basicConfig(level=logging.DEBUG)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        callback=verbose_callback,
        help="Enable verbose output.",
    ),
) -> None:
    """
    SupportDesk - multi-tenant support chat backend

    Use --help on any subcommand for detailed information.
    """


@app.command()
def serve(
    host: str = typer.Option(
        "127.0.0.1",
        "--host",
        "-h",
        help="Host to bind to.",
    ),
    port: int = typer.Option(
        8000,
        "--port",
        "-p",
        help="Port to bind to.",
    ),
    reload: bool = typer.Option(
        False,
        "--reload",
        "-r",
        help="Enable auto-reload for development.",
    ),
    workers: int = typer.Option(
        1,
        "--workers",
        "-w",
        help="Number of worker processes.",
    ),
) -> None:
    """
    Start the SupportDesk API server.

    Serves ``supportdesk.main:app`` with uvicorn. Reload and multiple
    workers are mutually exclusive.
    """
    import uvicorn
    from rich.panel import Panel

    if reload and workers > 1:
        err_console.print("[bold red]Error:[/bold red] --reload cannot be combined with --workers")
        raise typer.Exit(code=1)

    console.print(Panel.fit(
        f"Starting SupportDesk on [cyan]http://{host}:{port}[/cyan]",
        title="Server",
    ))
    if reload:
        console.print("[yellow]Auto-reload enabled (development mode)[/yellow]")

    uvicorn.run("supportdesk.main:app", host=host, port=port, reload=reload, workers=workers)


def _register_subcommands() -> None:
    from supportdesk.cli import kernel  # noqa: F401
    from supportdesk.cli import origins  # noqa: F401
    from supportdesk.cli import tenants  # noqa: F401
    from supportdesk.cli import tokens  # noqa: F401


_register_subcommands()

# Expose the apps for use in submodules
__all__ = [
    "app",
    "tenant_app",
    "token_app",
    "origin_app",
    "kernel_app",
    "console",
    "err_console",
    "get_kernel",
    "use_kernel",
    "run",
    "__version__",
]


def cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli()
