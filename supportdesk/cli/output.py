"""
SupportDesk CLI - Rich Output Helpers

Functions:
    print_table       - Print a formatted table
    print_json        - Print formatted JSON
    print_error       - Print a kernel or validation error
    print_success     - Print success message
    print_key_value   - Print aligned key/value pairs
    tenant_state      - Markup for a tenant's active/subscription state
    usage_rows        - Table rows for a usage report
"""

from __future__ import annotations

import json
from typing import Any, Optional

from rich.console import Console
from rich.json import JSON
from rich.table import Table

from supportdesk.multitenancy.tenant import SubscriptionStatus, Tenant

console = Console()
err_console = Console(stderr=True)

# Colour per subscription status; restricted states stand out
STATUS_STYLES = {
    SubscriptionStatus.ACTIVE: "green",
    SubscriptionStatus.TRIALING: "cyan",
    SubscriptionStatus.SUSPENDED: "yellow",
    SubscriptionStatus.EXPIRED: "red",
    SubscriptionStatus.CANCELLED: "red",
}

# Usage at or above this percentage is highlighted
USAGE_WARN_PERCENT = 80


def print_table(
    title: str,
    columns: list[str],
    rows: list[list[Any]],
    styles: Optional[list[Optional[str]]] = None,
) -> None:
    """Print a rich table; cells are stringified and short rows padded."""
    table = Table(title=title)
    for i, col in enumerate(columns):
        table.add_column(col, style=styles[i] if styles and i < len(styles) else None)
    for row in rows:
        cells = [str(v) for v in row][: len(columns)]
        table.add_row(*cells, *[""] * (len(columns) - len(cells)))
    console.print(table)


def print_json(data: dict | list) -> None:
    """Print ``data`` as JSON (non-serialisable values via ``str``)."""
    console.print(JSON(json.dumps(data, default=str)))


def print_error(message: str, code: Optional[str] = None) -> None:
    """Print an error on stderr, with the kernel error code when there is one."""
    err_console.print(f"[bold red]Error:[/bold red] {message}")
    if code:
        err_console.print(f"[dim]{code}[/dim]")


def print_success(message: str, details: Optional[str] = None) -> None:
    console.print(f"[bold green]Success:[/bold green] {message}")
    if details:
        console.print(f"[dim]{details}[/dim]")


def print_key_value(data: dict[str, Any], title: Optional[str] = None) -> None:
    """Print aligned key/value pairs, optionally under a title."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    width = max((len(k) for k in data), default=0)
    for key, value in data.items():
        console.print(f"  [cyan]{key.ljust(width)}[/cyan]  {value}")


def tenant_state(tenant: Tenant) -> str:
    if not tenant.is_active:
        return "[red]inactive[/red]"
    status = tenant.subscription_status
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


def usage_rows(report: dict[str, dict[str, Any]]) -> list[list[str]]:
    """Rows of ``[resource, current, limit, percent]`` for ``PlanAdmission.usage_report``."""
    rows = []
    for resource, row in report.items():
        percent = row["percent"]
        if percent is None:
            shown = "-"
        elif percent >= USAGE_WARN_PERCENT:
            shown = f"[yellow]{percent}[/yellow]"
        else:
            shown = str(percent)
        limit = row["limit"] if row["limit"] is not None else "unlimited"
        rows.append([resource, str(row["current"]), str(limit), shown])
    return rows
