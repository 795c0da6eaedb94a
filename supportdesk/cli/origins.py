"""
SupportDesk CLI - Origin Pattern Commands

Offline helpers for the CORS allow-list syntax; none of these touch the
database.

Commands:
    validate - Check that patterns are well formed
    match    - Show which pattern (if any) admits an origin
    suggest  - Propose a pattern covering an origin
"""

from __future__ import annotations

import typer

from supportdesk.cli import console, origin_app
from supportdesk.cli.output import print_table
from supportdesk.multitenancy.origins import match_origin, suggest_pattern, validate_pattern


@origin_app.command("validate")
def validate(
    patterns: list[str] = typer.Argument(..., help="Patterns to check."),
) -> None:
    """Check that patterns are well formed; exits 1 if any is not."""
    rows = [[p, "valid" if validate_pattern(p) else "INVALID"] for p in patterns]
    print_table("Origin patterns", ["Pattern", "Result"], rows, styles=["cyan", None])
    if any(row[1] == "INVALID" for row in rows):
        raise typer.Exit(1)


@origin_app.command("match")
def match(
    origin: str = typer.Argument(..., help="Browser origin, e.g. https://app.acme.com."),
    patterns: list[str] = typer.Argument(..., help="Allow-list patterns, in order."),
) -> None:
    """Show which pattern admits an origin; exits 1 when none does."""
    matched = match_origin(origin, patterns)
    if matched is None:
        console.print(f"[red]blocked[/red] {origin}")
        raise typer.Exit(1)
    console.print(f"[green]allowed[/green] {origin} by {matched}")


@origin_app.command("suggest")
def suggest(origin: str = typer.Argument(..., help="Origin that was blocked.")) -> None:
    """Propose an allow-list pattern covering an origin."""
    console.print(suggest_pattern(origin))
