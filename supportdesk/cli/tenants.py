"""
SupportDesk CLI - Tenant Commands

Commands:
    list          - List every tenant
    show          - Show one tenant with its usage report
    create        - Create a tenant with plan defaults
    origins       - Show a tenant's effective CORS allow-list
    add-origin    - Allow an origin pattern for a tenant
    remove-origin - Remove an origin pattern from a tenant
    reset-usage   - Zero a tenant's monthly usage counters
"""

from __future__ import annotations

from typing import NoReturn, Optional

import typer

from supportdesk.cli import console, get_kernel, run, tenant_app
from supportdesk.cli.output import (
    print_error,
    print_json,
    print_key_value,
    print_success,
    print_table,
    tenant_state,
    usage_rows,
)
from supportdesk.multitenancy.errors import TenantKernelError, TenantNotFound
from supportdesk.multitenancy.tenant import Plan, Tenant


async def _lookup(ref: str) -> Tenant:
    """Find a tenant by id, key or legacy slug."""
    kernel = get_kernel()
    tenant = await kernel.registry.by_id(ref) or await kernel.registry.by_key(ref)
    if tenant is None:
        raise TenantNotFound(details={"tenant": ref})
    return tenant


def _fail(error: Exception) -> NoReturn:
    if isinstance(error, TenantKernelError):
        print_error(error.message, code=error.code)
    else:
        print_error(str(error))
    raise typer.Exit(1)


@tenant_app.command("list")
def list_tenants(
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json."),
) -> None:
    """List every tenant."""
    tenants = run(get_kernel().registry.all())
    if format == "json":
        print_json([t.to_dict() for t in tenants])
        return
    print_table(
        "Tenants",
        ["ID", "Key", "Name", "Plan", "State"],
        [[t.id, t.key, t.name, t.plan.value, tenant_state(t)] for t in tenants],
        styles=["dim", "cyan", None, None, None],
    )


@tenant_app.command("show")
def show_tenant(
    ref: str = typer.Argument(..., help="Tenant id or key."),
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json."),
) -> None:
    """Show one tenant with its usage report."""
    kernel = get_kernel()
    try:
        tenant = run(_lookup(ref))
    except TenantKernelError as e:
        _fail(e)
    report = kernel.admission.usage_report(tenant)
    if format == "json":
        print_json({**tenant.to_dict(), "usage_report": report})
        return
    print_key_value(
        {
            "id": tenant.id,
            "key": tenant.key,
            "name": tenant.name,
            "plan": tenant.plan.value,
            "state": tenant_state(tenant),
            "custom domain": tenant.custom_domain or "-",
            "modules": ", ".join(sorted(tenant.enabled_modules)) or "-",
        },
        title=f"Tenant {tenant.key}",
    )
    print_table(
        "Usage",
        ["Resource", "Current", "Limit", "%"],
        usage_rows(report),
    )


@tenant_app.command("create")
def create_tenant(
    key: str = typer.Argument(..., help="URL-safe tenant key."),
    name: str = typer.Argument(..., help="Company name."),
    plan: Plan = typer.Option(Plan.TRIAL, "--plan", "-p", help="Subscription plan."),
    domain: Optional[str] = typer.Option(None, "--domain", "-d", help="Custom domain."),
) -> None:
    """Create a tenant with plan defaults."""
    try:
        tenant = Tenant.create(None, key=key, name=name, plan=plan, custom_domain=domain)
        saved = run(get_kernel().registry.save(tenant))
    except ValueError as e:
        _fail(e)
    print_success(f"Created tenant {saved.key}", details=f"id {saved.id}")


@tenant_app.command("origins")
def show_origins(ref: str = typer.Argument(..., help="Tenant id or key.")) -> None:
    """Show a tenant's effective CORS allow-list."""

    async def _origins() -> list[str]:
        tenant = await _lookup(ref)
        return await get_kernel().origins.allowed_origins(tenant.id)

    try:
        origins = run(_origins())
    except TenantKernelError as e:
        _fail(e)
    if not origins:
        console.print("[dim]No origins allowed.[/dim]")
        return
    for pattern in origins:
        console.print(pattern)


@tenant_app.command("add-origin")
def add_origin(
    ref: str = typer.Argument(..., help="Tenant id or key."),
    pattern: str = typer.Argument(..., help="Origin, *.domain, http://host:* or /regex/."),
) -> None:
    """Allow an origin pattern for a tenant."""

    async def _add() -> list[str]:
        tenant = await _lookup(ref)
        return await get_kernel().origins.add_allowed(tenant.id, pattern)

    try:
        origins = run(_add())
    except (TenantKernelError, ValueError) as e:
        _fail(e)
    print_success(f"Allowed {pattern}", details=f"{len(origins)} pattern(s) configured")


@tenant_app.command("remove-origin")
def remove_origin(
    ref: str = typer.Argument(..., help="Tenant id or key."),
    pattern: str = typer.Argument(..., help="Pattern to remove."),
) -> None:
    """Remove an origin pattern from a tenant."""

    async def _remove() -> list[str]:
        tenant = await _lookup(ref)
        return await get_kernel().origins.remove_allowed(tenant.id, pattern)

    try:
        origins = run(_remove())
    except TenantKernelError as e:
        _fail(e)
    print_success(f"Removed {pattern}", details=f"{len(origins)} pattern(s) configured")


@tenant_app.command("reset-usage")
def reset_usage(ref: str = typer.Argument(..., help="Tenant id or key.")) -> None:
    """Zero a tenant's monthly usage counters."""

    async def _reset() -> Tenant:
        tenant = await _lookup(ref)
        return await get_kernel().admission.reset_monthly(tenant.id)

    try:
        tenant = run(_reset())
    except TenantKernelError as e:
        _fail(e)
    print_success(f"Reset monthly usage for {tenant.key}")
