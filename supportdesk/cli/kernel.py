"""
SupportDesk CLI - Kernel Commands

Commands:
    policy   - Show the isolation policy built from settings
    stats    - Show isolation counters
    classify - Show how a request path is classified
"""

from __future__ import annotations

import typer

from supportdesk.cli import console, get_kernel, kernel_app
from supportdesk.cli.output import print_json, print_key_value


@kernel_app.command("policy")
def show_policy(
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json."),
) -> None:
    """Show the isolation policy built from settings (secrets masked)."""
    policy = get_kernel().policy
    data = {
        "environment": policy.environment,
        "allow_legacy_tokens": policy.allow_legacy_tokens,
        "use_default_tenant_fallback": policy.use_default_tenant_fallback,
        "default_tenant_key": policy.default_tenant_key,
        "allow_query_tenant": policy.allow_query_tenant,
        "subscription_suspended_policy": policy.subscription_suspended_policy,
        "tenant_cache_ttl_seconds": policy.tenant_cache_ttl_seconds,
        "realtime_buffer_size": policy.realtime_buffer_size,
        "public_routes": list(policy.public_routes),
        "identity_only_routes": list(policy.identity_only_routes),
        "master_routes": list(policy.master_routes),
        "fallback_routes": list(policy.fallback_routes),
        "jwt_algorithm": policy.jwt_algorithm,
        "jwt_secret": "********",
    }
    if format == "json":
        print_json(data)
        return
    print_key_value(
        {k: ", ".join(v) if isinstance(v, list) else v for k, v in data.items()},
        title="Isolation policy",
    )


@kernel_app.command("classify")
def classify(path: str = typer.Argument(..., help="Request path, e.g. /api/conversations.")) -> None:
    """Show how a request path is classified and whether fallback applies."""
    policy = get_kernel().policy
    route_class = policy.classify(path)
    console.print(f"{path}: {route_class.value}")
    if policy.fallback_allowed(path):
        console.print("[dim]default-tenant fallback applies[/dim]")


@kernel_app.command("stats")
def show_stats(
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json."),
) -> None:
    """Show isolation counters, cache and realtime statistics."""
    health = get_kernel().health()
    if format == "json":
        print_json(health)
        return
    metrics = health["metrics"]
    print_key_value(
        {
            "legacy token acceptances": metrics["legacy_token_acceptances"],
            "bypass entries": metrics["bypass_entries"],
            "cross-tenant denials": metrics["cross_tenant_denials"],
            "dropped realtime frames": metrics["dropped_realtime_frames"],
            "tenant fields stripped": metrics["tenant_fields_stripped"],
            "cache entries": health["cache"]["entries"],
            "realtime connections": health["realtime"]["connections"],
        },
        title="Kernel statistics",
    )
