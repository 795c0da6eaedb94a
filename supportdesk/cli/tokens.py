"""
SupportDesk CLI - Token Commands

Commands:
    mint    - Sign a token for a subject (support and testing)
    inspect - Verify a token and print its claims
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

import typer

from supportdesk.cli import console, get_kernel, run, token_app
from supportdesk.cli.output import print_error, print_json, print_key_value
from supportdesk.multitenancy.errors import TenantKernelError, TenantNotFound
from supportdesk.multitenancy.identity import CURRENT_TOKEN_VERSION, Identity, Role
from supportdesk.multitenancy.tenant import Tenant


@token_app.command("mint")
def mint_token(
    subject: str = typer.Argument(..., help="Subject (user) id."),
    role: Role = typer.Option(Role.AGENT, "--role", "-r", help="Role claim."),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Tenant id or key."),
    version: int = typer.Option(
        CURRENT_TOKEN_VERSION, "--token-version", help="Token format version (1 = legacy, no tenant claim)."
    ),
    ttl_minutes: Optional[int] = typer.Option(None, "--ttl", help="Lifetime in minutes."),
) -> None:
    """Sign a token for a subject."""
    kernel = get_kernel()

    async def _tenant() -> Tenant | None:
        if tenant is None:
            return None
        found = await kernel.registry.by_id(tenant) or await kernel.registry.by_key(tenant)
        if found is None:
            raise TenantNotFound(details={"tenant": tenant})
        return found

    try:
        resolved = run(_tenant())
        identity = Identity(
            subject_id=subject,
            role=role,
            tenant_id=resolved.id if resolved and role is not Role.MASTER else None,
        )
        token = kernel.tokens.mint(
            identity,
            resolved,
            version=version,
            ttl=timedelta(minutes=ttl_minutes) if ttl_minutes else None,
        )
    except TenantKernelError as e:
        print_error(e.message, code=e.code)
        raise typer.Exit(1)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)
    console.print(token, soft_wrap=True)


@token_app.command("inspect")
def inspect_token(
    token: str = typer.Argument(..., help="Encoded token."),
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json."),
) -> None:
    """Verify a token and print its claims."""
    try:
        claims = get_kernel().tokens.decode(token)
    except TenantKernelError as e:
        print_error(e.message, code=e.code)
        raise typer.Exit(1)

    data = {
        "sub": claims.sub,
        "role": claims.role.value,
        "ver": claims.ver,
        "legacy": claims.is_legacy,
        "tid": claims.tid,
        "tenant_key": claims.tenant_key,
        "issued_at": claims.iat.isoformat() if claims.iat else None,
        "expires_at": claims.exp.isoformat() if claims.exp else None,
    }
    if format == "json":
        print_json(data)
    else:
        print_key_value({k: "-" if v is None else v for k, v in data.items()}, title="Token claims")
