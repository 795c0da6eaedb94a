"""Per-tenant CORS allow-list management (tenant admins)."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from supportdesk.api.deps import current_tenant, get_kernel, require_roles
from supportdesk.multitenancy.identity import Identity, Role
from supportdesk.multitenancy.kernel import TenantKernel
from supportdesk.multitenancy.tenant import Tenant

logger = logging.getLogger("supportdesk.api")

router = APIRouter(prefix="/api/tenant/origins", tags=["origins"])

AUDIT_LOGS = "audit_logs"


class OriginPayload(BaseModel):
    origin: str = Field(min_length=1, max_length=512)


class OriginListPayload(BaseModel):
    origins: list[str] = Field(default_factory=list, max_length=200)


async def _audit(kernel: TenantKernel, identity: Identity, action: str, details: dict) -> None:
    await kernel.gateway.create(
        AUDIT_LOGS, {"action": action, "actor": identity.subject_id, "details": details}
    )


@router.get("")
async def list_origins(
    tenant: Tenant = Depends(current_tenant),
    kernel: TenantKernel = Depends(get_kernel),
    _: Identity = Depends(require_roles(Role.ADMIN)),
) -> dict:
    return {
        "origins": await kernel.origins.allowed_origins(tenant.id),
        "custom_domain": tenant.custom_domain,
    }


@router.post("", status_code=201)
async def add_origin(
    payload: OriginPayload,
    tenant: Tenant = Depends(current_tenant),
    kernel: TenantKernel = Depends(get_kernel),
    identity: Identity = Depends(require_roles(Role.ADMIN)),
) -> dict:
    origins = await kernel.origins.add_allowed(tenant.id, payload.origin)
    await _audit(kernel, identity, "origin.added", {"origin": payload.origin})
    logger.info("Tenant %s allowed origin %s", tenant.id, payload.origin)
    return {"origins": origins}


@router.delete("")
async def remove_origin(
    origin: str = Query(..., min_length=1),
    tenant: Tenant = Depends(current_tenant),
    kernel: TenantKernel = Depends(get_kernel),
    identity: Identity = Depends(require_roles(Role.ADMIN)),
) -> dict:
    origins = await kernel.origins.remove_allowed(tenant.id, origin)
    await _audit(kernel, identity, "origin.removed", {"origin": origin})
    return {"origins": origins}


@router.put("")
async def replace_origins(
    payload: OriginListPayload,
    tenant: Tenant = Depends(current_tenant),
    kernel: TenantKernel = Depends(get_kernel),
    identity: Identity = Depends(require_roles(Role.ADMIN)),
) -> dict:
    origins = await kernel.origins.set_allowed(tenant.id, payload.origins)
    await _audit(kernel, identity, "origin.replaced", {"origins": origins})
    return {"origins": origins}


@router.get("/suggestions")
async def origin_suggestions(
    tenant: Tenant = Depends(current_tenant),
    kernel: TenantKernel = Depends(get_kernel),
    _: Identity = Depends(require_roles(Role.ADMIN)),
) -> dict:
    return {"suggestions": [s.to_dict() for s in kernel.origins.suggest(tenant.id)]}


@router.get("/stats")
async def origin_stats(
    tenant: Tenant = Depends(current_tenant),
    kernel: TenantKernel = Depends(get_kernel),
    _: Identity = Depends(require_roles(Role.ADMIN)),
) -> dict:
    return kernel.origins.stats(tenant.id)


@router.get("/check")
async def check_origin(
    origin: str = Query(..., min_length=1),
    tenant: Tenant = Depends(current_tenant),
    kernel: TenantKernel = Depends(get_kernel),
    _: Identity = Depends(require_roles(Role.ADMIN)),
) -> dict:
    decision = await kernel.origins.is_allowed(origin, tenant.id)
    return {
        "origin": origin,
        "allowed": decision.allowed,
        "reason": decision.reason,
        "pattern": decision.pattern,
    }
