"""Platform administration endpoints (master identities only)."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from supportdesk.api.deps import get_kernel
from supportdesk.multitenancy.kernel import TenantKernel
from supportdesk.multitenancy.tenant import Plan, SubscriptionStatus, Tenant

logger = logging.getLogger("supportdesk.api")

router = APIRouter(prefix="/api/master", tags=["master"])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class TenantCreate(BaseModel):
    key: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    plan: Plan = Plan.TRIAL
    custom_domain: str | None = None
    allowed_origins: list[str] = Field(default_factory=list)


class TenantPatch(BaseModel):
    name: str | None = None
    is_active: bool | None = None
    subscription_status: SubscriptionStatus | None = None
    plan: Plan | None = None
    custom_domain: str | None = None
    enabled_modules: list[str] | None = None
    limits: dict[str, int] | None = None


def _summary(kernel: TenantKernel, tenant: Tenant) -> dict:
    return {**tenant.to_dict(), "usage_report": kernel.admission.usage_report(tenant)}


async def _tenant_or_404(kernel: TenantKernel, tenant_id: str) -> Tenant:
    tenant = await kernel.registry.by_id(tenant_id)
    if tenant is None:
        raise HTTPException(status_code=404, detail="Tenant not found.")
    return tenant


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/tenants")
async def list_tenants(kernel: TenantKernel = Depends(get_kernel)) -> dict:
    tenants = await kernel.registry.all()
    return {"items": [t.to_dict() for t in tenants], "total": len(tenants)}


@router.post("/tenants", status_code=201)
async def create_tenant(payload: TenantCreate, kernel: TenantKernel = Depends(get_kernel)) -> dict:
    origins = kernel.origins.clean_patterns(payload.allowed_origins)
    tenant = Tenant.create(
        None,
        key=payload.key,
        name=payload.name,
        plan=payload.plan,
        custom_domain=payload.custom_domain,
        allowed_origins=origins,
    )
    saved = await kernel.registry.save(tenant)
    logger.info("Created tenant %s (%s)", saved.id, saved.key)
    return _summary(kernel, saved)


@router.get("/tenants/{tenant_id}")
async def get_tenant(tenant_id: str, kernel: TenantKernel = Depends(get_kernel)) -> dict:
    return _summary(kernel, await _tenant_or_404(kernel, tenant_id))


@router.patch("/tenants/{tenant_id}")
async def update_tenant(
    tenant_id: str,
    payload: TenantPatch,
    kernel: TenantKernel = Depends(get_kernel),
) -> dict:
    await _tenant_or_404(kernel, tenant_id)
    changes = payload.model_dump(exclude_none=True)
    if "enabled_modules" in changes:
        changes["enabled_modules"] = set(changes["enabled_modules"])
    updated = await kernel.registry.update(tenant_id, **changes)
    logger.info("Updated tenant %s: %s", tenant_id, sorted(changes))
    return _summary(kernel, updated)


@router.post("/tenants/{tenant_id}/reset-usage")
async def reset_usage(tenant_id: str, kernel: TenantKernel = Depends(get_kernel)) -> dict:
    await _tenant_or_404(kernel, tenant_id)
    return _summary(kernel, await kernel.admission.reset_monthly(tenant_id))


@router.post("/tenants/{tenant_id}/refresh")
async def refresh_tenant(tenant_id: str, kernel: TenantKernel = Depends(get_kernel)) -> dict:
    await kernel.registry.refresh(tenant_id)
    return {"refreshed": tenant_id}


@router.get("/tenants/{tenant_id}/activity")
async def tenant_activity(tenant_id: str, kernel: TenantKernel = Depends(get_kernel)) -> dict:
    tenant = await _tenant_or_404(kernel, tenant_id)
    return {
        "tenant_id": tenant.id,
        "conversations": await kernel.gateway.count_by_tenant("conversations", tenant),
        "open_conversations": await kernel.gateway.count_by_tenant(
            "conversations", tenant, {"status": "open"}
        ),
        "messages": await kernel.gateway.count_by_tenant("messages", tenant),
        "connections": len(kernel.realtime.connections(tenant.id)),
    }


@router.get("/kernel")
async def kernel_health(kernel: TenantKernel = Depends(get_kernel)) -> dict:
    return kernel.health()
