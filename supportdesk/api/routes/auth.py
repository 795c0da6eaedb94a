"""Login and current-identity endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from supportdesk.api.deps import current_identity, get_kernel
from supportdesk.multitenancy.errors import (
    AccountDisabled,
    CrossTenantDenied,
    InvalidToken,
    TenantNotFound,
    TenantRequired,
)
from supportdesk.multitenancy.identity import Identity, verify_password
from supportdesk.multitenancy.kernel import TenantKernel

logger = logging.getLogger("supportdesk.api")

router = APIRouter(prefix="/api/auth", tags=["auth"])


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class LoginPayload(BaseModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)


class LoginResponse(BaseModel):
    token: str
    user: dict
    tenant: dict | None = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/login", response_model=LoginResponse)
async def login(
    payload: LoginPayload,
    request: Request,
    kernel: TenantKernel = Depends(get_kernel),
) -> LoginResponse:
    """Verify credentials and mint a tenant-bound token.

    The tenant the request resolved to (header, subdomain, domain) narrows
    the user lookup; a user of another tenant cannot sign in through it.
    """
    request_tenant = getattr(request.state, "tenant", None)
    user = await kernel.users.find_by_email(
        payload.email, request_tenant.id if request_tenant else None
    )
    if user is None or not verify_password(payload.password, user.password_hash):
        raise InvalidToken("Invalid email or password")
    if not user.is_active:
        raise AccountDisabled()

    identity = user.identity()
    tenant = None
    if not identity.is_master:
        if not user.tenant_id:
            raise TenantRequired("User is not assigned to a tenant")
        if request_tenant is not None and request_tenant.id != user.tenant_id:
            raise CrossTenantDenied("User does not belong to this tenant")
        tenant = await kernel.registry.by_id(user.tenant_id)
        if tenant is None:
            raise TenantNotFound(details={"tenant_id": user.tenant_id})

    token = kernel.tokens.mint(identity, tenant)
    logger.info("Login subject=%s tenant=%s", user.id, tenant.id if tenant else "master")
    return LoginResponse(
        token=token,
        user={"id": user.id, "email": user.email, "name": user.name, "role": user.role.value},
        tenant={"id": tenant.id, "key": tenant.key, "name": tenant.name} if tenant else None,
    )


@router.get("/me")
async def me(request: Request, identity: Identity = Depends(current_identity)) -> dict:
    tenant = getattr(request.state, "tenant", None)
    return {
        "subject_id": identity.subject_id,
        "role": identity.role.value,
        "email": identity.email,
        "legacy_token": identity.legacy,
        "tenant": tenant.to_dict() if tenant else None,
        "resolved_by": request.state.outcome.resolved_by.value if request.state.outcome.resolved_by else None,
    }
