"""FastAPI dependencies exposing the kernel and the request's tenant scope."""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, HTTPException, Request

from supportdesk.multitenancy.errors import InsufficientRole, NoToken, TenantRequired
from supportdesk.multitenancy.gateway import ScopedDataGateway
from supportdesk.multitenancy.identity import Identity, Role
from supportdesk.multitenancy.kernel import TenantKernel
from supportdesk.multitenancy.storage import TenantObjectStore
from supportdesk.multitenancy.tenant import Tenant


def get_kernel(request: Request) -> TenantKernel:
    return request.app.state.kernel


def get_gateway(kernel: TenantKernel = Depends(get_kernel)) -> ScopedDataGateway:
    return kernel.gateway


def current_identity(request: Request) -> Identity:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise NoToken()
    return identity


def current_tenant(request: Request) -> Tenant:
    tenant = getattr(request.state, "tenant", None)
    if tenant is None:
        raise TenantRequired(details={"hint": "Send x-tenant-id or x-tenant-key"})
    return tenant


def require_roles(*roles: Role) -> Callable[..., Identity]:
    """Dependency factory: the identity must hold one of ``roles`` (masters always pass)."""

    def _check(identity: Identity = Depends(current_identity)) -> Identity:
        if not identity.is_master and identity.role not in roles:
            raise InsufficientRole(details={"required": [r.value for r in roles]})
        return identity

    return _check


def get_object_store(request: Request) -> TenantObjectStore:
    store = getattr(request.app.state, "object_store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Object storage is not configured.")
    return store
