"""
Multi-tenant isolation kernel for SupportDesk.

Every request, realtime event and background job runs inside exactly one
tenant scope (or an explicit, audited bypass), and every persistence,
fan-out, and CORS decision is evaluated against that scope.

Key Components:
    - TenantRegistry: cached tenant lookups by id, key, slug or domain
    - TenantResolver: deterministic choice of the tenant for an operation
    - TenantContext: task-local current tenant and bypass flag
    - ScopedDataGateway: tenant filter on every persistence call
    - ScopedRealtimeHub: tenant-isolated realtime groups
    - ScopedOriginPolicy: per-tenant CORS allow-lists
    - PlanAdmission: module gates and usage limits

Example:
    from supportdesk.multitenancy import TenantKernel, with_tenant

    kernel = TenantKernel(policy, tenants, users, repository)

    async with with_tenant("t1"):
        await kernel.gateway.create("conversations", {"subject": "Hi"})
"""

from supportdesk.multitenancy.admission import PlanAdmission, UsageWarning
from supportdesk.multitenancy.cache import TenantCache
from supportdesk.multitenancy.context import (
    ContextFrame,
    TenantContext,
    current,
    current_tenant_id,
    enter,
    require_tenant,
    tenant_required,
    with_tenant,
    without_tenant,
)
from supportdesk.multitenancy.errors import TenantKernelError
from supportdesk.multitenancy.gateway import (
    EntityRegistry,
    ScopedDataGateway,
    entities,
    tenant_scoped,
)
from supportdesk.multitenancy.identity import (
    Authenticator,
    Identity,
    Role,
    TokenService,
    UserRecord,
)
from supportdesk.multitenancy.kernel import TenantKernel
from supportdesk.multitenancy.metrics import KernelMetrics
from supportdesk.multitenancy.origins import ScopedOriginPolicy
from supportdesk.multitenancy.policy import KernelPolicy, RouteClass
from supportdesk.multitenancy.realtime import ScopedRealtimeHub
from supportdesk.multitenancy.registry import MemoryTenantStore, TenantRegistry
from supportdesk.multitenancy.repository import MemoryRepository
from supportdesk.multitenancy.resolver import (
    IdentityEnvelope,
    ResolutionOutcome,
    ResolutionSource,
    TenantResolver,
)
from supportdesk.multitenancy.tenant import (
    Plan,
    ResolvedTenant,
    SubscriptionStatus,
    Tenant,
    TenantId,
)

__all__ = [
    # Tenant model
    "Plan",
    "ResolvedTenant",
    "SubscriptionStatus",
    "Tenant",
    "TenantId",
    # Registry and resolution
    "IdentityEnvelope",
    "MemoryTenantStore",
    "ResolutionOutcome",
    "ResolutionSource",
    "TenantCache",
    "TenantRegistry",
    "TenantResolver",
    # Identity
    "Authenticator",
    "Identity",
    "Role",
    "TokenService",
    "UserRecord",
    # Context
    "ContextFrame",
    "TenantContext",
    "current",
    "current_tenant_id",
    "enter",
    "require_tenant",
    "tenant_required",
    "with_tenant",
    "without_tenant",
    # Data, realtime, origins, plans
    "EntityRegistry",
    "MemoryRepository",
    "PlanAdmission",
    "ScopedDataGateway",
    "ScopedOriginPolicy",
    "ScopedRealtimeHub",
    "UsageWarning",
    "entities",
    "tenant_scoped",
    # Kernel
    "KernelMetrics",
    "KernelPolicy",
    "RouteClass",
    "TenantKernel",
    "TenantKernelError",
]
