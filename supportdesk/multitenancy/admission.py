"""
Plan admission: module gates and usage limits per tenant.

Limits are enforced when an operation is admitted, never at storage:
``consume`` checks and increments a usage counter atomically under the
registry's per-tenant write lock, so two concurrent requests cannot both
take the last unit.

Example:
    admission = PlanAdmission(registry)

    admission.require_module(tenant, "crm")          # ModuleDisabled
    await admission.consume(tenant.id, "users")      # PlanLimitReached
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
import logging

from .errors import ModuleDisabled, PlanLimitReached
from .registry import TenantRegistry
from .tenant import MONTHLY_RESOURCES, Tenant

logger = logging.getLogger(__name__)


@dataclass
class UsageWarning:
    """Emitted when usage crosses the warning threshold.

    Attributes:
        tenant_id: The tenant approaching the limit.
        resource: The resource type.
        current: Usage after the admitted operation.
        limit: The plan limit.
        threshold_percent: The warning threshold (e.g. 80).
        generated_at: When the warning was generated.
    """

    tenant_id: str
    resource: str
    current: int
    limit: int
    threshold_percent: int
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def usage_percent(self) -> float:
        if self.limit == 0:
            return 100.0
        return (self.current / self.limit) * 100


class PlanAdmission:
    """Enforces plan modules and limits.

    Attributes:
        registry: Tenant registry used for serialised usage writes.
        warning_threshold: Percentage of a limit that triggers a warning.
    """

    # Warning threshold (percentage)
    WARNING_THRESHOLD = 80

    def __init__(self, registry: TenantRegistry, warning_threshold: int | None = None):
        self.registry = registry
        self.warning_threshold = warning_threshold or self.WARNING_THRESHOLD
        self._warnings: list[UsageWarning] = []

    @staticmethod
    def require_module(tenant: Tenant, module: str) -> None:
        """Raise ``ModuleDisabled`` unless ``module`` is enabled."""
        if not tenant.has_module(module):
            raise ModuleDisabled(module)

    @staticmethod
    def check_limit(tenant: Tenant, resource: str, amount: int = 1) -> None:
        """Raise ``PlanLimitReached`` if ``amount`` more would exceed the limit."""
        if not tenant.check_limit(resource, amount):
            raise PlanLimitReached(
                resource=resource,
                limit=tenant.limit_for(resource) or 0,
                current=tenant.usage_for(resource),
                requested=amount,
            )

    async def consume(self, tenant_id: str, resource: str, amount: int = 1) -> Tenant:
        """Check and increment usage atomically.

        Raises:
            PlanLimitReached: If the limit would be exceeded; nothing is
                consumed in that case.
        """

        def _consume(tenant: Tenant) -> Tenant:
            self.check_limit(tenant, resource, amount)
            return tenant.with_usage(resource, amount)

        updated = await self.registry.mutate(tenant_id, _consume)
        self._maybe_warn(updated, resource)
        return updated

    async def release(self, tenant_id: str, resource: str, amount: int = 1) -> Tenant:
        """Give back ``amount`` units (usage never drops below zero)."""
        return await self.registry.add_usage(tenant_id, resource, -amount)

    async def reset_monthly(self, tenant_id: str) -> Tenant:
        logger.info(f"Resetting monthly usage for {tenant_id}")
        return await self.registry.reset_usage(tenant_id, MONTHLY_RESOURCES)

    def _maybe_warn(self, tenant: Tenant, resource: str) -> None:
        limit = tenant.limit_for(resource)
        if not limit:
            return
        current = tenant.usage_for(resource)
        if current * 100 >= limit * self.warning_threshold:
            warning = UsageWarning(
                tenant_id=tenant.id,
                resource=resource,
                current=current,
                limit=limit,
                threshold_percent=self.warning_threshold,
            )
            self._warnings.append(warning)
            logger.warning(
                f"Tenant {tenant.id} at {warning.usage_percent:.0f}% of {resource} limit"
            )

    def get_warnings(self, tenant_id: str | None = None) -> list[UsageWarning]:
        if tenant_id is None:
            return list(self._warnings)
        return [w for w in self._warnings if w.tenant_id == tenant_id]

    @staticmethod
    def usage_report(tenant: Tenant) -> dict[str, dict[str, Any]]:
        """Per-resource limit, current usage and percentage."""
        report = {}
        for resource in sorted(set(tenant.limits) | set(tenant.usage)):
            limit = tenant.limit_for(resource)
            current = tenant.usage_for(resource)
            report[resource] = {
                "limit": limit,
                "current": current,
                "percent": None if not limit else round(current * 100 / limit, 1),
            }
        return report
