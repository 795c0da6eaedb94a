"""
Tenant model and references for SupportDesk.

A tenant is an isolation boundary: one customer company owning a
disjoint subset of all persisted state and realtime traffic. Each tenant
has its own:
- Stable identifiers (opaque ``id``, URL-safe ``key``, legacy ``slug``)
- Activation and subscription status
- Enabled product modules and plan limits
- Allow-listed browser origins

Plans:
    - TRIAL: Evaluation plan, chat module only
    - STARTER: Small support teams
    - PROFESSIONAL: Chat plus CRM, larger limits
    - ENTERPRISE: All modules, large limits
    - CUSTOM: Negotiated limits, no defaults applied

Example:
    from supportdesk.multitenancy.tenant import Tenant, Plan

    tenant = Tenant.create("t1", "acme", "Acme Support", plan=Plan.STARTER)
    tenant.has_module("chat")          # True
    tenant.check_limit("users", 1)     # True while usage < limit
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping
import re
import uuid

KEY_PATTERN = re.compile(r"^[a-z0-9._-]+$")


class SubscriptionStatus(str, Enum):
    """Billing state of a tenant's subscription.

    Attributes:
        ACTIVE: Paid and current.
        TRIALING: Within the trial window.
        SUSPENDED: Payment failed or administratively paused.
        EXPIRED: Period ended without renewal.
        CANCELLED: Cancelled by the customer.
    """

    ACTIVE = "active"
    TRIALING = "trialing"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_restricted(self) -> bool:
        """Suspended and expired subscriptions are subject to policy."""
        return self in (SubscriptionStatus.SUSPENDED, SubscriptionStatus.EXPIRED)


class Plan(str, Enum):
    """Subscription plans for SupportDesk tenants."""

    TRIAL = "trial"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"
    CUSTOM = "custom"


# Default limits and modules per plan
PLAN_DEFAULTS: dict[Plan, dict[str, Any]] = {
    Plan.TRIAL: {
        "modules": {"chat"},
        "limits": {
            "users": 3,
            "storage_mb": 512,
            "monthly_messages": 1000,
            "monthly_minutes": 0,
            "api_calls": 5000,
        },
    },
    Plan.STARTER: {
        "modules": {"chat"},
        "limits": {
            "users": 10,
            "storage_mb": 5120,
            "monthly_messages": 10000,
            "monthly_minutes": 1000,
            "api_calls": 100000,
        },
    },
    Plan.PROFESSIONAL: {
        "modules": {"chat", "crm"},
        "limits": {
            "users": 50,
            "storage_mb": 51200,
            "monthly_messages": 100000,
            "monthly_minutes": 10000,
            "api_calls": 1000000,
        },
    },
    Plan.ENTERPRISE: {
        "modules": {"chat", "crm", "hrm"},
        "limits": {
            "users": 500,
            "storage_mb": 512000,
            "monthly_messages": 1000000,
            "monthly_minutes": 100000,
            "api_calls": 10000000,
        },
    },
    Plan.CUSTOM: {
        "modules": set(),
        "limits": {},
    },
}

# Usage counters reset at the start of each billing month
MONTHLY_RESOURCES = ("monthly_messages", "monthly_minutes", "api_calls")


def normalize_key(value: str) -> str:
    """Lowercase and trim a tenant key or slug."""
    return value.strip().lower()


def is_valid_key(value: str) -> bool:
    """Check a tenant key against ``[a-z0-9._-]+``."""
    return bool(value) and KEY_PATTERN.match(value) is not None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Tenant:
    """A tenant (customer company) in SupportDesk.

    Attributes:
        id: Opaque, globally unique identifier.
        key: URL-safe lowercase key used in subdomains and headers.
        name: Human-readable company name.
        slug: Legacy alias for ``key``; defaults to ``key``.
        custom_domain: Optional custom host served for this tenant.
        is_active: Whether the tenant may access the system at all.
        subscription_status: Billing state.
        plan: Subscription plan.
        enabled_modules: Names of product modules the tenant may use.
        limits: Resource caps enforced at admission.
        usage: Current usage per resource.
        allowed_origins: Ordered browser origin patterns for CORS.
        created_at: Creation timestamp (UTC).
        updated_at: Last write timestamp (UTC).
        metadata: Additional tenant metadata.
    """

    id: str
    key: str
    name: str
    slug: str = ""
    custom_domain: str | None = None
    is_active: bool = True
    subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    plan: Plan = Plan.TRIAL
    enabled_modules: set[str] = field(default_factory=set)
    limits: dict[str, int] = field(default_factory=dict)
    usage: dict[str, int] = field(default_factory=dict)
    allowed_origins: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate and normalise identifiers."""
        if not self.id:
            raise ValueError("Tenant id cannot be empty")
        if not self.name:
            raise ValueError("Tenant name cannot be empty")
        self.key = normalize_key(self.key)
        if not is_valid_key(self.key):
            raise ValueError(f"Invalid tenant key: {self.key!r}")
        self.slug = normalize_key(self.slug) if self.slug else self.key
        if self.custom_domain:
            self.custom_domain = self.custom_domain.strip().lower()
        self.subscription_status = SubscriptionStatus(self.subscription_status)
        self.plan = Plan(self.plan)
        self.enabled_modules = set(self.enabled_modules)
        for resource, amount in self.usage.items():
            if amount < 0:
                raise ValueError(f"Usage for {resource} cannot be negative")

    @classmethod
    def create(
        cls,
        tenant_id: str | None,
        key: str,
        name: str,
        plan: Plan = Plan.TRIAL,
        **kwargs: Any,
    ) -> "Tenant":
        """Factory method to create a tenant with plan defaults.

        Args:
            tenant_id: Identifier to use; a UUID is generated when None.
            key: URL-safe tenant key.
            name: Company name.
            plan: Subscription plan whose defaults are applied.
            **kwargs: Additional fields to set on the tenant.

        Returns:
            A new Tenant instance.
        """
        defaults = PLAN_DEFAULTS[plan]
        kwargs.setdefault("enabled_modules", set(defaults["modules"]))
        kwargs.setdefault("limits", dict(defaults["limits"]))
        return cls(
            id=tenant_id or uuid.uuid4().hex,
            key=key,
            name=name,
            plan=plan,
            **kwargs,
        )

    # -- aliases ----------------------------------------------------------

    @property
    def aliases(self) -> dict[str, str]:
        """Every cache alias under which this tenant can be looked up."""
        names = {"id": self.id, "key": self.key, "slug": self.slug}
        if self.custom_domain:
            names["domain"] = self.custom_domain
        return names

    # -- modules and limits -------------------------------------------------

    def has_module(self, module: str) -> bool:
        """Check if a product module is enabled for this tenant."""
        return module in self.enabled_modules

    def limit_for(self, resource: str) -> int | None:
        """Return the cap for a resource, or None when it is uncapped."""
        return self.limits.get(resource)

    def usage_for(self, resource: str) -> int:
        return self.usage.get(resource, 0)

    def check_limit(self, resource: str, amount: int = 1) -> bool:
        """Check whether ``amount`` more units of ``resource`` fit the plan.

        Resources without a configured limit are uncapped.
        """
        limit = self.limit_for(resource)
        if limit is None:
            return True
        return self.usage_for(resource) + amount <= limit

    def with_usage(self, resource: str, amount: int) -> "Tenant":
        """Return a copy with usage for ``resource`` adjusted by ``amount``."""
        usage = dict(self.usage)
        usage[resource] = max(0, usage.get(resource, 0) + amount)
        return replace(self, usage=usage, updated_at=_utcnow())

    @property
    def is_limited(self) -> bool:
        return self.subscription_status.is_restricted

    def to_dict(self) -> dict[str, Any]:
        """Convert tenant to a dictionary.

        Returns:
            Dictionary representation of the tenant.
        """
        return {
            "id": self.id,
            "key": self.key,
            "slug": self.slug,
            "name": self.name,
            "custom_domain": self.custom_domain,
            "is_active": self.is_active,
            "subscription_status": self.subscription_status.value,
            "plan": self.plan.value,
            "enabled_modules": sorted(self.enabled_modules),
            "limits": dict(self.limits),
            "usage": dict(self.usage),
            "allowed_origins": list(self.allowed_origins),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Tenant":
        """Build a tenant from a ``to_dict()``-shaped mapping."""
        values = dict(data)
        for stamp in ("created_at", "updated_at"):
            if isinstance(values.get(stamp), str):
                values[stamp] = datetime.fromisoformat(values[stamp])
        values["enabled_modules"] = set(values.get("enabled_modules") or ())
        return cls(**values)

    def __repr__(self) -> str:
        status = "active" if self.is_active else "inactive"
        return (
            f"<Tenant {self.id} key={self.key!r} plan={self.plan.value} "
            f"subscription={self.subscription_status.value} {status}>"
        )


# ---------------------------------------------------------------------------
# Tenant references
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TenantId:
    """An unresolved reference: only the opaque identifier is known."""

    value: str

    def __post_init__(self) -> None:
        if not self.value:
            raise ValueError("Tenant id cannot be empty")

    @property
    def id(self) -> str:
        return self.value


@dataclass(frozen=True)
class ResolvedTenant:
    """A reference whose tenant record has been loaded."""

    tenant: Tenant

    @property
    def id(self) -> str:
        return self.tenant.id


TenantRef = TenantId | ResolvedTenant


def to_ref(value: Any) -> TenantRef:
    """Normalise a duck-typed tenant identifier into a ``TenantRef``.

    Accepts a ``TenantRef``, a ``Tenant``, a raw id string, or a mapping
    carrying ``id`` / ``_id`` (a populated record).

    Raises:
        ValueError: If the value cannot be interpreted as a tenant.
    """
    if isinstance(value, (TenantId, ResolvedTenant)):
        return value
    if isinstance(value, Tenant):
        return ResolvedTenant(value)
    if isinstance(value, str):
        return TenantId(value.strip())
    if isinstance(value, Mapping):
        raw = value.get("id") or value.get("_id")
        if raw:
            return TenantId(str(raw))
    raw_id = getattr(value, "id", None)
    if raw_id:
        return TenantId(str(raw_id))
    raise ValueError(f"Cannot interpret {type(value).__name__} as a tenant reference")


def tenant_id_of(value: Any) -> str:
    """Return the opaque tenant id behind any accepted reference shape."""
    return to_ref(value).id
