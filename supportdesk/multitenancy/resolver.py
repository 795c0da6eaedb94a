"""
Tenant resolution.

``TenantResolver.resolve`` maps an ``IdentityEnvelope`` (identity, headers,
host, query, realtime handshake) to a ``ResolutionOutcome`` or raises a
typed ``TenantKernelError``. The order of sources is total, so the same
envelope and registry state always give the same outcome.

Resolution order (first hit wins):
    1. Master identity: explicit override (``x-tenant-id`` / ``tenantId`` /
       ``x-tenant-key``), else no tenant.
    2. Tenant bound to the identity.
    3. ``x-tenant-id`` header (or handshake ``tenantId``).
    4. ``x-tenant-key`` header (or handshake ``tenantKey``), key or slug.
    5. Subdomain of the Host header (not www, api, localhost).
    6. Full Host matched against custom domains.
    7. ``tenant`` query parameter (policy gated).
    8. Fallback tenant (policy gated, fallback routes only).

Authenticated non-master identities only ever resolve to their own
tenant. Only the explicit hints (sources 3-4, from headers or the
handshake) are compared with it, and a conflicting one is refused with
``CrossTenantDenied``. Host and query sources are not consulted for them,
so a bound subject reaching the API through another tenant's subdomain
still resolves to its own tenant.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping
import ipaddress
import logging

from .errors import (
    CrossTenantDenied,
    SubscriptionExpired,
    SubscriptionSuspended,
    TenantNotFound,
    TenantRequired,
    TenantSuspended,
)
from .identity import Identity
from .metrics import KernelMetrics
from .policy import KernelPolicy, RouteClass
from .registry import TenantRegistry, normalize_host
from .tenant import SubscriptionStatus, Tenant, normalize_key

logger = logging.getLogger(__name__)

RESERVED_SUBDOMAINS = frozenset({"www", "api", "localhost"})

TENANT_HELP = (
    "Identify the tenant with a tenant-bound token, the x-tenant-id or "
    "x-tenant-key header, or the tenant subdomain"
)


class ResolutionSource(str, Enum):
    """How the resolver chose the tenant, kept for audit and telemetry."""

    SUBJECT = "subject"
    HEADER_ID = "header-id"
    HEADER_KEY = "header-key"
    SUBDOMAIN = "subdomain"
    DOMAIN = "domain"
    QUERY = "query"
    FALLBACK = "fallback-default"
    MASTER_OVERRIDE = "master-override"


@dataclass(frozen=True)
class IdentityEnvelope:
    """Everything the resolver may look at for one operation.

    Attributes:
        identity: Authenticated identity, if any.
        headers: Request headers with lowercase names.
        host: Host header value (port allowed).
        query: Query parameters.
        handshake_auth: Realtime handshake auth bag (``token``,
            ``tenantId``, ``tenantKey``).
        route_class: Classification of the target route.
        path: Request path, used for fallback eligibility.
    """

    identity: Identity | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    host: str | None = None
    query: Mapping[str, str] = field(default_factory=dict)
    handshake_auth: Mapping[str, Any] | None = None
    route_class: RouteClass = RouteClass.TENANT_SCOPED
    path: str | None = None

    @property
    def origin(self) -> str | None:
        return self.headers.get("origin")

    def _handshake(self, name: str) -> str | None:
        if not self.handshake_auth:
            return None
        value = self.handshake_auth.get(name)
        return str(value) if value else None

    @property
    def explicit_tenant_id(self) -> str | None:
        return (
            self.headers.get("x-tenant-id")
            or self._handshake("tenantId")
            or None
        )

    @property
    def explicit_tenant_key(self) -> str | None:
        value = self.headers.get("x-tenant-key") or self._handshake("tenantKey")
        return normalize_key(value) if value else None


@dataclass(frozen=True)
class ResolutionOutcome:
    """Result of a successful resolution."""

    tenant: Tenant | None
    resolved_by: ResolutionSource | None
    is_master: bool = False
    limited: bool = False
    identity: Identity | None = None

    @property
    def tenant_id(self) -> str | None:
        return self.tenant.id if self.tenant is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "tenant_key": self.tenant.key if self.tenant else None,
            "resolved_by": self.resolved_by.value if self.resolved_by else None,
            "is_master": self.is_master,
            "limited": self.limited,
        }


def subdomain_of(host: str | None) -> str | None:
    """Return the first label of a dotted host, unless reserved or an IP."""
    if not host:
        return None
    host = normalize_host(host)
    try:
        ipaddress.ip_address(host.strip("[]"))
        return None
    except ValueError:
        pass
    labels = host.split(".")
    if len(labels) < 2 or not labels[0]:
        return None
    if labels[0] in RESERVED_SUBDOMAINS:
        return None
    return labels[0]


class TenantResolver:
    """Chooses the tenant for an operation.

    Attributes:
        registry: Tenant lookups.
        policy: Gates for query and fallback sources and the
            suspended-subscription policy.
        metrics: Resolution counters.
    """

    def __init__(
        self,
        registry: TenantRegistry,
        policy: KernelPolicy,
        metrics: KernelMetrics | None = None,
    ):
        self.registry = registry
        self.policy = policy
        self.metrics = metrics or KernelMetrics()

    async def resolve(self, envelope: IdentityEnvelope) -> ResolutionOutcome:
        """Resolve the tenant for an envelope.

        Raises:
            TenantNotFound: An explicit id/key/identity tenant does not exist.
            TenantSuspended: The tenant is inactive.
            SubscriptionSuspended / SubscriptionExpired: Under the deny policy.
            CrossTenantDenied: An explicit hint conflicts with the identity.
            TenantRequired: The route needs a tenant and none was found.
        """
        identity = envelope.identity

        if identity is not None and identity.is_master:
            tenant = await self._explicit(envelope)
            if tenant is None:
                return self._done(ResolutionOutcome(None, None, is_master=True, identity=identity))
            return self._validated(envelope, tenant, ResolutionSource.MASTER_OVERRIDE)

        if identity is not None:
            return await self._resolve_for_identity(envelope, identity)

        tenant, source = await self._from_request(envelope)
        if tenant is None:
            return self._none_found(envelope)
        return self._validated(envelope, tenant, source)

    # -- sources ----------------------------------------------------------

    async def _explicit(self, envelope: IdentityEnvelope) -> Tenant | None:
        """Explicit id or key hint; a hint that names nothing is an error."""
        tenant_id = envelope.explicit_tenant_id or envelope.query.get("tenantId")
        if tenant_id:
            tenant = await self.registry.by_id(tenant_id)
            if tenant is None:
                raise TenantNotFound(details={"tenant_id": tenant_id})
            return tenant
        tenant_key = envelope.explicit_tenant_key
        if tenant_key:
            tenant = await self.registry.by_key(tenant_key)
            if tenant is None:
                raise TenantNotFound(details={"tenant_key": tenant_key})
            return tenant
        return None

    async def _from_request(
        self, envelope: IdentityEnvelope
    ) -> tuple[Tenant | None, ResolutionSource | None]:
        tenant_id = envelope.explicit_tenant_id
        if tenant_id:
            tenant = await self.registry.by_id(tenant_id)
            if tenant is None:
                raise TenantNotFound(details={"tenant_id": tenant_id})
            return tenant, ResolutionSource.HEADER_ID

        tenant_key = envelope.explicit_tenant_key
        if tenant_key:
            tenant = await self.registry.by_key(tenant_key)
            if tenant is None:
                raise TenantNotFound(details={"tenant_key": tenant_key})
            return tenant, ResolutionSource.HEADER_KEY

        subdomain = subdomain_of(envelope.host)
        if subdomain:
            tenant = await self.registry.by_key(subdomain)
            if tenant is not None:
                return tenant, ResolutionSource.SUBDOMAIN

        if envelope.host:
            tenant = await self.registry.by_domain(envelope.host)
            if tenant is not None:
                return tenant, ResolutionSource.DOMAIN

        query_key = envelope.query.get("tenant")
        if query_key and self.policy.allow_query_tenant:
            tenant = await self.registry.by_key(query_key)
            if tenant is not None:
                return tenant, ResolutionSource.QUERY

        return await self._fallback(envelope)

    async def _fallback(
        self, envelope: IdentityEnvelope
    ) -> tuple[Tenant | None, ResolutionSource | None]:
        if not self.policy.fallback_allowed(envelope.path):
            return None, None
        tenant = await self.registry.by_key(self.policy.default_tenant_key)
        if tenant is None:
            logger.warning(
                f"Fallback tenant {self.policy.default_tenant_key!r} is enabled but missing"
            )
            return None, None
        logger.info(f"Attached fallback tenant {tenant.key} to {envelope.path}")
        return tenant, ResolutionSource.FALLBACK

    async def _resolve_for_identity(
        self, envelope: IdentityEnvelope, identity: Identity
    ) -> ResolutionOutcome:
        if identity.tenant_id is None:
            # Tenantless non-master (legacy grace): only the fallback may apply
            tenant, source = await self._fallback(envelope)
            if tenant is None:
                return self._none_found(envelope)
            return self._validated(envelope, tenant, source)

        tenant = await self.registry.by_id(identity.tenant_id)
        if tenant is None:
            raise TenantNotFound(details={"tenant_id": identity.tenant_id})
        self._check_hints(envelope, tenant)
        return self._validated(envelope, tenant, ResolutionSource.SUBJECT)

    def _check_hints(self, envelope: IdentityEnvelope, tenant: Tenant) -> None:
        hinted_id = envelope.explicit_tenant_id
        hinted_key = envelope.explicit_tenant_key
        conflict = (hinted_id and hinted_id != tenant.id) or (
            hinted_key and hinted_key not in (tenant.key, tenant.slug)
        )
        if conflict:
            self.metrics.cross_tenant_denials += 1
            logger.warning(
                f"Subject {envelope.identity.subject_id if envelope.identity else '?'} "
                f"of tenant {tenant.id} asked for tenant "
                f"{hinted_id or hinted_key}"
            )
            raise CrossTenantDenied(
                details={"tenant_id": tenant.id, "requested": hinted_id or hinted_key}
            )

    # -- validation -------------------------------------------------------

    def _none_found(self, envelope: IdentityEnvelope) -> ResolutionOutcome:
        if envelope.route_class.requires_tenant:
            raise TenantRequired(details={"hint": TENANT_HELP})
        return self._done(ResolutionOutcome(None, None, identity=envelope.identity))

    def _validated(
        self,
        envelope: IdentityEnvelope,
        tenant: Tenant,
        source: ResolutionSource | None,
    ) -> ResolutionOutcome:
        if not tenant.is_active:
            raise TenantSuspended(details={"tenant_key": tenant.key})

        limited = False
        status = tenant.subscription_status
        if status.is_restricted:
            if self.policy.subscription_suspended_policy == "deny":
                if status is SubscriptionStatus.EXPIRED:
                    raise SubscriptionExpired(details={"tenant_key": tenant.key})
                raise SubscriptionSuspended(details={"tenant_key": tenant.key})
            limited = True

        identity = envelope.identity
        if (
            identity is not None
            and not identity.is_master
            and identity.tenant_id is not None
            and identity.tenant_id != tenant.id
        ):
            self.metrics.cross_tenant_denials += 1
            raise CrossTenantDenied(details={"tenant_id": identity.tenant_id})

        return self._done(
            ResolutionOutcome(
                tenant=tenant,
                resolved_by=source,
                is_master=identity is not None and identity.is_master,
                limited=limited,
                identity=identity,
            )
        )

    def _done(self, outcome: ResolutionOutcome) -> ResolutionOutcome:
        if outcome.resolved_by is not None:
            self.metrics.record_resolution(outcome.resolved_by.value)
        return outcome
