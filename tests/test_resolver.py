"""Tests for supportdesk.multitenancy.resolver - choosing the tenant."""

from __future__ import annotations

import pytest

from supportdesk.multitenancy.errors import (
    CrossTenantDenied,
    SubscriptionExpired,
    SubscriptionSuspended,
    TenantNotFound,
    TenantRequired,
    TenantSuspended,
)
from supportdesk.multitenancy.identity import Identity, Role
from supportdesk.multitenancy.metrics import KernelMetrics
from supportdesk.multitenancy.policy import RouteClass
from supportdesk.multitenancy.registry import MemoryTenantStore, TenantRegistry
from supportdesk.multitenancy.resolver import (
    IdentityEnvelope,
    ResolutionSource,
    TenantResolver,
    subdomain_of,
)

from tests.conftest import make_policy, make_tenants

AGENT_T1 = Identity("u1", Role.AGENT, tenant_id="t1")
MASTER = Identity("m1", Role.MASTER)


def _resolver(**policy_overrides) -> TenantResolver:
    registry = TenantRegistry(MemoryTenantStore(make_tenants()))
    return TenantResolver(registry, make_policy(**policy_overrides), KernelMetrics())


@pytest.fixture
def resolver() -> TenantResolver:
    return _resolver()


# ===========================================================================
# Subdomain parsing
# ===========================================================================

class TestSubdomainOf:
    def test_first_label(self):
        assert subdomain_of("acme.supportdesk.io") == "acme"
        assert subdomain_of("ACME.supportdesk.io:8443") == "acme"

    def test_reserved_and_bare_hosts(self):
        assert subdomain_of("www.supportdesk.io") is None
        assert subdomain_of("api.supportdesk.io") is None
        assert subdomain_of("localhost:3000") is None
        assert subdomain_of(None) is None

    def test_ip_addresses(self):
        assert subdomain_of("127.0.0.1") is None
        assert subdomain_of("10.0.0.5:8000") is None


# ===========================================================================
# Identity-bound resolution
# ===========================================================================

class TestIdentityResolution:
    """Authenticated subjects resolve to their own tenant."""

    @pytest.mark.asyncio
    async def test_subject_tenant(self, resolver):
        outcome = await resolver.resolve(IdentityEnvelope(identity=AGENT_T1))
        assert outcome.tenant_id == "t1"
        assert outcome.resolved_by is ResolutionSource.SUBJECT
        assert not outcome.is_master
        assert resolver.metrics.resolutions == {"subject": 1}

    @pytest.mark.asyncio
    async def test_matching_hint_is_fine(self, resolver):
        envelope = IdentityEnvelope(identity=AGENT_T1, headers={"x-tenant-key": "ACME"})
        assert (await resolver.resolve(envelope)).tenant_id == "t1"

    @pytest.mark.asyncio
    async def test_conflicting_id_hint(self, resolver):
        envelope = IdentityEnvelope(identity=AGENT_T1, headers={"x-tenant-id": "t2"})
        with pytest.raises(CrossTenantDenied):
            await resolver.resolve(envelope)
        assert resolver.metrics.cross_tenant_denials == 1

    @pytest.mark.asyncio
    async def test_conflicting_handshake_key(self, resolver):
        envelope = IdentityEnvelope(identity=AGENT_T1, handshake_auth={"tenantKey": "globex"})
        with pytest.raises(CrossTenantDenied):
            await resolver.resolve(envelope)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("host", [
        "globex.supportdesk.io",
        "globex.example.com",
        "support.acme.com",
    ])
    async def test_host_does_not_override_subject(self, resolver, host):
        """Subdomain and domain are not explicit hints for a bound subject."""
        outcome = await resolver.resolve(IdentityEnvelope(identity=AGENT_T1, host=host))
        assert outcome.tenant_id == "t1"
        assert outcome.resolved_by is ResolutionSource.SUBJECT
        assert resolver.metrics.cross_tenant_denials == 0

    @pytest.mark.asyncio
    async def test_query_does_not_override_subject(self):
        resolver = _resolver(allow_query_tenant=True)
        outcome = await resolver.resolve(IdentityEnvelope(identity=AGENT_T1, query={"tenant": "globex"}))
        assert outcome.tenant_id == "t1"

    @pytest.mark.asyncio
    async def test_subject_tenant_missing(self, resolver):
        with pytest.raises(TenantNotFound):
            await resolver.resolve(IdentityEnvelope(identity=Identity("z", Role.AGENT, tenant_id="nope")))

    @pytest.mark.asyncio
    async def test_tenantless_identity_requires_tenant(self, resolver):
        legacy = Identity("l1", Role.AGENT, legacy=True)
        with pytest.raises(TenantRequired):
            await resolver.resolve(IdentityEnvelope(identity=legacy, path="/api/conversations"))

    @pytest.mark.asyncio
    async def test_tenantless_identity_on_identity_only_route(self, resolver):
        legacy = Identity("l1", Role.AGENT, legacy=True)
        outcome = await resolver.resolve(
            IdentityEnvelope(identity=legacy, route_class=RouteClass.IDENTITY_ONLY, path="/api/auth/me")
        )
        assert outcome.tenant is None

    @pytest.mark.asyncio
    async def test_tenantless_identity_ignores_headers(self, resolver):
        legacy = Identity("l1", Role.AGENT, legacy=True)
        envelope = IdentityEnvelope(identity=legacy, headers={"x-tenant-id": "t2"}, path="/api/conversations")
        with pytest.raises(TenantRequired):
            await resolver.resolve(envelope)


class TestMasterResolution:
    """Masters act globally unless they name a tenant."""

    @pytest.mark.asyncio
    async def test_master_without_hint(self, resolver):
        outcome = await resolver.resolve(IdentityEnvelope(identity=MASTER, path="/api/master/tenants"))
        assert outcome.is_master
        assert outcome.tenant is None
        assert outcome.resolved_by is None

    @pytest.mark.asyncio
    async def test_master_override_by_id(self, resolver):
        envelope = IdentityEnvelope(identity=MASTER, headers={"x-tenant-id": "t2"})
        outcome = await resolver.resolve(envelope)
        assert outcome.tenant_id == "t2"
        assert outcome.is_master
        assert outcome.resolved_by is ResolutionSource.MASTER_OVERRIDE

    @pytest.mark.asyncio
    async def test_master_override_by_key_and_query(self, resolver):
        by_key = await resolver.resolve(IdentityEnvelope(identity=MASTER, headers={"x-tenant-key": "globex"}))
        by_query = await resolver.resolve(IdentityEnvelope(identity=MASTER, query={"tenantId": "t1"}))
        assert by_key.tenant_id == "t2"
        assert by_query.tenant_id == "t1"

    @pytest.mark.asyncio
    async def test_master_override_unknown(self, resolver):
        with pytest.raises(TenantNotFound):
            await resolver.resolve(IdentityEnvelope(identity=MASTER, headers={"x-tenant-id": "missing"}))

    @pytest.mark.asyncio
    async def test_master_override_validates_status(self, resolver):
        with pytest.raises(TenantSuspended):
            await resolver.resolve(IdentityEnvelope(identity=MASTER, headers={"x-tenant-id": "t3"}))


# ===========================================================================
# Anonymous resolution
# ===========================================================================

class TestRequestSources:
    """Header, host, query and fallback sources, in order."""

    @pytest.mark.asyncio
    async def test_header_id(self, resolver):
        outcome = await resolver.resolve(IdentityEnvelope(headers={"x-tenant-id": "t2"}))
        assert outcome.tenant_id == "t2"
        assert outcome.resolved_by is ResolutionSource.HEADER_ID

    @pytest.mark.asyncio
    async def test_header_id_unknown(self, resolver):
        with pytest.raises(TenantNotFound):
            await resolver.resolve(IdentityEnvelope(headers={"x-tenant-id": "nope"}))

    @pytest.mark.asyncio
    async def test_header_key(self, resolver):
        outcome = await resolver.resolve(IdentityEnvelope(headers={"x-tenant-key": "Globex"}))
        assert outcome.tenant_id == "t2"
        assert outcome.resolved_by is ResolutionSource.HEADER_KEY

    @pytest.mark.asyncio
    async def test_header_id_beats_host(self, resolver):
        envelope = IdentityEnvelope(headers={"x-tenant-id": "t2"}, host="acme.supportdesk.io")
        assert (await resolver.resolve(envelope)).tenant_id == "t2"

    @pytest.mark.asyncio
    async def test_subdomain(self, resolver):
        outcome = await resolver.resolve(IdentityEnvelope(host="acme.supportdesk.io"))
        assert outcome.tenant_id == "t1"
        assert outcome.resolved_by is ResolutionSource.SUBDOMAIN

    @pytest.mark.asyncio
    async def test_custom_domain(self, resolver):
        outcome = await resolver.resolve(IdentityEnvelope(host="Support.Acme.com:443"))
        assert outcome.tenant_id == "t1"
        assert outcome.resolved_by is ResolutionSource.DOMAIN

    @pytest.mark.asyncio
    async def test_query_ignored_unless_enabled(self, resolver):
        with pytest.raises(TenantRequired):
            await resolver.resolve(IdentityEnvelope(query={"tenant": "acme"}, path="/api/conversations"))

        enabled = _resolver(allow_query_tenant=True)
        outcome = await enabled.resolve(IdentityEnvelope(query={"tenant": "acme"}))
        assert outcome.resolved_by is ResolutionSource.QUERY

    @pytest.mark.asyncio
    async def test_nothing_found_on_public_route(self, resolver):
        outcome = await resolver.resolve(
            IdentityEnvelope(route_class=RouteClass.PUBLIC, path="/api/health", host="localhost")
        )
        assert outcome.tenant is None
        assert resolver.metrics.resolutions == {}

    @pytest.mark.asyncio
    async def test_unknown_subdomain_requires_tenant(self, resolver):
        with pytest.raises(TenantRequired) as exc:
            await resolver.resolve(IdentityEnvelope(host="nobody.supportdesk.io"))
        assert "hint" in exc.value.details


class TestFallback:
    """The fallback tenant is gated by flag and route."""

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, resolver):
        outcome = await resolver.resolve(
            IdentityEnvelope(route_class=RouteClass.PUBLIC, path="/api/auth/login")
        )
        assert outcome.tenant is None

    @pytest.mark.asyncio
    async def test_enabled_on_fallback_route(self):
        resolver = _resolver(use_default_tenant_fallback=True)
        outcome = await resolver.resolve(
            IdentityEnvelope(route_class=RouteClass.PUBLIC, path="/api/auth/login")
        )
        assert outcome.tenant_id == "t0"
        assert outcome.resolved_by is ResolutionSource.FALLBACK

    @pytest.mark.asyncio
    async def test_not_on_other_routes(self):
        resolver = _resolver(use_default_tenant_fallback=True)
        with pytest.raises(TenantRequired):
            await resolver.resolve(IdentityEnvelope(path="/api/conversations"))

    @pytest.mark.asyncio
    async def test_missing_default_tenant(self):
        resolver = _resolver(use_default_tenant_fallback=True, default_tenant_key="absent")
        outcome = await resolver.resolve(
            IdentityEnvelope(route_class=RouteClass.PUBLIC, path="/api/auth/login")
        )
        assert outcome.tenant is None

    @pytest.mark.asyncio
    async def test_tenantless_identity_gets_fallback(self):
        resolver = _resolver(use_default_tenant_fallback=True, allow_legacy_tokens=True)
        legacy = Identity("l1", Role.AGENT, legacy=True)
        outcome = await resolver.resolve(
            IdentityEnvelope(identity=legacy, route_class=RouteClass.PUBLIC, path="/api/auth/login")
        )
        assert outcome.tenant_id == "t0"


# ===========================================================================
# Tenant status
# ===========================================================================

class TestStatusValidation:
    """Inactive tenants and restricted subscriptions."""

    @pytest.mark.asyncio
    async def test_inactive_tenant(self, resolver):
        with pytest.raises(TenantSuspended) as exc:
            await resolver.resolve(IdentityEnvelope(headers={"x-tenant-key": "dormant"}))
        assert exc.value.status_code == 403

    @pytest.mark.asyncio
    async def test_suspended_subscription_denied(self, resolver):
        with pytest.raises(SubscriptionSuspended):
            await resolver.resolve(IdentityEnvelope(headers={"x-tenant-id": "t4"}))

    @pytest.mark.asyncio
    async def test_expired_subscription_denied(self, resolver):
        with pytest.raises(SubscriptionExpired):
            await resolver.resolve(IdentityEnvelope(headers={"x-tenant-id": "t5"}))

    @pytest.mark.asyncio
    async def test_limited_policy(self):
        resolver = _resolver(subscription_suspended_policy="limited")
        outcome = await resolver.resolve(IdentityEnvelope(headers={"x-tenant-id": "t4"}))
        assert outcome.tenant_id == "t4"
        assert outcome.limited

    @pytest.mark.asyncio
    async def test_limited_policy_still_blocks_inactive(self):
        resolver = _resolver(subscription_suspended_policy="limited")
        with pytest.raises(TenantSuspended):
            await resolver.resolve(IdentityEnvelope(headers={"x-tenant-id": "t3"}))


class TestDeterminism:
    @pytest.mark.asyncio
    async def test_same_envelope_same_outcome(self, resolver):
        envelope = IdentityEnvelope(headers={"x-tenant-key": "acme"}, host="globex.supportdesk.io")
        first = await resolver.resolve(envelope)
        second = await resolver.resolve(envelope)
        assert first.to_dict() == second.to_dict()
        assert first.tenant_id == "t1"
        assert resolver.metrics.resolutions == {"header-key": 2}
