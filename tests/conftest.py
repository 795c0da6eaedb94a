"""Shared fixtures: an in-memory kernel with two tenants and their users."""

from __future__ import annotations

import pytest

from supportdesk.multitenancy.gateway import EntityRegistry
from supportdesk.multitenancy.identity import (
    Identity,
    MemoryUserDirectory,
    Role,
    UserRecord,
    hash_password,
)
from supportdesk.multitenancy.kernel import TenantKernel
from supportdesk.multitenancy.policy import KernelPolicy
from supportdesk.multitenancy.registry import MemoryTenantStore
from supportdesk.multitenancy.repository import MemoryRepository
from supportdesk.multitenancy.tenant import Plan, SubscriptionStatus, Tenant

SECRET = "test-secret"
PASSWORD = "correct horse"
PASSWORD_HASH = hash_password(PASSWORD)


def make_policy(**overrides) -> KernelPolicy:
    policy = KernelPolicy(
        environment="test",
        jwt_secret=SECRET,
        public_routes=("/api/health", "/api/auth/login"),
        identity_only_routes=("/api/auth/me",),
        master_routes=("/api/master",),
        fallback_routes=("/api/health", "/api/auth/login"),
    )
    return policy.with_overrides(**overrides) if overrides else policy


def make_tenants() -> list[Tenant]:
    return [
        Tenant.create(
            "t1",
            "acme",
            "Acme Support",
            plan=Plan.STARTER,
            custom_domain="support.acme.com",
            allowed_origins=["https://app.example.com"],
        ),
        Tenant.create("t2", "globex", "Globex", plan=Plan.PROFESSIONAL),
        Tenant.create("t3", "dormant", "Dormant Inc", is_active=False),
        Tenant.create(
            "t4", "lapsed", "Lapsed Ltd", subscription_status=SubscriptionStatus.SUSPENDED
        ),
        Tenant.create(
            "t5", "gone", "Gone GmbH", subscription_status=SubscriptionStatus.EXPIRED
        ),
        Tenant.create("t0", "default", "Default Tenant"),
    ]


def make_users() -> list[UserRecord]:
    return [
        UserRecord("u1", Role.AGENT, "t1", email="agent@acme.test", name="Ana", password_hash=PASSWORD_HASH),
        UserRecord("a1", Role.ADMIN, "t1", email="admin@acme.test", name="Ada", password_hash=PASSWORD_HASH),
        UserRecord("c1", Role.CLIENT, "t1", email="client@acme.test", name="Cy", password_hash=PASSWORD_HASH),
        UserRecord("u2", Role.AGENT, "t2", email="agent@globex.test", name="Bo", password_hash=PASSWORD_HASH),
        UserRecord("m1", Role.MASTER, None, email="root@supportdesk.test", name="Root", password_hash=PASSWORD_HASH),
        UserRecord("x1", Role.AGENT, "t1", email="gone@acme.test", is_active=False, password_hash=PASSWORD_HASH),
        UserRecord("l1", Role.AGENT, None, email="orphan@acme.test", password_hash=PASSWORD_HASH),
    ]


def make_entities() -> EntityRegistry:
    registry = EntityRegistry()
    registry.register("conversations", indexes=[("tenant_id", "status")])
    registry.register("messages", indexes=[("tenant_id", "conversation_id")])
    registry.register("audit_logs", indexes=[("tenant_id", "created_at")], timestamps=False)
    registry.register("plans", tenant_scoped=False, timestamps=False)
    return registry


def make_kernel(policy: KernelPolicy | None = None, entity_registry: EntityRegistry | None = None) -> TenantKernel:
    return TenantKernel(
        policy or make_policy(),
        tenants=MemoryTenantStore(make_tenants()),
        users=MemoryUserDirectory(make_users()),
        repository=MemoryRepository(),
        entity_registry=entity_registry or make_entities(),
    )


def bearer(kernel: TenantKernel, subject: str, role: Role, tenant_id: str | None = None, **kwargs) -> dict:
    """Authorization header carrying a freshly minted token."""
    token = kernel.tokens.mint(Identity(subject, role, tenant_id), **kwargs)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def policy() -> KernelPolicy:
    return make_policy()


@pytest.fixture
def entity_registry() -> EntityRegistry:
    return make_entities()


@pytest.fixture
def kernel(policy, entity_registry):
    kernel = make_kernel(policy, entity_registry)
    yield kernel
    kernel.close()
