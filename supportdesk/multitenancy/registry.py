"""
Tenant registry: canonical lookup and mutation of tenant records.

Lookups go through a read-through ``TenantCache``; absent tenants are
returned as None and never cached. Writes bypass the cache, run under a
per-tenant ``asyncio.Lock`` and invalidate every alias and aspect of the
tenant before returning, so a read issued after a write on the same node
observes the written value.

Storage errors marked transient (``TransientStoreError``) are retried
once; anything else, and a second failure, propagates to the caller.

Example:
    registry = TenantRegistry(MemoryTenantStore(), ttl_seconds=300)
    await registry.save(Tenant.create("t1", "acme", "Acme"))

    tenant = await registry.by_key("acme")
    tenant = await registry.by_domain("support.acme.com:443")
    await registry.update("t1", is_active=False)
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol, TypeVar
import asyncio
import logging

from .cache import ASPECT_RECORD, TenantCache
from .errors import TenantNotFound, TransientStoreError
from .tenant import ResolvedTenant, Tenant, normalize_key, to_ref

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALIAS_KINDS = ("key", "slug", "domain")


class TenantStore(Protocol):
    """Persistence backend for tenant records."""

    async def get(self, tenant_id: str) -> Tenant | None:
        ...

    async def find_by_alias(self, kind: str, value: str) -> Tenant | None:
        """Find by ``key``, ``slug`` or ``domain``."""
        ...

    async def save(self, tenant: Tenant) -> Tenant:
        """Insert or replace a record, enforcing alias uniqueness."""
        ...

    async def list(self) -> list[Tenant]:
        ...


class MemoryTenantStore:
    """In-process tenant store for development and tests."""

    def __init__(self, tenants: list[Tenant] | None = None):
        self._tenants: dict[str, Tenant] = {}
        for tenant in tenants or []:
            self._check_unique(tenant)
            self._tenants[tenant.id] = tenant

    def _check_unique(self, tenant: Tenant) -> None:
        for other in self._tenants.values():
            if other.id == tenant.id:
                continue
            handles = {other.key, other.slug}
            if tenant.key in handles or tenant.slug in handles:
                raise ValueError(
                    f"Tenant key/slug {tenant.key!r} already belongs to {other.id}"
                )
            if tenant.custom_domain and tenant.custom_domain == other.custom_domain:
                raise ValueError(
                    f"Domain {tenant.custom_domain!r} already belongs to {other.id}"
                )

    async def get(self, tenant_id: str) -> Tenant | None:
        return self._tenants.get(tenant_id)

    async def find_by_alias(self, kind: str, value: str) -> Tenant | None:
        for tenant in self._tenants.values():
            if kind == "key" and tenant.key == value:
                return tenant
            if kind == "slug" and tenant.slug == value:
                return tenant
            if kind == "domain" and tenant.custom_domain == value:
                return tenant
        return None

    async def save(self, tenant: Tenant) -> Tenant:
        self._check_unique(tenant)
        self._tenants[tenant.id] = tenant
        return tenant

    async def list(self) -> list[Tenant]:
        return sorted(self._tenants.values(), key=lambda t: t.key)


def normalize_host(host: str) -> str:
    """Lowercase a Host header value and strip any port."""
    host = host.strip().lower()
    if host.startswith("["):
        return host
    return host.split(":", 1)[0]


class TenantRegistry:
    """Cached tenant lookups with serialised, invalidating writes.

    Attributes:
        store: The tenant persistence backend.
        cache: Shared ``(tenant_id, aspect)`` cache.
    """

    def __init__(
        self,
        store: TenantStore,
        cache: TenantCache | None = None,
        ttl_seconds: float = 300,
    ):
        self.store = store
        self.cache = cache or TenantCache(ttl_seconds=ttl_seconds)
        self._write_locks: dict[str, asyncio.Lock] = {}

    # -- storage access ---------------------------------------------------

    async def _call(self, op: Callable[[], Awaitable[T]], what: str) -> T:
        """Run a store call, retrying once on a transient failure."""
        try:
            return await op()
        except TransientStoreError as e:
            logger.warning(f"Transient tenant store error during {what}, retrying: {e}")
            return await op()

    def _remember(self, tenant: Tenant, since: int) -> None:
        if self.cache.set(tenant.id, ASPECT_RECORD, tenant, since=since):
            self.cache.bind_aliases(tenant.id, tenant.aliases, since=since)

    # -- lookups ----------------------------------------------------------

    async def by_id(self, tenant_id: str) -> Tenant | None:
        """Look up a tenant by its opaque id."""
        if not tenant_id:
            return None
        cached = self.cache.get(tenant_id, ASPECT_RECORD)
        if cached is not None:
            return cached
        async with self.cache.lock_for(("id", tenant_id)):
            cached = self.cache.get(tenant_id, ASPECT_RECORD)
            if cached is not None:
                return cached
            since = self.cache.begin_fill()
            tenant = await self._call(lambda: self.store.get(tenant_id), "by_id")
            if tenant is not None:
                self._remember(tenant, since)
            return tenant

    async def _by_alias(self, kinds: tuple[str, ...], value: str) -> Tenant | None:
        for kind in kinds:
            tenant_id = self.cache.resolve_alias(kind, value)
            if tenant_id is not None:
                cached = self.cache.get(tenant_id, ASPECT_RECORD)
                if cached is not None:
                    return cached
        async with self.cache.lock_for((kinds[0], value)):
            since = self.cache.begin_fill()
            for kind in kinds:
                tenant = await self._call(
                    lambda kind=kind: self.store.find_by_alias(kind, value),
                    f"by_{kind}",
                )
                if tenant is not None:
                    self._remember(tenant, since)
                    return tenant
        return None

    async def by_key(self, key: str) -> Tenant | None:
        """Look up a tenant by key, accepting the legacy slug as alias."""
        if not key:
            return None
        return await self._by_alias(("key", "slug"), normalize_key(key))

    async def by_domain(self, host: str) -> Tenant | None:
        """Look up a tenant by custom domain (port is ignored)."""
        if not host:
            return None
        return await self._by_alias(("domain",), normalize_host(host))

    async def coerce(self, ref: Any) -> Tenant:
        """Turn any tenant reference into a loaded tenant.

        Raises:
            TenantNotFound: If the referenced tenant does not exist.
        """
        resolved = to_ref(ref)
        if isinstance(resolved, ResolvedTenant):
            return resolved.tenant
        tenant = await self.by_id(resolved.value)
        if tenant is None:
            raise TenantNotFound(details={"tenant_id": resolved.value})
        return tenant

    async def resolve_ref(self, ref: Any) -> ResolvedTenant:
        return ResolvedTenant(await self.coerce(ref))

    async def all(self) -> list[Tenant]:
        """List every tenant (uncached; administrative use only)."""
        return await self._call(self.store.list, "list")

    async def refresh(self, tenant_id: str) -> None:
        """Invalidate every cached alias and aspect of a tenant."""
        self.cache.invalidate(tenant_id)

    # -- writes -----------------------------------------------------------

    def write_lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._write_locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._write_locks[tenant_id] = lock
        return lock

    async def save(self, tenant: Tenant) -> Tenant:
        """Insert or replace a tenant record."""
        async with self.write_lock(tenant.id):
            saved = await self._call(lambda: self.store.save(tenant), "save")
            self.cache.invalidate(tenant.id)
        logger.info(f"Saved tenant {saved.id} ({saved.key})")
        return saved

    async def update(self, tenant_id: str, **changes: Any) -> Tenant:
        """Apply field changes to a tenant record.

        Raises:
            TenantNotFound: If the tenant does not exist.
        """
        return await self.mutate(tenant_id, lambda t: replace(t, **changes))

    async def mutate(
        self,
        tenant_id: str,
        change: Callable[[Tenant], Tenant],
    ) -> Tenant:
        """Read-modify-write a tenant under its write lock."""
        async with self.write_lock(tenant_id):
            current = await self._call(lambda: self.store.get(tenant_id), "get")
            if current is None:
                raise TenantNotFound(details={"tenant_id": tenant_id})
            updated = change(current)
            if updated.id != current.id:
                raise ValueError("Tenant id is immutable")
            updated = replace(updated, updated_at=datetime.now(timezone.utc))
            saved = await self._call(lambda: self.store.save(updated), "save")
            self.cache.invalidate(tenant_id)
        return saved

    async def add_usage(self, tenant_id: str, resource: str, amount: int = 1) -> Tenant:
        """Adjust the usage counter of a resource (never below zero)."""
        return await self.mutate(tenant_id, lambda t: t.with_usage(resource, amount))

    async def set_origins(self, tenant_id: str, origins: list[str]) -> Tenant:
        return await self.update(tenant_id, allowed_origins=list(origins))

    async def reset_usage(self, tenant_id: str, resources: tuple[str, ...]) -> Tenant:
        """Zero the given usage counters (monthly rollover)."""

        def _reset(tenant: Tenant) -> Tenant:
            usage = dict(tenant.usage)
            for resource in resources:
                usage[resource] = 0
            return replace(tenant, usage=usage)

        return await self.mutate(tenant_id, _reset)
