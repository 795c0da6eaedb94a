"""
Tenant-scoped read-through cache.

One cache instance is shared by the tenant registry and the origin
policy. Entries are keyed by ``(tenant_id, aspect)`` (``"record"``,
``"origins"``, ...) and alias lookups (``key``, ``slug``, ``domain``)
resolve to a tenant id first, so a single call to ``invalidate`` drops
every alias and every aspect of a tenant at once.

Absent tenants are never cached. Fills are coordinated by per-key
``asyncio.Lock`` objects so concurrent misses for the same key perform
a single load.

Example:
    cache = TenantCache(ttl_seconds=300)
    record = await cache.get_or_load("t1", "record", lambda: store.get("t1"))
    cache.invalidate("t1")  # drops record, origins and all aliases
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable
import asyncio
import logging
import time

logger = logging.getLogger(__name__)

ASPECT_RECORD = "record"
ASPECT_ORIGINS = "origins"


@dataclass
class CacheEntry:
    """A cached value with its absolute expiry on the cache clock."""

    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class TenantCache:
    """TTL cache keyed by ``(tenant_id, aspect)`` with alias indirection.

    Attributes:
        ttl_seconds: Lifetime of each entry. Zero disables caching.
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], CacheEntry] = {}
        self._aliases: dict[tuple[str, str], str] = {}
        self._aliases_by_tenant: dict[str, set[tuple[str, str]]] = {}
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._listeners: list[Callable[[str, str | None], None]] = []
        # Fills that started before an invalidation must not store their result
        self._epoch = 0
        self._invalidated_at: dict[str, int] = {}
        self.hits = 0
        self.misses = 0

    # -- entries ----------------------------------------------------------

    def get(self, tenant_id: str, aspect: str) -> Any | None:
        """Return a live entry or None (expired entries are dropped)."""
        key = (tenant_id, aspect)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def begin_fill(self) -> int:
        """Mark the start of a load; pass the result to ``set(since=...)``."""
        return self._epoch

    def is_stale(self, tenant_id: str, since: int | None) -> bool:
        """Whether ``tenant_id`` was invalidated after epoch ``since``."""
        if since is None:
            return False
        return self._invalidated_at.get(tenant_id, -1) > since

    def set(
        self,
        tenant_id: str,
        aspect: str,
        value: Any,
        since: int | None = None,
    ) -> bool:
        """Store a value. ``None`` is refused: absence is never cached.

        Returns:
            True if the value was stored.
        """
        if value is None or self.ttl_seconds <= 0:
            return False
        if self.is_stale(tenant_id, since):
            return False
        self._entries[(tenant_id, aspect)] = CacheEntry(
            value=value, expires_at=self._clock() + self.ttl_seconds
        )
        return True

    async def get_or_load(
        self,
        tenant_id: str,
        aspect: str,
        loader: Callable[[], Awaitable[Any]],
    ) -> Any | None:
        """Read-through lookup with a single concurrent fill per key."""
        value = self.get(tenant_id, aspect)
        if value is not None:
            return value
        async with self.lock_for((tenant_id, aspect)):
            value = self.get(tenant_id, aspect)
            if value is not None:
                return value
            since = self.begin_fill()
            value = await loader()
            self.set(tenant_id, aspect, value, since=since)
            return value

    # -- aliases ----------------------------------------------------------

    def resolve_alias(self, kind: str, value: str) -> str | None:
        """Map an alias (``("key", "acme")``) to a cached tenant id."""
        tenant_id = self._aliases.get((kind, value))
        if tenant_id is None:
            return None
        # An alias is only useful while its record is live
        if self.get(tenant_id, ASPECT_RECORD) is None:
            self._drop_aliases(tenant_id)
            return None
        return tenant_id

    def bind_aliases(
        self,
        tenant_id: str,
        aliases: dict[str, str],
        since: int | None = None,
    ) -> None:
        """Record alias -> tenant id mappings for a freshly cached tenant."""
        if self.ttl_seconds <= 0 or self.is_stale(tenant_id, since):
            return
        self._drop_aliases(tenant_id)
        bound = self._aliases_by_tenant.setdefault(tenant_id, set())
        for kind, value in aliases.items():
            if kind == "id" or not value:
                continue
            self._aliases[(kind, value)] = tenant_id
            bound.add((kind, value))

    def _drop_aliases(self, tenant_id: str) -> None:
        for alias in self._aliases_by_tenant.pop(tenant_id, set()):
            if self._aliases.get(alias) == tenant_id:
                del self._aliases[alias]

    # -- invalidation -----------------------------------------------------

    def invalidate(self, tenant_id: str, aspect: str | None = None) -> None:
        """Drop cached state for a tenant.

        With ``aspect`` only that entry is dropped; without it every
        aspect and every alias of the tenant is dropped. Listeners are
        notified synchronously, before the caller's write returns.
        """
        self._epoch += 1
        self._invalidated_at[tenant_id] = self._epoch
        if aspect is None:
            for key in [k for k in self._entries if k[0] == tenant_id]:
                del self._entries[key]
            self._drop_aliases(tenant_id)
        else:
            self._entries.pop((tenant_id, aspect), None)
            if aspect == ASPECT_RECORD:
                self._drop_aliases(tenant_id)
        logger.debug(f"Invalidated tenant cache: {tenant_id} aspect={aspect or '*'}")
        for listener in self._listeners:
            listener(tenant_id, aspect)

    def on_invalidate(self, listener: Callable[[str, str | None], None]) -> None:
        """Register a callback run on every invalidation."""
        self._listeners.append(listener)

    def clear(self) -> None:
        self._entries.clear()
        self._aliases.clear()
        self._aliases_by_tenant.clear()

    # -- coordination -----------------------------------------------------

    def lock_for(self, key: Hashable) -> asyncio.Lock:
        """Return the fill lock for a cache key."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def stats(self) -> dict[str, Any]:
        return {
            "entries": len(self._entries),
            "aliases": len(self._aliases),
            "hits": self.hits,
            "misses": self.misses,
            "ttl_seconds": self.ttl_seconds,
        }

    def __len__(self) -> int:
        return len(self._entries)
