"""
Kernel assembly.

``TenantKernel`` wires the isolation components around one shared policy,
cache, and metrics object so the HTTP layer, the realtime hub and the CLI
all see the same tenant state.
"""

from typing import Any
import logging

from . import context
from .admission import PlanAdmission
from .cache import TenantCache
from .gateway import EntityRegistry, ScopedDataGateway, entities
from .identity import Authenticator, TokenService, UserDirectory
from .metrics import KernelMetrics
from .origins import ScopedOriginPolicy
from .policy import KernelPolicy
from .realtime import ScopedRealtimeHub
from .registry import TenantRegistry, TenantStore
from .repository import Repository
from .resolver import TenantResolver

logger = logging.getLogger(__name__)


class TenantKernel:
    """All isolation components for one process.

    Attributes:
        policy: Kernel policy.
        metrics: Shared counters.
        cache: Tenant cache shared by the registry and the origin policy.
        registry / resolver / tokens / authenticator / origins / gateway /
        realtime / admission: The components.
    """

    def __init__(
        self,
        policy: KernelPolicy,
        tenants: TenantStore,
        users: UserDirectory,
        repository: Repository,
        entity_registry: EntityRegistry | None = None,
        metrics: KernelMetrics | None = None,
    ):
        self.policy = policy
        self.metrics = metrics or KernelMetrics()
        self.cache = TenantCache(ttl_seconds=policy.tenant_cache_ttl_seconds)
        self.registry = TenantRegistry(tenants, cache=self.cache)
        self.resolver = TenantResolver(self.registry, policy, self.metrics)
        self.tokens = TokenService.from_policy(policy)
        self.users = users
        self.authenticator = Authenticator(self.tokens, users, policy, self.metrics)
        self.origins = ScopedOriginPolicy(self.registry, policy)
        self.gateway = ScopedDataGateway(repository, entity_registry or entities, self.metrics)
        self.realtime = ScopedRealtimeHub(self.authenticator, self.resolver, policy, self.metrics)
        self.admission = PlanAdmission(self.registry)
        self._unsubscribe = context.on_bypass(self._count_bypass)

    @classmethod
    def from_settings(cls, settings: Any, **components: Any) -> "TenantKernel":
        return cls(KernelPolicy.from_settings(settings), **components)

    def _count_bypass(self, event: context.BypassEvent) -> None:
        self.metrics.bypass_entries += 1

    def close(self) -> None:
        """Detach from process-wide hooks."""
        self._unsubscribe()
        self.cache.clear()

    def health(self) -> dict[str, Any]:
        return {
            "cache": self.cache.stats(),
            "origins": self.origins.health()["stats"],
            "realtime": self.realtime.stats(),
            "metrics": self.metrics.to_dict(),
        }
