"""
Kernel policy derived from application settings.

Kernel components receive a ``KernelPolicy`` instead of reading the
settings singleton, so tests can build components with any policy and
two kernels in one process never share configuration by accident.

Example:
    from supportdesk.config import settings
    from supportdesk.multitenancy.policy import KernelPolicy, RouteClass

    policy = KernelPolicy.from_settings(settings)
    policy.classify("/api/health")          # RouteClass.PUBLIC
    policy.classify("/api/conversations")   # RouteClass.TENANT_SCOPED
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class RouteClass(str, Enum):
    """How much identity and tenant a route requires.

    Attributes:
        PUBLIC: No identity, no tenant (login, health, webhooks).
        IDENTITY_ONLY: Identity required, tenant optional.
        TENANT_SCOPED: Identity and tenant required.
        MASTER_ONLY: Master identity required.
    """

    PUBLIC = "public"
    IDENTITY_ONLY = "identity-only"
    TENANT_SCOPED = "tenant-scoped"
    MASTER_ONLY = "master-only"

    @property
    def requires_identity(self) -> bool:
        return self is not RouteClass.PUBLIC

    @property
    def requires_tenant(self) -> bool:
        return self is RouteClass.TENANT_SCOPED


def _matches_prefix(path: str, prefix: str) -> bool:
    prefix = prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


@dataclass(frozen=True)
class KernelPolicy:
    """Isolation policy flags consumed by the kernel components.

    Attributes:
        environment: Deployment environment name.
        allow_legacy_tokens: Accept version-1 tokens (DB tenant lookup).
        use_default_tenant_fallback: Allow the fallback tenant on
            ``fallback_routes``.
        default_tenant_key: Key of the fallback tenant.
        fallback_routes: Path prefixes eligible for the fallback tenant.
        allow_query_tenant: Honour the ``tenant`` query parameter.
        tenant_cache_ttl_seconds: TTL for tenant and origin-list caches.
        subscription_suspended_policy: ``"deny"`` or ``"limited"``.
        cors_development_origins: Origins allowed in development.
        cors_stats_max_entries: Cap on tracked ``(tenant, origin)`` pairs.
        cors_suggest_threshold: Blocked count before an origin is
            proposed by ``suggest``.
        realtime_buffer_size: Outbound frames queued per connection.
        public_routes: Path prefixes classified as public.
        identity_only_routes: Path prefixes classified identity-only.
        master_routes: Path prefixes classified master-only.
        jwt_secret: HMAC secret for tokens.
        jwt_algorithm: JWT signing algorithm.
        token_ttl_minutes: Lifetime of minted tokens.
    """

    environment: str = "development"
    allow_legacy_tokens: bool = False
    use_default_tenant_fallback: bool = False
    default_tenant_key: str = "default"
    fallback_routes: tuple[str, ...] = ()
    allow_query_tenant: bool = False
    tenant_cache_ttl_seconds: int = 300
    subscription_suspended_policy: str = "deny"
    cors_development_origins: tuple[str, ...] = ()
    cors_stats_max_entries: int = 10_000
    cors_suggest_threshold: int = 5
    realtime_buffer_size: int = 256
    public_routes: tuple[str, ...] = ("/api/health", "/api/auth/login")
    identity_only_routes: tuple[str, ...] = ("/api/auth/me",)
    master_routes: tuple[str, ...] = ("/api/master",)
    jwt_secret: str = field(default="CHANGE-ME-in-production", repr=False)
    jwt_algorithm: str = "HS256"
    token_ttl_minutes: int = 60 * 24

    def __post_init__(self) -> None:
        if self.subscription_suspended_policy not in ("deny", "limited"):
            raise ValueError(
                "subscription_suspended_policy must be 'deny' or 'limited', "
                f"got {self.subscription_suspended_policy!r}"
            )
        if self.tenant_cache_ttl_seconds < 0:
            raise ValueError("tenant_cache_ttl_seconds cannot be negative")
        if self.realtime_buffer_size < 1:
            raise ValueError("realtime_buffer_size must be at least 1")

    @classmethod
    def from_settings(cls, settings: Any) -> "KernelPolicy":
        """Build a policy from a ``Settings`` instance."""
        return cls(
            environment=settings.ENVIRONMENT,
            allow_legacy_tokens=settings.ALLOW_LEGACY_TOKENS,
            use_default_tenant_fallback=settings.USE_DEFAULT_TENANT_FALLBACK,
            default_tenant_key=settings.DEFAULT_TENANT_KEY,
            fallback_routes=tuple(settings.FALLBACK_ROUTES),
            allow_query_tenant=bool(settings.ALLOW_QUERY_TENANT),
            tenant_cache_ttl_seconds=settings.TENANT_CACHE_TTL_SECONDS,
            subscription_suspended_policy=settings.SUBSCRIPTION_SUSPENDED_POLICY,
            cors_development_origins=tuple(settings.CORS_DEVELOPMENT_ORIGINS),
            cors_stats_max_entries=settings.CORS_STATS_MAX_ENTRIES,
            cors_suggest_threshold=settings.CORS_SUGGEST_THRESHOLD,
            realtime_buffer_size=settings.REALTIME_BUFFER_SIZE,
            public_routes=tuple(settings.PUBLIC_ROUTES),
            identity_only_routes=tuple(settings.IDENTITY_ONLY_ROUTES),
            master_routes=tuple(settings.MASTER_ROUTES),
            jwt_secret=settings.JWT_SECRET,
            jwt_algorithm=settings.JWT_ALGORITHM,
            token_ttl_minutes=settings.TOKEN_TTL_MINUTES,
        )

    def with_overrides(self, **changes: Any) -> "KernelPolicy":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    def classify(self, path: str) -> RouteClass:
        """Classify a request path by the prefix tables.

        Master prefixes are checked first, then public, then
        identity-only; anything else is tenant-scoped.
        """
        if any(_matches_prefix(path, p) for p in self.master_routes):
            return RouteClass.MASTER_ONLY
        if any(_matches_prefix(path, p) for p in self.public_routes):
            return RouteClass.PUBLIC
        if any(_matches_prefix(path, p) for p in self.identity_only_routes):
            return RouteClass.IDENTITY_ONLY
        return RouteClass.TENANT_SCOPED

    def fallback_allowed(self, path: str | None) -> bool:
        """Whether the fallback tenant may be attached for ``path``."""
        if not self.use_default_tenant_fallback or path is None:
            return False
        return any(_matches_prefix(path, p) for p in self.fallback_routes)
