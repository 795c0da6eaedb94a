"""
Per-tenant CORS allow-lists.

Pattern syntax (checked in list order, first match wins):
    ``*``                       any origin
    ``https://app.example.com`` exact origin (case-insensitive)
    ``*.example.com``           any subdomain of example.com (not the apex)
    ``http://localhost:*``      any port on that scheme and host
    ``/^https://[a-z]+\\.io$/`` regular expression over the full origin

The tenant's custom domain is implicitly allowed over https and http.
In development the configured development origins are allowed as exact
matches. A request without an ``Origin`` header is allowed (non-browser
clients).

Example:
    policy = ScopedOriginPolicy(registry, kernel_policy)
    decision = await policy.is_allowed("https://eu.corp.example", "t1")
    if not decision.allowed:
        ...
"""

from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, NamedTuple
from urllib.parse import urlsplit
import logging
import re

from .cache import ASPECT_ORIGINS
from .policy import KernelPolicy
from .registry import TenantRegistry

logger = logging.getLogger(__name__)

_DOMAIN_PATTERN = re.compile(r"^[a-z0-9-]+(\.[a-z0-9-]+)+$")


class InvalidOriginPattern(ValueError):
    """An allow-list entry does not follow the pattern syntax."""

    def __init__(self, pattern: str):
        self.pattern = pattern
        super().__init__(f"Invalid origin pattern: {pattern!r}")


class OriginDecision(NamedTuple):
    allowed: bool
    reason: str
    pattern: str | None = None


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def _is_regex(pattern: str) -> bool:
    return len(pattern) > 2 and pattern.startswith("/") and pattern.endswith("/")


def _is_http_origin(value: str) -> bool:
    try:
        parts = urlsplit(value)
        _ = parts.port
    except ValueError:
        return False
    return (
        parts.scheme in ("http", "https")
        and bool(parts.hostname)
        and parts.path in ("", "/")
        and not parts.query
        and not parts.fragment
        and not parts.username
    )


def validate_pattern(pattern: str) -> bool:
    """Whether ``pattern`` is a well-formed allow-list entry."""
    if not isinstance(pattern, str) or not pattern.strip():
        return False
    pattern = pattern.strip()
    if pattern == "*":
        return True
    if _is_regex(pattern):
        try:
            re.compile(pattern[1:-1])
        except re.error:
            return False
        return True
    if pattern.startswith("*."):
        return bool(_DOMAIN_PATTERN.match(pattern[2:].lower()))
    if pattern.endswith(":*"):
        return _is_http_origin(pattern[:-2] + ":3000")
    return _is_http_origin(pattern)


def pattern_matches(origin: str, pattern: str) -> bool:
    """Match one origin against one pattern."""
    pattern = pattern.strip()
    if pattern == "*":
        return True
    if _is_regex(pattern):
        try:
            return re.fullmatch(pattern[1:-1], origin) is not None
        except re.error:
            logger.warning(f"Ignoring invalid origin regex {pattern!r}")
            return False
    normalized = origin.rstrip("/").lower()
    if pattern.startswith("*."):
        try:
            hostname = urlsplit(normalized).hostname or ""
        except ValueError:
            return False
        return hostname.endswith("." + pattern[2:].lower())
    if pattern.endswith(":*"):
        base = pattern[:-2].rstrip("/").lower()
        if normalized == base:
            return True
        if not normalized.startswith(base + ":"):
            return False
        return normalized[len(base) + 1:].isdigit()
    return normalized == pattern.rstrip("/").lower()


def match_origin(origin: str, patterns: list[str]) -> str | None:
    """Return the first pattern that allows ``origin``, or None."""
    for pattern in patterns:
        if pattern_matches(origin, pattern):
            return pattern
    return None


def suggest_pattern(origin: str) -> str:
    """Propose a coarser pattern for a blocked origin."""
    try:
        parts = urlsplit(origin)
        hostname = parts.hostname or ""
    except ValueError:
        return origin
    if hostname in ("localhost", "127.0.0.1"):
        return f"{parts.scheme}://{hostname}:*"
    labels = hostname.split(".")
    if len(labels) > 2:
        return "*." + ".".join(labels[-2:])
    return origin


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass
class OriginSuggestion:
    pattern: str
    origins: list[str]
    blocked_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "origins": self.origins,
            "blocked_count": self.blocked_count,
        }


class ScopedOriginPolicy:
    """Per-tenant origin allow-list with cached lookups and statistics.

    Attributes:
        registry: Tenant registry; its cache holds the origin lists.
        policy: Kernel policy (development origins, stats cap, threshold).
    """

    def __init__(self, registry: TenantRegistry, policy: KernelPolicy):
        self.registry = registry
        self.policy = policy
        self.cache = registry.cache
        # (tenant_id, origin) -> [allowed, blocked], least recently used first
        self._stats: OrderedDict[tuple[str | None, str], list[int]] = OrderedDict()

    # -- lookups ----------------------------------------------------------

    async def allowed_origins(self, tenant_id: str) -> list[str]:
        """The tenant's effective patterns, including its custom domain."""

        async def _load() -> list[str] | None:
            tenant = await self.registry.by_id(tenant_id)
            if tenant is None:
                return None
            origins = list(tenant.allowed_origins)
            if tenant.custom_domain:
                origins.append(f"https://{tenant.custom_domain}")
                origins.append(f"http://{tenant.custom_domain}")
            return origins

        origins = await self.cache.get_or_load(tenant_id, ASPECT_ORIGINS, _load)
        return list(origins or [])

    def is_development_origin(self, origin: str) -> bool:
        if not self.policy.is_development:
            return False
        normalized = origin.rstrip("/").lower()
        return any(normalized == dev.rstrip("/").lower() for dev in self.policy.cors_development_origins)

    async def is_allowed(self, origin: str | None, tenant_id: str | None) -> OriginDecision:
        """Decide whether ``origin`` may call on behalf of ``tenant_id``."""
        if not origin:
            return OriginDecision(True, "no-origin")
        if self.is_development_origin(origin):
            self._record(tenant_id, origin, True)
            return OriginDecision(True, "development-origin")
        if tenant_id is None:
            self._record(None, origin, False)
            return OriginDecision(False, "no-tenant")
        pattern = match_origin(origin, await self.allowed_origins(tenant_id))
        allowed = pattern is not None
        self._record(tenant_id, origin, allowed)
        if not allowed:
            logger.info(f"Blocked origin {origin} for tenant {tenant_id}")
            return OriginDecision(False, "not-in-allow-list")
        return OriginDecision(True, "allow-list", pattern)

    # -- writes -----------------------------------------------------------

    @staticmethod
    def clean_patterns(patterns: list[str]) -> list[str]:
        """Strip and dedupe patterns, rejecting any that are malformed."""
        cleaned = []
        for pattern in patterns:
            if not validate_pattern(pattern):
                raise InvalidOriginPattern(pattern)
            pattern = pattern.strip()
            if pattern not in cleaned:
                cleaned.append(pattern)
        return cleaned

    async def add_allowed(self, tenant_id: str, pattern: str) -> list[str]:
        """Append a pattern (no-op if already present).

        Raises:
            InvalidOriginPattern: If the pattern is malformed.
        """
        (pattern,) = self.clean_patterns([pattern])

        def _add(tenant: Any) -> Any:
            if pattern in tenant.allowed_origins:
                return tenant
            return _with_origins(tenant, [*tenant.allowed_origins, pattern])

        tenant = await self.registry.mutate(tenant_id, _add)
        logger.info(f"Added allowed origin {pattern} for tenant {tenant_id}")
        return list(tenant.allowed_origins)

    async def remove_allowed(self, tenant_id: str, pattern: str) -> list[str]:
        pattern = pattern.strip()

        def _remove(tenant: Any) -> Any:
            return _with_origins(tenant, [p for p in tenant.allowed_origins if p != pattern])

        tenant = await self.registry.mutate(tenant_id, _remove)
        logger.info(f"Removed allowed origin {pattern} for tenant {tenant_id}")
        return list(tenant.allowed_origins)

    async def set_allowed(self, tenant_id: str, patterns: list[str]) -> list[str]:
        """Replace the allow-list; every pattern is validated first."""
        cleaned = self.clean_patterns(patterns)
        tenant = await self.registry.set_origins(tenant_id, cleaned)
        logger.info(f"Replaced allowed origins for tenant {tenant_id} ({len(cleaned)} entries)")
        return list(tenant.allowed_origins)

    # -- statistics -------------------------------------------------------

    def _record(self, tenant_id: str | None, origin: str, allowed: bool) -> None:
        key = (tenant_id, origin)
        counters = self._stats.get(key)
        if counters is None:
            counters = self._stats[key] = [0, 0]
        else:
            self._stats.move_to_end(key)
        counters[0 if allowed else 1] += 1
        while len(self._stats) > self.policy.cors_stats_max_entries:
            self._stats.popitem(last=False)

    def stats(self, tenant_id: str | None = None) -> dict[str, Any]:
        """Allowed/blocked counters, optionally for one tenant."""
        allowed = []
        blocked = []
        tenants: dict[str, int] = {}
        for (tid, origin), (ok, denied) in self._stats.items():
            if tenant_id is not None and tid != tenant_id:
                continue
            if ok:
                allowed.append({"tenant_id": tid, "origin": origin, "count": ok})
            if denied:
                blocked.append({"tenant_id": tid, "origin": origin, "count": denied})
            if tid is not None:
                tenants[tid] = tenants.get(tid, 0) + ok + denied
        allowed.sort(key=lambda e: e["count"], reverse=True)
        blocked.sort(key=lambda e: e["count"], reverse=True)
        return {"allowed": allowed, "blocked": blocked, "requests_by_tenant": tenants}

    def clear_stats(self, tenant_id: str | None = None) -> None:
        if tenant_id is None:
            self._stats.clear()
            return
        for key in [k for k in self._stats if k[0] == tenant_id]:
            del self._stats[key]

    def suggest(self, tenant_id: str) -> list[OriginSuggestion]:
        """Coarser patterns for frequently blocked origins.

        An origin blocked at least ``cors_suggest_threshold`` times is
        proposed on its own; blocked origins sharing a parent domain are
        collapsed into one ``*.domain`` pattern when their combined count
        reaches the threshold.
        """
        threshold = self.policy.cors_suggest_threshold
        grouped: dict[str, OriginSuggestion] = {}
        for (tid, origin), (_, blocked) in self._stats.items():
            if tid != tenant_id or not blocked:
                continue
            pattern = suggest_pattern(origin)
            suggestion = grouped.setdefault(pattern, OriginSuggestion(pattern, [], 0))
            suggestion.origins.append(origin)
            suggestion.blocked_count += blocked
        suggestions = [s for s in grouped.values() if s.blocked_count >= threshold]
        for s in suggestions:
            s.origins.sort()
        return sorted(suggestions, key=lambda s: (-s.blocked_count, s.pattern))

    def health(self) -> dict[str, Any]:
        allowed = sum(1 for ok, _ in self._stats.values() if ok)
        blocked = sum(1 for _, denied in self._stats.values() if denied)
        return {
            "status": "healthy",
            "cache": self.cache.stats(),
            "stats": {
                "tracked": len(self._stats),
                "total_allowed": allowed,
                "total_blocked": blocked,
                "max_entries": self.policy.cors_stats_max_entries,
            },
            "development_mode": self.policy.is_development,
            "checked_at": datetime.now(timezone.utc).isoformat(),
        }


def _with_origins(tenant: Any, origins: list[str]) -> Any:
    return replace(tenant, allowed_origins=origins)
