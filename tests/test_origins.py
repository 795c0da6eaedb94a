"""Tests for supportdesk.multitenancy.origins - per-tenant CORS allow-lists."""

from __future__ import annotations

import pytest

from supportdesk.multitenancy.origins import (
    InvalidOriginPattern,
    ScopedOriginPolicy,
    match_origin,
    pattern_matches,
    suggest_pattern,
    validate_pattern,
)
from supportdesk.multitenancy.registry import MemoryTenantStore, TenantRegistry
from supportdesk.multitenancy.tenant import Tenant

from tests.conftest import make_policy, make_tenants


def _policy(tenants: list[Tenant] | None = None, **overrides) -> ScopedOriginPolicy:
    registry = TenantRegistry(MemoryTenantStore(tenants if tenants is not None else make_tenants()))
    return ScopedOriginPolicy(registry, make_policy(**overrides))


# ===========================================================================
# Pattern syntax
# ===========================================================================

class TestValidatePattern:
    @pytest.mark.parametrize("pattern", [
        "*",
        "https://app.example.com",
        "http://localhost:3000",
        "*.example.com",
        "http://localhost:*",
        r"/^https://[a-z]+\.io$/",
    ])
    def test_valid(self, pattern):
        assert validate_pattern(pattern)

    @pytest.mark.parametrize("pattern", [
        "",
        "   ",
        "app.example.com",
        "ftp://files.example.com",
        "https://app.example.com/path",
        "*.com",
        "/[unclosed/",
    ])
    def test_invalid(self, pattern):
        assert not validate_pattern(pattern)


class TestPatternMatches:
    def test_exact_is_case_insensitive(self):
        assert pattern_matches("https://App.Example.com", "https://app.example.com")
        assert pattern_matches("https://app.example.com/", "https://app.example.com")
        assert not pattern_matches("http://app.example.com", "https://app.example.com")

    def test_wildcard_subdomain(self):
        """A subdomain matches; the apex and look-alike hosts do not."""
        assert pattern_matches("https://eu.corp.example", "*.corp.example")
        assert pattern_matches("http://a.b.corp.example:8080", "*.corp.example")
        assert not pattern_matches("https://corp.example", "*.corp.example")
        assert not pattern_matches("https://evilcorp.example", "*.corp.example")

    def test_port_wildcard(self):
        assert pattern_matches("http://localhost:5173", "http://localhost:*")
        assert pattern_matches("http://localhost", "http://localhost:*")
        assert not pattern_matches("http://localhost.evil.com", "http://localhost:*")
        assert not pattern_matches("https://localhost:5173", "http://localhost:*")

    def test_regex_must_match_whole_origin(self):
        pattern = r"/https://[a-z]+\.io/"
        assert pattern_matches("https://acme.io", pattern)
        assert not pattern_matches("https://acme.io.evil.com", pattern)

    def test_star(self):
        assert pattern_matches("https://anything.test", "*")

    def test_first_match_wins(self):
        patterns = ["https://app.example.com", "*.example.com", "*"]
        assert match_origin("https://app.example.com", patterns) == "https://app.example.com"
        assert match_origin("https://eu.example.com", patterns) == "*.example.com"
        assert match_origin("https://x.test", patterns[:2]) is None


class TestSuggestPattern:
    def test_localhost_any_port(self):
        assert suggest_pattern("http://localhost:5173") == "http://localhost:*"

    def test_parent_domain(self):
        assert suggest_pattern("https://eu.app.corp.example") == "*.corp.example"

    def test_apex_kept(self):
        assert suggest_pattern("https://corp.example") == "https://corp.example"


# ===========================================================================
# Policy
# ===========================================================================

class TestIsAllowed:
    @pytest.mark.asyncio
    async def test_no_origin_header(self):
        decision = await _policy().is_allowed(None, "t1")
        assert decision.allowed
        assert decision.reason == "no-origin"

    @pytest.mark.asyncio
    async def test_allow_list(self):
        decision = await _policy().is_allowed("https://app.example.com", "t1")
        assert decision.allowed
        assert decision.reason == "allow-list"
        assert decision.pattern == "https://app.example.com"

    @pytest.mark.asyncio
    async def test_custom_domain_implicit(self):
        policy = _policy()
        assert (await policy.is_allowed("https://support.acme.com", "t1")).allowed
        assert (await policy.is_allowed("http://support.acme.com", "t1")).allowed

    @pytest.mark.asyncio
    async def test_other_tenant_origin_blocked(self):
        decision = await _policy().is_allowed("https://app.example.com", "t2")
        assert not decision.allowed
        assert decision.reason == "not-in-allow-list"

    @pytest.mark.asyncio
    async def test_no_tenant(self):
        decision = await _policy().is_allowed("https://app.example.com", None)
        assert decision == (False, "no-tenant", None)

    @pytest.mark.asyncio
    async def test_wildcard_tenant(self):
        tenants = [Tenant.create("t9", "corp", "Corp", allowed_origins=["*.corp.example"])]
        policy = _policy(tenants)
        assert (await policy.is_allowed("https://eu.corp.example", "t9")).allowed
        assert not (await policy.is_allowed("https://corp.example", "t9")).allowed
        assert not (await policy.is_allowed("https://evilcorp.example", "t9")).allowed
        assert not (await policy.is_allowed("https://corp.example.evil", "t9")).allowed

    @pytest.mark.asyncio
    async def test_development_origins(self):
        dev = _policy(environment="development", cors_development_origins=("http://localhost:3000",))
        decision = await dev.is_allowed("http://localhost:3000", None)
        assert decision.reason == "development-origin"

        prod = _policy(environment="production", cors_development_origins=("http://localhost:3000",))
        assert not (await prod.is_allowed("http://localhost:3000", "t1")).allowed

    @pytest.mark.asyncio
    async def test_unknown_tenant_has_empty_list(self):
        assert await _policy().allowed_origins("missing") == []


class TestAllowListWrites:
    @pytest.mark.asyncio
    async def test_add_is_visible_immediately(self):
        policy = _policy()
        assert not (await policy.is_allowed("https://eu.globex.io", "t2")).allowed
        assert await policy.add_allowed("t2", " *.globex.io ") == ["*.globex.io"]
        assert (await policy.is_allowed("https://eu.globex.io", "t2")).allowed

    @pytest.mark.asyncio
    async def test_add_duplicate_is_noop(self):
        policy = _policy()
        origins = await policy.add_allowed("t1", "https://app.example.com")
        assert origins == ["https://app.example.com"]

    @pytest.mark.asyncio
    async def test_add_invalid(self):
        with pytest.raises(InvalidOriginPattern):
            await _policy().add_allowed("t1", "not an origin")

    @pytest.mark.asyncio
    async def test_remove(self):
        policy = _policy()
        assert (await policy.is_allowed("https://app.example.com", "t1")).allowed
        assert await policy.remove_allowed("t1", "https://app.example.com") == []
        assert not (await policy.is_allowed("https://app.example.com", "t1")).allowed

    @pytest.mark.asyncio
    async def test_set_validates_everything_first(self):
        policy = _policy()
        with pytest.raises(InvalidOriginPattern):
            await policy.set_allowed("t1", ["https://ok.example.com", "bad"])
        assert await policy.allowed_origins("t1") == [
            "https://app.example.com",
            "https://support.acme.com",
            "http://support.acme.com",
        ]

        result = await policy.set_allowed("t1", ["*", " * ", "http://localhost:*"])
        assert result == ["*", "http://localhost:*"]


# ===========================================================================
# Statistics
# ===========================================================================

class TestStats:
    @pytest.mark.asyncio
    async def test_counters(self):
        policy = _policy()
        for _ in range(2):
            await policy.is_allowed("https://app.example.com", "t1")
        await policy.is_allowed("https://evil.test", "t1")
        await policy.is_allowed("https://evil.test", "t2")

        stats = policy.stats("t1")
        assert stats["allowed"] == [{"tenant_id": "t1", "origin": "https://app.example.com", "count": 2}]
        assert stats["blocked"] == [{"tenant_id": "t1", "origin": "https://evil.test", "count": 1}]
        assert stats["requests_by_tenant"] == {"t1": 3}
        assert policy.stats()["requests_by_tenant"] == {"t1": 3, "t2": 1}

    @pytest.mark.asyncio
    async def test_bounded(self):
        policy = _policy(cors_stats_max_entries=2)
        for origin in ("https://a.test", "https://b.test", "https://c.test"):
            await policy.is_allowed(origin, "t1")
        blocked = {e["origin"] for e in policy.stats()["blocked"]}
        assert blocked == {"https://b.test", "https://c.test"}

    @pytest.mark.asyncio
    async def test_clear_one_tenant(self):
        policy = _policy()
        await policy.is_allowed("https://evil.test", "t1")
        await policy.is_allowed("https://evil.test", "t2")
        policy.clear_stats("t1")
        assert policy.stats()["requests_by_tenant"] == {"t2": 1}
        policy.clear_stats()
        assert policy.health()["stats"]["tracked"] == 0

    @pytest.mark.asyncio
    async def test_suggest_groups_by_parent_domain(self):
        policy = _policy()
        for _ in range(3):
            await policy.is_allowed("https://a.corp.example", "t1")
        for _ in range(2):
            await policy.is_allowed("https://b.corp.example", "t1")
        await policy.is_allowed("https://once.test", "t1")

        suggestions = policy.suggest("t1")
        assert [s.to_dict() for s in suggestions] == [{
            "pattern": "*.corp.example",
            "origins": ["https://a.corp.example", "https://b.corp.example"],
            "blocked_count": 5,
        }]
        assert policy.suggest("t2") == []

    @pytest.mark.asyncio
    async def test_health(self):
        policy = _policy()
        await policy.is_allowed("https://app.example.com", "t1")
        health = policy.health()
        assert health["status"] == "healthy"
        assert health["stats"]["total_allowed"] == 1
        assert health["development_mode"] is False
