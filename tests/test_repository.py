"""Tests for the repository backends (memory and SQLAlchemy on aiosqlite)."""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from supportdesk.db import Base
from supportdesk.multitenancy.context import with_tenant
from supportdesk.multitenancy.errors import CrossTenantDenied
from supportdesk.multitenancy.identity import Role, UserRecord
from supportdesk.multitenancy.kernel import TenantKernel
from supportdesk.multitenancy.repository import (
    DuplicateKeyError,
    MemoryRepository,
    QueryError,
    apply_update,
    matches,
    normalize_update,
    run_pipeline,
    sort_documents,
)
from supportdesk.multitenancy.sql import (
    SqlRepository,
    SqlTenantStore,
    SqlUserDirectory,
    compile_filter,
)
from supportdesk.multitenancy.tenant import Plan, Tenant

from tests.conftest import make_policy


# ===========================================================================
# Query helpers
# ===========================================================================

class TestMatches:
    DOC = {"id": "c1", "status": "open", "priority": 3, "tags": ["vip", "eu"], "meta": {"lang": "de"}}

    def test_equality_and_dotted_paths(self):
        assert matches(self.DOC, {"status": "open", "meta.lang": "de"})
        assert not matches(self.DOC, {"meta.lang": "en"})

    def test_array_membership(self):
        assert matches(self.DOC, {"tags": "vip"})

    def test_operators(self):
        assert matches(self.DOC, {"priority": {"$gt": 2, "$lte": 3}})
        assert matches(self.DOC, {"status": {"$in": ["open", "pending"]}})
        assert matches(self.DOC, {"status": {"$nin": ["closed"]}})
        assert matches(self.DOC, {"assignee": {"$exists": False}})
        assert matches(self.DOC, {"assignee": None})
        assert not matches(self.DOC, {"priority": {"$lt": "x"}})

    def test_boolean_combinators(self):
        assert matches(self.DOC, {"$or": [{"status": "closed"}, {"priority": 3}]})
        assert not matches(self.DOC, {"$and": [{"status": "open"}, {"priority": 1}]})

    def test_unsupported_operator(self):
        with pytest.raises(QueryError):
            matches(self.DOC, {"status": {"$regex": "o.*"}})
        with pytest.raises(QueryError):
            matches(self.DOC, {"$where": "1"})


class TestUpdates:
    def test_plain_mapping_is_set(self):
        assert normalize_update({"status": "closed"}) == {"$set": {"status": "closed"}}

    def test_mixed_update_rejected(self):
        with pytest.raises(QueryError):
            normalize_update({"$set": {"a": 1}, "b": 2})

    def test_unknown_operator(self):
        with pytest.raises(QueryError):
            normalize_update({"$rename": {"a": "b"}})

    def test_apply_operators(self):
        doc = {"n": 1, "tags": ["a"], "meta": {"x": 1}}
        apply_update(doc, {
            "$inc": {"n": 2},
            "$push": {"tags": {"$each": ["b", "c"]}},
            "$unset": {"meta.x": ""},
            "$set": {"meta.y": 5},
        })
        assert doc == {"n": 3, "tags": ["a", "b", "c"], "meta": {"y": 5}}


class TestPipeline:
    DOCS = [
        {"id": "1", "status": "open", "n": 2},
        {"id": "2", "status": "closed", "n": 5},
        {"id": "3", "status": "open", "n": 1},
    ]

    def test_sort_missing_first(self):
        docs = [{"id": "a", "n": 2}, {"id": "b"}, {"id": "c", "n": 1}]
        assert [d["id"] for d in sort_documents(docs, [("n", 1)])] == ["b", "c", "a"]
        assert [d["id"] for d in sort_documents(docs, {"n": -1})] == ["a", "c", "b"]

    def test_stages(self):
        rows = run_pipeline(self.DOCS, [
            {"$match": {"status": "open"}},
            {"$sort": {"n": -1}},
            {"$project": {"n": 1}},
            {"$limit": 1},
        ])
        assert rows == [{"n": 2, "id": "1"}]

    def test_group_sum(self):
        rows = run_pipeline(self.DOCS, [{"$group": {"_id": "$status", "total": {"$sum": "$n"}}}])
        assert sorted((r["_id"], r["total"]) for r in rows) == [("closed", 5), ("open", 3)]

    def test_bad_stage(self):
        with pytest.raises(QueryError):
            run_pipeline(self.DOCS, [{"$lookup": {}}])
        with pytest.raises(QueryError):
            run_pipeline(self.DOCS, [{"$match": {}, "$limit": 1}])


# ===========================================================================
# Memory repository
# ===========================================================================

class TestMemoryRepository:
    @pytest.mark.asyncio
    async def test_insert_assigns_id_and_copies(self):
        repo = MemoryRepository()
        record = {"subject": "Hi", "tags": ["a"]}
        stored = await repo.insert("conversations", record)
        record["tags"].append("mutated")
        assert len(stored["id"]) == 32
        assert (await repo.find("conversations", {}))[0]["tags"] == ["a"]

    @pytest.mark.asyncio
    async def test_duplicate_id_and_unique(self):
        repo = MemoryRepository(unique={"contacts": [("tenant_id", "email")]})
        await repo.insert("contacts", {"id": "k1", "tenant_id": "t1", "email": "a@x"})
        with pytest.raises(DuplicateKeyError):
            await repo.insert("contacts", {"id": "k1", "tenant_id": "t2", "email": "b@x"})
        with pytest.raises(DuplicateKeyError):
            await repo.insert("contacts", {"tenant_id": "t1", "email": "a@x"})
        await repo.insert("contacts", {"tenant_id": "t2", "email": "a@x"})

    @pytest.mark.asyncio
    async def test_update_one_or_many(self):
        repo = MemoryRepository()
        for i in range(3):
            await repo.insert("conversations", {"id": f"c{i}", "status": "open"})
        assert await repo.update("conversations", {"status": "open"}, {"status": "closed"}) == 1
        assert await repo.update("conversations", {"status": "open"}, {"status": "closed"}, many=True) == 2
        assert await repo.count("conversations", {"status": "closed"}) == 3

    @pytest.mark.asyncio
    async def test_find_paging(self):
        repo = MemoryRepository()
        for i in range(5):
            await repo.insert("messages", {"id": f"m{i}", "seq": i})
        rows = await repo.find("messages", {}, sort=[("seq", -1)], skip=1, limit=2)
        assert [r["seq"] for r in rows] == [3, 2]


# ===========================================================================
# SQLAlchemy backends
# ===========================================================================

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'kernel.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


class TestCompileFilter:
    def test_unknown_column(self):
        repo_table = Base.metadata.tables["conversations"]
        with pytest.raises(QueryError):
            compile_filter(repo_table, {"nope": 1})
        with pytest.raises(QueryError):
            compile_filter(repo_table, {"meta.lang": "de"})

    def test_compiles_operators(self):
        table = Base.metadata.tables["conversations"]
        clause = compile_filter(table, {"tenant_id": "t1", "priority": {"$gte": 1}, "$or": [{"status": "open"}]})
        sql = str(clause.compile(compile_kwargs={"literal_binds": True}))
        assert "conversations.tenant_id = 't1'" in sql
        assert "conversations.priority >= 1" in sql


class TestSqlRepository:
    @pytest.mark.asyncio
    async def test_insert_applies_column_defaults(self, session_factory):
        repo = SqlRepository(session_factory)
        row = await repo.insert("conversations", {"tenant_id": "t1", "subject": "Hi"})
        assert row["status"] == "open"
        assert row["message_count"] == 0
        assert row["id"]

    @pytest.mark.asyncio
    async def test_find_count_update_delete(self, session_factory):
        repo = SqlRepository(session_factory)
        for i, status in enumerate(["open", "open", "closed"]):
            await repo.insert("conversations", {"id": f"c{i}", "tenant_id": "t1", "status": status, "priority": i})

        rows = await repo.find("conversations", {"status": "open"}, sort=[("priority", -1)], limit=1)
        assert [r["id"] for r in rows] == ["c1"]
        assert await repo.count("conversations", {"status": {"$ne": "closed"}}) == 2

        assert await repo.update("conversations", {"status": "open"}, {"$inc": {"message_count": 2}}) == 1
        assert await repo.update("conversations", {"status": "open"}, {"status": "pending"}, many=True) == 2
        assert await repo.update("conversations", {"id": "missing"}, {"status": "x"}) == 0

        assert await repo.delete("conversations", {"status": "pending"}) == 1
        assert await repo.count("conversations", {}) == 2

    @pytest.mark.asyncio
    async def test_unique_violation(self, session_factory):
        repo = SqlRepository(session_factory)
        await repo.insert("contacts", {"tenant_id": "t1", "email": "a@x"})
        with pytest.raises(DuplicateKeyError):
            await repo.insert("contacts", {"tenant_id": "t1", "email": "a@x"})
        await repo.insert("contacts", {"tenant_id": "t2", "email": "a@x"})

    @pytest.mark.asyncio
    async def test_push_not_supported(self, session_factory):
        repo = SqlRepository(session_factory)
        with pytest.raises(QueryError):
            await repo.update("conversations", {}, {"$push": {"tags": "x"}})

    @pytest.mark.asyncio
    async def test_aggregate(self, session_factory):
        repo = SqlRepository(session_factory)
        for status in ("open", "open", "closed"):
            await repo.insert("conversations", {"tenant_id": "t1", "status": status})
        await repo.insert("conversations", {"tenant_id": "t2", "status": "open"})
        rows = await repo.aggregate("conversations", [
            {"$match": {"tenant_id": "t1"}},
            {"$group": {"_id": "$status", "n": {"$sum": 1}}},
        ])
        assert sorted((r["_id"], r["n"]) for r in rows) == [("closed", 1), ("open", 2)]


class TestSqlTenantStore:
    @pytest.mark.asyncio
    async def test_save_and_lookup(self, session_factory):
        store = SqlTenantStore(session_factory)
        await store.save(Tenant.create("t1", "acme", "Acme", plan=Plan.STARTER, custom_domain="support.acme.com"))

        loaded = await store.get("t1")
        assert loaded.key == "acme"
        assert loaded.plan is Plan.STARTER
        assert loaded.enabled_modules == {"chat"}
        assert loaded.created_at.tzinfo is not None
        assert (await store.find_by_alias("domain", "support.acme.com")).id == "t1"
        assert (await store.find_by_alias("slug", "acme")).id == "t1"
        assert await store.find_by_alias("key", "nobody") is None

    @pytest.mark.asyncio
    async def test_save_updates_existing(self, session_factory):
        store = SqlTenantStore(session_factory)
        tenant = Tenant.create("t1", "acme", "Acme")
        await store.save(tenant)
        await store.save(tenant.with_usage("users", 2))
        assert (await store.get("t1")).usage_for("users") == 2

    @pytest.mark.asyncio
    async def test_alias_clash(self, session_factory):
        store = SqlTenantStore(session_factory)
        await store.save(Tenant.create("t1", "acme", "Acme"))
        with pytest.raises(ValueError):
            await store.save(Tenant.create("t2", "acme", "Other"))

    @pytest.mark.asyncio
    async def test_list_sorted(self, session_factory):
        store = SqlTenantStore(session_factory)
        await store.save(Tenant.create("t2", "zeta", "Zeta"))
        await store.save(Tenant.create("t1", "alpha", "Alpha"))
        assert [t.key for t in await store.list()] == ["alpha", "zeta"]

    @pytest.mark.asyncio
    async def test_unknown_alias_kind(self, session_factory):
        with pytest.raises(ValueError):
            await SqlTenantStore(session_factory).find_by_alias("name", "Acme")


class TestSqlUserDirectory:
    @pytest.mark.asyncio
    async def test_add_and_find(self, session_factory):
        users = SqlUserDirectory(session_factory)
        await users.add(UserRecord("u1", Role.AGENT, "t1", email="Agent@Acme.test"))
        await users.add(UserRecord("m1", Role.MASTER, None, email="root@sd.test"))

        assert (await users.get_user("u1")).role is Role.AGENT
        assert await users.get_user("nobody") is None
        assert (await users.find_by_email("agent@acme.test", "t1")).id == "u1"
        assert await users.find_by_email("agent@acme.test", "t2") is None
        assert (await users.find_by_email("root@sd.test", "t2")).id == "m1"


class TestSqlKernel:
    @pytest.mark.asyncio
    async def test_gateway_over_sql(self, session_factory):
        kernel = TenantKernel(
            make_policy(),
            tenants=SqlTenantStore(session_factory),
            users=SqlUserDirectory(session_factory),
            repository=SqlRepository(session_factory),
        )
        try:
            gateway = kernel.gateway
            async with with_tenant("t1"):
                await gateway.create("conversations", {"subject": "Ours"})
                with pytest.raises(CrossTenantDenied):
                    await gateway.create("conversations", {"subject": "Theirs", "tenant_id": "t2"})
            async with with_tenant("t2"):
                await gateway.create("conversations", {"subject": "Theirs"})
                rows = await gateway.find("conversations")
            assert [r["subject"] for r in rows] == ["Theirs"]
            assert rows[0]["tenant_id"] == "t2"
        finally:
            kernel.close()
