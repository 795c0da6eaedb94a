"""Tests for supportdesk.multitenancy.context - task-local tenant frames.

Covers:
- enter / dispose semantics and frame restoration
- with_tenant / without_tenant helpers and decorators
- bypass auditing
- isolation between concurrently running tasks
"""

from __future__ import annotations

import asyncio

import pytest

from supportdesk.multitenancy.context import (
    UNSCOPED,
    BypassEvent,
    TenantContext,
    current,
    current_tenant_id,
    enter,
    on_bypass,
    require_tenant,
    run_with_tenant,
    run_with_tenant_async,
    run_without_tenant,
    tenant_required,
    with_tenant,
    without_tenant,
)
from supportdesk.multitenancy.errors import TenantRequired


# ===========================================================================
# enter / dispose
# ===========================================================================

class TestEnterDispose:
    """Tests for the low-level enter/dispose pair."""

    def test_unscoped_by_default(self):
        """Outside any frame the sentinel is returned."""
        assert current() is UNSCOPED
        assert current_tenant_id() is None
        assert current().is_unscoped

    def test_enter_then_dispose_restores(self):
        dispose = enter("t1")
        try:
            assert current().tenant_id == "t1"
            assert not current().bypass
        finally:
            dispose()
        assert current() is UNSCOPED

    def test_nested_frames_restore_in_order(self):
        outer = enter("t1")
        inner = enter("t2", is_master=True)
        assert current().tenant_id == "t2"
        assert current().is_master
        inner()
        assert current().tenant_id == "t1"
        assert not current().is_master
        outer()
        assert current_tenant_id() is None

    def test_dispose_twice_raises(self):
        dispose = enter("t1")
        dispose()
        assert dispose.disposed
        with pytest.raises(RuntimeError):
            dispose()

    def test_audit_fields_inherited(self):
        """request_id and subject_id carry into nested frames."""
        outer = enter("t1", request_id="req-1", subject_id="u1")
        inner = enter("t1", resolved_by="header-id")
        try:
            frame = current()
            assert frame.request_id == "req-1"
            assert frame.subject_id == "u1"
            assert frame.resolved_by == "header-id"
        finally:
            inner()
            outer()

    def test_frame_to_dict(self):
        dispose = enter("t1", request_id="r")
        try:
            data = current().to_dict()
        finally:
            dispose()
        assert data["tenant_id"] == "t1"
        assert data["bypass"] is False
        assert data["request_id"] == "r"


# ===========================================================================
# Helpers
# ===========================================================================

class TestHelpers:
    """Tests for with_tenant, without_tenant and run_* helpers."""

    def test_with_tenant_sync(self):
        with with_tenant("t1") as frame:
            assert frame.tenant_id == "t1"
            assert current_tenant_id() == "t1"
        assert current_tenant_id() is None

    def test_with_tenant_rejects_empty_id(self):
        with pytest.raises(ValueError):
            with_tenant("")

    def test_without_tenant_keeps_master_flag(self):
        with with_tenant("t1", is_master=True):
            with without_tenant() as frame:
                assert frame.bypass
                assert frame.tenant_id is None
                assert frame.is_master
            assert current().tenant_id == "t1"

    def test_context_restored_after_exception(self):
        with pytest.raises(KeyError):
            with with_tenant("t1"):
                raise KeyError("boom")
        assert current() is UNSCOPED

    def test_same_instance_nested(self):
        ctx = TenantContext("t1")
        with ctx:
            with ctx:
                assert current_tenant_id() == "t1"
            assert current_tenant_id() == "t1"
        assert current_tenant_id() is None

    def test_run_with_tenant(self):
        assert run_with_tenant("t1", lambda: current().tenant_id) == "t1"

    def test_run_without_tenant(self):
        assert run_without_tenant(lambda: current().bypass) is True

    @pytest.mark.asyncio
    async def test_run_with_tenant_async(self):
        async def fetch() -> str | None:
            await asyncio.sleep(0)
            return current_tenant_id()

        assert await run_with_tenant_async("t2", fetch()) == "t2"

    @pytest.mark.asyncio
    async def test_async_with(self):
        async with with_tenant("t1"):
            assert current_tenant_id() == "t1"
        assert current_tenant_id() is None

    @pytest.mark.asyncio
    async def test_decorator_on_coroutine(self):
        @TenantContext("t3")
        async def job() -> str | None:
            return current_tenant_id()

        assert await job() == "t3"
        assert current_tenant_id() is None

    def test_decorator_on_function(self):
        @TenantContext("t3")
        def job() -> str | None:
            return current_tenant_id()

        assert job() == "t3"


class TestRequireTenant:
    """Tests for require_tenant and the tenant_required decorator."""

    def test_require_tenant_unscoped(self):
        with pytest.raises(TenantRequired) as exc:
            require_tenant()
        assert exc.value.status_code == 400

    def test_require_tenant_scoped(self):
        with with_tenant("t1"):
            assert require_tenant() == "t1"

    def test_decorator_sync(self):
        @tenant_required
        def op() -> str:
            return "ok"

        with pytest.raises(TenantRequired):
            op()
        with with_tenant("t1"):
            assert op() == "ok"

    @pytest.mark.asyncio
    async def test_decorator_async(self):
        @tenant_required
        async def op() -> str:
            return "ok"

        with pytest.raises(TenantRequired):
            await op()
        async with with_tenant("t1"):
            assert await op() == "ok"


# ===========================================================================
# Bypass auditing
# ===========================================================================

class TestBypassAudit:
    """Every bypass entry is reported to listeners with its call site."""

    def test_listener_receives_event(self):
        events: list[BypassEvent] = []
        unsubscribe = on_bypass(events.append)
        try:
            with with_tenant("t1"):
                with without_tenant():
                    pass
        finally:
            unsubscribe()

        assert len(events) == 1
        assert events[0].previous_tenant_id == "t1"
        assert "test_context.py" in events[0].call_site

    def test_unsubscribe_stops_events(self):
        events: list[BypassEvent] = []
        unsubscribe = on_bypass(events.append)
        unsubscribe()
        with without_tenant():
            pass
        assert events == []

    def test_plain_frames_not_audited(self):
        events: list[BypassEvent] = []
        unsubscribe = on_bypass(events.append)
        try:
            with with_tenant("t1"):
                pass
        finally:
            unsubscribe()
        assert events == []


# ===========================================================================
# Task isolation
# ===========================================================================

class TestTaskIsolation:
    """Concurrent tasks never observe each other's frames."""

    @pytest.mark.asyncio
    async def test_concurrent_tasks_see_own_tenant(self):
        async def worker(tenant_id: str) -> list[str | None]:
            seen = []
            async with with_tenant(tenant_id):
                for _ in range(3):
                    await asyncio.sleep(0)
                    seen.append(current_tenant_id())
            return seen

        results = await asyncio.gather(worker("t1"), worker("t2"), worker("t3"))
        assert results == [["t1"] * 3, ["t2"] * 3, ["t3"] * 3]

    @pytest.mark.asyncio
    async def test_child_task_inherits_frame(self):
        async def peek() -> str | None:
            return current_tenant_id()

        async with with_tenant("t1"):
            assert await asyncio.create_task(peek()) == "t1"

    @pytest.mark.asyncio
    async def test_child_task_cannot_change_parent(self):
        async def rebind() -> str | None:
            enter("t2")
            return current_tenant_id()

        async with with_tenant("t1"):
            assert await asyncio.create_task(rebind()) == "t2"
            assert current_tenant_id() == "t1"
