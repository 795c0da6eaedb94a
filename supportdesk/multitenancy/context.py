"""
Tenant context management for SupportDesk.

The current tenant is held in a ``contextvars.ContextVar`` so that every
request, socket event handler and background job sees its own frame.
Tasks spawned inside a frame (``asyncio.create_task``, ``gather``) copy
the context at launch time: they inherit the frame but cannot change
what their parent sees.

A frame carries the tenant id plus two flags:
    - ``bypass``: scope is suspended for the enclosed call (audited)
    - ``is_master``: the caller is a master identity

Example:
    from supportdesk.multitenancy.context import current, with_tenant

    async with with_tenant("t1"):
        assert current().tenant_id == "t1"

    dispose = enter("t1")
    try:
        ...
    finally:
        dispose()
"""

from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar
import asyncio
import functools
import logging
import os
import sys

from .errors import TenantRequired

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContextFrame:
    """One entry of the tenant context.

    Attributes:
        tenant_id: Tenant the enclosed operation is scoped to.
        bypass: Scope filtering is suspended.
        is_master: The operation runs for a master identity.
        request_id: Correlation id for audit.
        subject_id: Authenticated subject, if any.
        resolved_by: Resolution source that produced the tenant.
    """

    tenant_id: str | None = None
    bypass: bool = False
    is_master: bool = False
    request_id: str | None = None
    subject_id: str | None = None
    resolved_by: str | None = None

    @property
    def is_unscoped(self) -> bool:
        return self.tenant_id is None and not self.bypass

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "bypass": self.bypass,
            "is_master": self.is_master,
            "request_id": self.request_id,
            "subject_id": self.subject_id,
            "resolved_by": self.resolved_by,
        }


# The frame seen when nothing has been entered
UNSCOPED = ContextFrame()

_current_frame: ContextVar[ContextFrame] = ContextVar(
    "supportdesk_tenant_frame", default=UNSCOPED
)


def current() -> ContextFrame:
    """Return the active frame, or ``UNSCOPED``."""
    return _current_frame.get()


def current_tenant_id() -> str | None:
    return _current_frame.get().tenant_id


def require_tenant() -> str:
    """Get the current tenant id or raise.

    Raises:
        TenantRequired: If no tenant is set in context.
    """
    tenant_id = current_tenant_id()
    if tenant_id is None:
        raise TenantRequired(
            details={"hint": "Identify the tenant via token, x-tenant-id or x-tenant-key"}
        )
    return tenant_id


# ---------------------------------------------------------------------------
# Bypass auditing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BypassEvent:
    """Emitted every time scope bypass is entered."""

    call_site: str
    previous_tenant_id: str | None
    subject_id: str | None
    request_id: str | None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


_bypass_listeners: list[Callable[[BypassEvent], None]] = []

_THIS_FILE = os.path.normcase(__file__)


def on_bypass(listener: Callable[[BypassEvent], None]) -> Callable[[], None]:
    """Subscribe to bypass events. Returns an unsubscribe callable."""
    _bypass_listeners.append(listener)

    def _unsubscribe() -> None:
        if listener in _bypass_listeners:
            _bypass_listeners.remove(listener)

    return _unsubscribe


def _call_site() -> str:
    """First stack frame outside this module and contextlib/functools."""
    frame = sys._getframe(1)
    while frame is not None:
        filename = os.path.normcase(frame.f_code.co_filename)
        if filename != _THIS_FILE and "contextlib" not in filename and "functools" not in filename:
            return f"{frame.f_code.co_filename}:{frame.f_lineno} in {frame.f_code.co_name}"
        frame = frame.f_back
    return "<unknown>"


def _audit_bypass(previous: ContextFrame, frame: ContextFrame) -> None:
    event = BypassEvent(
        call_site=_call_site(),
        previous_tenant_id=previous.tenant_id,
        subject_id=frame.subject_id or previous.subject_id,
        request_id=frame.request_id or previous.request_id,
    )
    logger.info(
        f"Tenant scope bypass entered at {event.call_site} "
        f"(previous tenant: {event.previous_tenant_id})"
    )
    for listener in list(_bypass_listeners):
        listener(event)


# ---------------------------------------------------------------------------
# Enter / dispose
# ---------------------------------------------------------------------------


class Disposer:
    """Restores the frame that was active before ``enter``.

    Must be called exactly once, from the same context that entered.
    """

    __slots__ = ("_token", "_frame", "_disposed")

    def __init__(self, token: Token[ContextFrame], frame: ContextFrame):
        self._token = token
        self._frame = frame
        self._disposed = False

    @property
    def frame(self) -> ContextFrame:
        return self._frame

    @property
    def disposed(self) -> bool:
        return self._disposed

    def __call__(self) -> None:
        if self._disposed:
            raise RuntimeError("Tenant context disposer called twice")
        self._disposed = True
        _current_frame.reset(self._token)
        logger.debug(f"Exited tenant context: {self._frame.tenant_id}")


def enter(
    tenant_id: str | None = None,
    bypass: bool = False,
    is_master: bool = False,
    *,
    request_id: str | None = None,
    subject_id: str | None = None,
    resolved_by: str | None = None,
) -> Disposer:
    """Push a frame and return its disposer.

    Args:
        tenant_id: Tenant to scope to, or None.
        bypass: Suspend scope filtering (audited).
        is_master: Mark the frame as belonging to a master identity.

    Returns:
        A ``Disposer`` that restores the previous frame.
    """
    previous = _current_frame.get()
    frame = ContextFrame(
        tenant_id=tenant_id,
        bypass=bypass,
        is_master=is_master,
        request_id=request_id or previous.request_id,
        subject_id=subject_id or previous.subject_id,
        resolved_by=resolved_by,
    )
    token = _current_frame.set(frame)
    if bypass:
        _audit_bypass(previous, frame)
    logger.debug(f"Entered tenant context: {tenant_id} bypass={bypass} master={is_master}")
    return Disposer(token, frame)


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., Any])


class TenantContext:
    """Context manager (sync and async) and decorator for a scoped block.

    Each ``with`` entry gets its own disposer, so nested entries of one
    instance restore in LIFO order.

    Example:
        with TenantContext("t1"):
            ...

        async with TenantContext(bypass=True):
            await gateway.find("conversations")

        @TenantContext("t1")
        async def job():
            ...
    """

    def __init__(
        self,
        tenant_id: str | None = None,
        bypass: bool = False,
        is_master: bool = False,
        **audit: str | None,
    ):
        self.tenant_id = tenant_id
        self.bypass = bypass
        self.is_master = is_master
        self._audit = audit
        self._disposers: list[Disposer] = []

    def __enter__(self) -> ContextFrame:
        disposer = enter(self.tenant_id, self.bypass, self.is_master, **self._audit)
        self._disposers.append(disposer)
        return disposer.frame

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: Any | None) -> None:
        self._disposers.pop()()

    async def __aenter__(self) -> ContextFrame:
        return self.__enter__()

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: Any | None) -> None:
        self.__exit__(exc_type, exc_val, exc_tb)

    def __call__(self, func: F) -> F:
        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                with TenantContext(self.tenant_id, self.bypass, self.is_master, **self._audit):
                    return await func(*args, **kwargs)
            return async_wrapper  # type: ignore
        else:
            @functools.wraps(func)
            def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
                with TenantContext(self.tenant_id, self.bypass, self.is_master, **self._audit):
                    return func(*args, **kwargs)
            return sync_wrapper  # type: ignore


def with_tenant(tenant_id: str, is_master: bool = False) -> TenantContext:
    """Scope the enclosed block to ``tenant_id``."""
    if not tenant_id:
        raise ValueError("with_tenant requires a tenant id")
    return TenantContext(tenant_id, is_master=is_master)


def without_tenant() -> TenantContext:
    """Suspend tenant scope for the enclosed block (audited).

    The master flag of the surrounding frame is preserved.
    """
    return TenantContext(None, bypass=True, is_master=current().is_master)


def run_with_tenant(tenant_id: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Call ``func`` inside a tenant scope.

    Example:
        result = run_with_tenant("t1", lambda: current().tenant_id)
        assert result == "t1"
    """
    with with_tenant(tenant_id):
        return func(*args, **kwargs)


def run_without_tenant(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    with without_tenant():
        return func(*args, **kwargs)


async def run_with_tenant_async(tenant_id: str, coro: Any) -> Any:
    """Await a coroutine inside a tenant scope.

    Example:
        result = await run_with_tenant_async("t1", fetch_data())
    """
    async with with_tenant(tenant_id):
        return await coro


async def run_without_tenant_async(coro: Any) -> Any:
    async with without_tenant():
        return await coro


def tenant_required(func: F) -> F:
    """Decorator that raises ``TenantRequired`` when no tenant is in scope."""
    if asyncio.iscoroutinefunction(func):
        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            require_tenant()
            return await func(*args, **kwargs)
        return async_wrapper  # type: ignore
    else:
        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            require_tenant()
            return func(*args, **kwargs)
        return sync_wrapper  # type: ignore
