"""
Tenant-isolated realtime fan-out.

A connection is authenticated and resolved once at handshake with the same
``Authenticator`` and ``TenantResolver`` the HTTP middleware uses, then
bound to one tenant (or to ``master``) for its lifetime.

Groups:
    tenant:{t}                   every connection of tenant t
    tenant:{t}:agents|clients    role bucket within tenant t
    tenant:{t}:user:{s}          one subject within tenant t
    master                       master connections without a tenant

Each connection owns a bounded outbound queue drained by a sender task
(frames to a full queue are dropped and counted) and an inbound queue
drained in arrival order by a worker task that runs every handler inside
the connection's tenant context.

Example:
    hub = ScopedRealtimeHub(authenticator, resolver, policy, metrics)

    @hub.on("message:send", module="chat")
    async def send(conn, data):
        ...

    conn = await hub.connect(websocket, {"token": token})
    await hub.emit_to_tenant(conn.tenant_id, "message:new", {...})
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Protocol
import asyncio
import logging
import uuid

from . import context
from .errors import CrossTenantDenied, ModuleDisabled, TenantKernelError, handshake_reason
from .identity import Authenticator, Identity
from .metrics import KernelMetrics
from .policy import KernelPolicy, RouteClass
from .resolver import IdentityEnvelope, ResolutionOutcome, TenantResolver
from .tenant import Tenant

logger = logging.getLogger(__name__)

MASTER_GROUP = "master"
REJECT_CLOSE_CODE = 1008


def tenant_group(tenant_id: str) -> str:
    return f"tenant:{tenant_id}"


def role_group(tenant_id: str, bucket: str) -> str:
    return f"tenant:{tenant_id}:{bucket}"


def user_group(tenant_id: str, subject_id: str) -> str:
    return f"tenant:{tenant_id}:user:{subject_id}"


def group_tenant(group: str) -> str | None:
    """Tenant id a group name is scoped to (None for ``master``)."""
    if group == MASTER_GROUP:
        return None
    parts = group.split(":")
    if len(parts) < 2 or parts[0] != "tenant" or not parts[1]:
        raise ValueError(f"Not a tenant-scoped group: {group!r}")
    return parts[1]


class Transport(Protocol):
    """What the hub needs from a socket (FastAPI ``WebSocket`` fits)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"


class HandshakeRejected(Exception):
    """The handshake failed; ``reason`` is sent to the client verbatim."""

    def __init__(self, reason: str, error: TenantKernelError):
        self.reason = reason
        self.error = error
        super().__init__(reason)


@dataclass(eq=False)
class Connection:
    """One realtime connection and its per-connection state."""

    transport: Any
    buffer_size: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: ConnectionState = ConnectionState.CONNECTING
    identity: Identity | None = None
    tenant: Tenant | None = None
    resolved_by: str | None = None
    limited: bool = False
    groups: set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        self.outbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self.buffer_size)
        self.inbound: asyncio.Queue[tuple[str, Any]] = asyncio.Queue(maxsize=self.buffer_size)
        self.resumed = asyncio.Event()
        self.resumed.set()
        self.tasks: list[asyncio.Task] = []

    @property
    def tenant_id(self) -> str | None:
        return self.tenant.id if self.tenant is not None else None

    @property
    def subject_id(self) -> str | None:
        return self.identity.subject_id if self.identity else None

    @property
    def role(self) -> str | None:
        return self.identity.role.value if self.identity else None

    @property
    def is_master(self) -> bool:
        return self.identity is not None and self.identity.is_master

    @property
    def is_open(self) -> bool:
        return self.state in (ConnectionState.ACTIVE, ConnectionState.PAUSED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.id,
            "tenant_id": self.tenant_id,
            "tenant_key": self.tenant.key if self.tenant else None,
            "subject_id": self.subject_id,
            "role": self.role,
            "state": self.state.value,
            "limited": self.limited,
            "groups": sorted(self.groups),
        }


EventHandler = Callable[[Connection, Any], Awaitable[Any]]


def filter_payload(payload: Any, tenant_id: str | None) -> Any:
    """Drop records that belong to another tenant.

    Returns None when the payload itself is another tenant's record.
    """
    if tenant_id is None:
        return payload
    if isinstance(payload, Mapping):
        owner = payload.get("tenant_id", payload.get("tenantId"))
        if owner is not None and str(owner) != tenant_id:
            return None
        return payload
    if isinstance(payload, list):
        return [p for p in payload if filter_payload(p, tenant_id) is not None]
    return payload


class ScopedRealtimeHub:
    """Realtime broker that never delivers across tenants.

    Attributes:
        authenticator: Turns the handshake token into an identity.
        resolver: Same resolver as the HTTP path.
        policy: Kernel policy (buffer size).
        metrics: Dropped-frame and denial counters.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        resolver: TenantResolver,
        policy: KernelPolicy,
        metrics: KernelMetrics | None = None,
    ):
        self.authenticator = authenticator
        self.resolver = resolver
        self.policy = policy
        self.metrics = metrics or resolver.metrics
        self._connections: dict[str, Connection] = {}
        self._groups: dict[str, set[str]] = {}
        self._users: dict[tuple[str, str], set[str]] = {}
        self._handlers: dict[str, tuple[EventHandler, str | None]] = {}

    # -- handler registration ----------------------------------------------

    def on(self, event: str, handler: EventHandler | None = None, *, module: str | None = None):
        """Register an inbound event handler (usable as a decorator).

        ``module`` gates the event on the tenant's enabled modules.
        """

        def _register(fn: EventHandler) -> EventHandler:
            self._handlers[event] = (fn, module)
            return fn

        if handler is not None:
            return _register(handler)
        return _register

    # -- lifecycle --------------------------------------------------------

    async def connect(
        self,
        transport: Any,
        auth: Mapping[str, Any] | None,
        headers: Mapping[str, str] | None = None,
        host: str | None = None,
    ) -> Connection:
        """Authenticate, resolve and activate a connection.

        Raises:
            HandshakeRejected: Authentication or tenant validation failed;
                the transport has already been sent the reason and closed.
        """
        conn = Connection(transport=transport, buffer_size=self.policy.realtime_buffer_size)
        auth = dict(auth or {})
        try:
            identity = await self.authenticator.authenticate(auth.get("token"))
            conn.identity = identity
            conn.state = ConnectionState.AUTHENTICATED
            outcome = await self.resolver.resolve(
                IdentityEnvelope(
                    identity=identity,
                    headers={k.lower(): v for k, v in (headers or {}).items()},
                    host=host,
                    handshake_auth=auth,
                    route_class=RouteClass.TENANT_SCOPED,
                )
            )
        except TenantKernelError as e:
            await self._reject(conn, e)
            raise HandshakeRejected(handshake_reason(e), e) from e

        self._activate(conn, outcome)
        logger.info(
            f"Realtime connection {conn.id} subject={conn.subject_id} "
            f"tenant={conn.tenant_id or 'master'} groups={len(conn.groups)}"
        )
        self._offer(conn, {"event": "connected", "data": conn.to_dict()})
        return conn

    async def _reject(self, conn: Connection, error: TenantKernelError) -> None:
        conn.state = ConnectionState.REJECTED
        reason = handshake_reason(error)
        logger.info(f"Realtime handshake rejected: {reason} ({error.code})")
        try:
            await conn.transport.send_json({"event": "error", "data": {"reason": reason, "code": error.code}})
            await conn.transport.close(code=REJECT_CLOSE_CODE, reason=reason)
        except Exception as e:
            logger.debug(f"Transport gone during rejection: {e}")
        conn.state = ConnectionState.CLOSED

    def _activate(self, conn: Connection, outcome: ResolutionOutcome) -> None:
        conn.tenant = outcome.tenant
        conn.limited = outcome.limited
        conn.resolved_by = outcome.resolved_by.value if outcome.resolved_by else None

        if conn.tenant_id is None:
            groups = {MASTER_GROUP}
        else:
            groups = {tenant_group(conn.tenant_id), user_group(conn.tenant_id, conn.subject_id)}
            bucket = conn.identity.role.bucket if conn.identity else None
            if bucket:
                groups.add(role_group(conn.tenant_id, bucket))
            self._users.setdefault((conn.tenant_id, conn.subject_id), set()).add(conn.id)

        self._connections[conn.id] = conn
        for group in groups:
            self._groups.setdefault(group, set()).add(conn.id)
        conn.groups = groups
        conn.state = ConnectionState.ACTIVE
        conn.tasks = [
            asyncio.create_task(self._sender(conn), name=f"rt-send-{conn.id}"),
            asyncio.create_task(self._worker(conn), name=f"rt-recv-{conn.id}"),
        ]

    def _detach(self, conn: Connection) -> None:
        """Drop the connection from every group and index in one step."""
        for group in conn.groups:
            members = self._groups.get(group)
            if members is None:
                continue
            members.discard(conn.id)
            if not members:
                del self._groups[group]
        if conn.tenant_id is not None:
            key = (conn.tenant_id, conn.subject_id)
            ids = self._users.get(key)
            if ids is not None:
                ids.discard(conn.id)
                if not ids:
                    del self._users[key]
        self._connections.pop(conn.id, None)
        conn.state = ConnectionState.CLOSED

    async def disconnect(self, conn: Connection) -> None:
        """Close a connection; queued and in-flight frames may be dropped."""
        if conn.state is ConnectionState.CLOSED:
            return
        self._detach(conn)
        me = asyncio.current_task()
        pending = [t for t in conn.tasks if t is not me and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info(f"Realtime connection {conn.id} closed")

    def pause(self, conn: Connection) -> None:
        """Hold outbound delivery; frames queue up to the buffer size."""
        if conn.state is ConnectionState.ACTIVE:
            conn.state = ConnectionState.PAUSED
            conn.resumed.clear()

    def resume(self, conn: Connection) -> None:
        if conn.state is ConnectionState.PAUSED:
            conn.state = ConnectionState.ACTIVE
            conn.resumed.set()

    # -- outbound ---------------------------------------------------------

    def _offer(self, conn: Connection, frame: dict[str, Any]) -> bool:
        if not conn.is_open:
            return False
        try:
            conn.outbound.put_nowait(frame)
        except asyncio.QueueFull:
            self.metrics.dropped_realtime_frames += 1
            logger.warning(
                f"Dropped {frame.get('event')} frame for connection {conn.id} "
                f"(tenant {conn.tenant_id or 'master'}): buffer full"
            )
            return False
        return True

    async def _sender(self, conn: Connection) -> None:
        while True:
            frame = await conn.outbound.get()
            await conn.resumed.wait()
            try:
                await conn.transport.send_json(frame)
            except Exception as e:
                logger.info(f"Send to connection {conn.id} failed, closing: {e}")
                await self.disconnect(conn)
                return

    def _deliver(self, group: str, event: str, payload: Any) -> int:
        scope = group_tenant(group)
        delivered = 0
        for conn_id in list(self._groups.get(group, ())):
            conn = self._connections.get(conn_id)
            if conn is None:
                continue
            if scope is not None and conn.tenant_id != scope:
                logger.error(f"Connection {conn.id} of tenant {conn.tenant_id} found in group {group}")
                continue
            data = payload if conn.is_master and scope is None else filter_payload(payload, conn.tenant_id)
            if data is None:
                logger.warning(f"Withheld {event} payload of another tenant from connection {conn.id}")
                continue
            if self._offer(conn, {"event": event, "data": data}):
                delivered += 1
        return delivered

    async def emit_to_group(self, group: str, event: str, payload: Any = None) -> int:
        """Queue an event for every member of one group.

        Returns:
            Number of connections the frame was queued for.

        Raises:
            ValueError: ``group`` is not a tenant-scoped or master group
                (for example a bare ``user:{s}``).
        """
        group_tenant(group)
        return self._deliver(group, event, payload)

    async def emit_to_tenant(self, tenant_id: str, event: str, payload: Any = None) -> int:
        return await self.emit_to_group(tenant_group(tenant_id), event, payload)

    async def emit_to_role(self, tenant_id: str, bucket: str, event: str, payload: Any = None) -> int:
        return await self.emit_to_group(role_group(tenant_id, bucket), event, payload)

    async def emit_to_user(self, tenant_id: str, subject_id: str, event: str, payload: Any = None) -> int:
        if not tenant_id:
            raise ValueError("User-targeted emits need a tenant id")
        return await self.emit_to_group(user_group(tenant_id, subject_id), event, payload)

    async def emit_to_master(self, event: str, payload: Any = None) -> int:
        return await self.emit_to_group(MASTER_GROUP, event, payload)

    def notify(self, conn: Connection, event: str, payload: Any = None) -> bool:
        """Queue a frame for a single connection."""
        return self._offer(conn, {"event": event, "data": filter_payload(payload, conn.tenant_id)})

    # -- inbound ----------------------------------------------------------

    async def handle_inbound(self, conn: Connection, event: str, payload: Any = None) -> bool:
        """Queue an inbound event for the connection's worker.

        Returns False if the connection is closed or its inbound buffer
        is full (the event is dropped).
        """
        if not conn.is_open:
            return False
        try:
            conn.inbound.put_nowait((event, payload))
        except asyncio.QueueFull:
            self.metrics.dropped_realtime_frames += 1
            logger.warning(f"Dropped inbound {event} on connection {conn.id}: buffer full")
            return False
        return True

    async def drain(self, conn: Connection) -> None:
        """Wait until every queued inbound event has been handled."""
        await conn.inbound.join()

    async def _worker(self, conn: Connection) -> None:
        while True:
            event, payload = await conn.inbound.get()
            try:
                await self.dispatch(conn, event, payload)
            finally:
                conn.inbound.task_done()

    def validate_inbound(self, conn: Connection, payload: Any) -> None:
        """Refuse payloads that assert a tenant other than the connection's."""
        if conn.is_master or not isinstance(payload, Mapping):
            return
        asserted = payload.get("tenantId", payload.get("tenant_id"))
        if asserted is not None and str(asserted) != conn.tenant_id:
            self.metrics.cross_tenant_denials += 1
            logger.warning(
                f"Connection {conn.id} of tenant {conn.tenant_id} sent an event for tenant {asserted}"
            )
            raise CrossTenantDenied(details={"tenant_id": conn.tenant_id, "requested": str(asserted)})

    @staticmethod
    def require_module(conn: Connection, module: str) -> None:
        if conn.tenant is not None and not conn.tenant.has_module(module):
            raise ModuleDisabled(module)

    @staticmethod
    def apply_tenant_scope(conn: Connection, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Copy of ``payload`` stamped with the connection's tenant."""
        scoped = dict(payload)
        if conn.tenant_id is not None:
            scoped.pop("tenantId", None)
            scoped["tenant_id"] = conn.tenant_id
        return scoped

    async def dispatch(self, conn: Connection, event: str, payload: Any = None) -> Any:
        """Validate and run one inbound event under the connection's context.

        Kernel errors are reported to the client as an ``error`` frame. Any
        other handler failure is logged and reported as a generic ``error``
        frame; the connection keeps serving its queue.
        """
        entry = self._handlers.get(event)
        try:
            if entry is None:
                raise ValueError(f"Unknown event: {event}")
            handler, module = entry
            self.validate_inbound(conn, payload)
            if module:
                self.require_module(conn, module)
        except TenantKernelError as e:
            self._offer(conn, {"event": "error", "data": {"event": event, **e.to_dict()}})
            return None
        except ValueError as e:
            self._offer(conn, {"event": "error", "data": {"event": event, "error": str(e)}})
            return None

        dispose = context.enter(
            conn.tenant_id,
            is_master=conn.is_master,
            subject_id=conn.subject_id,
            resolved_by=conn.resolved_by,
        )
        try:
            result = await handler(conn, payload)
        except TenantKernelError as e:
            self._offer(conn, {"event": "error", "data": {"event": event, **e.to_dict()}})
            return None
        except Exception:
            logger.exception("Handler for %s failed on connection %s", event, conn.id)
            self._offer(conn, {
                "event": "error",
                "data": {"event": event, "success": False, "error": "Internal server error"},
            })
            return None
        finally:
            dispose()
        if result is not None:
            self._offer(conn, {"event": f"{event}:ack", "data": result})
        return result

    # -- introspection ----------------------------------------------------

    def connections(self, tenant_id: str | None = None) -> list[Connection]:
        return [c for c in self._connections.values() if tenant_id is None or c.tenant_id == tenant_id]

    def members(self, group: str) -> list[Connection]:
        return [self._connections[cid] for cid in self._groups.get(group, ()) if cid in self._connections]

    def user_connections(self, tenant_id: str, subject_id: str) -> list[Connection]:
        ids = self._users.get((tenant_id, subject_id), set())
        return [self._connections[cid] for cid in ids if cid in self._connections]

    def is_user_connected(self, tenant_id: str, subject_id: str) -> bool:
        return bool(self._users.get((tenant_id, subject_id)))

    def stats(self) -> dict[str, Any]:
        by_tenant: dict[str, int] = {}
        by_role: dict[str, int] = {}
        master = 0
        for conn in self._connections.values():
            if conn.tenant_id is None:
                master += 1
            else:
                by_tenant[conn.tenant_id] = by_tenant.get(conn.tenant_id, 0) + 1
            if conn.role:
                by_role[conn.role] = by_role.get(conn.role, 0) + 1
        return {
            "connections": len(self._connections),
            "master_connections": master,
            "by_tenant": by_tenant,
            "by_role": by_role,
            "groups": len(self._groups),
            "dropped_frames": self.metrics.dropped_realtime_frames,
        }
