"""Request-logging and tenant-isolation middleware for FastAPI."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import replace
from typing import Any
from urllib.parse import parse_qsl

from starlette.datastructures import MutableHeaders
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from supportdesk.multitenancy import context
from supportdesk.multitenancy.errors import InsufficientRole, OriginNotAllowed, TenantKernelError
from supportdesk.multitenancy.kernel import TenantKernel
from supportdesk.multitenancy.policy import RouteClass
from supportdesk.multitenancy.resolver import IdentityEnvelope

logger = logging.getLogger("supportdesk.api")

PREFLIGHT_MAX_AGE = "600"
ALLOWED_METHODS = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
ALLOWED_HEADERS = "Authorization, Content-Type, X-Tenant-Id, X-Tenant-Key, X-Request-ID"

# ---------------------------------------------------------------------------
# Request logging
# ---------------------------------------------------------------------------


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Attach a request ID and log method/path/status/duration/tenant."""

    async def dispatch(self, request: Request, call_next):  # noqa: ANN001
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.perf_counter()
        response: Response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000

        logger.info(
            "method=%s path=%s status_code=%s duration_ms=%.1f request_id=%s tenant=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
            getattr(request.state, "tenant_id", None) or "-",
        )

        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# Tenant isolation
# ---------------------------------------------------------------------------


def _error_response(error: TenantKernelError, extra_headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(error.to_dict(), status_code=error.status_code, headers=extra_headers)


def _cors_headers(origin: str) -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Credentials": "true",
        "Vary": "Origin",
    }


class TenantMiddleware:
    """Authenticate, resolve and scope every HTTP request.

    Order per request: route classification, authentication (unless
    public), tenant resolution, context entry, origin check, handler,
    context exit. Preflight requests are answered here. Websocket and
    lifespan scopes pass straight through; the realtime hub runs its own
    handshake.
    """

    def __init__(self, app: ASGIApp, kernel: TenantKernel | None = None) -> None:
        self.app = app
        self.kernel = kernel

    def _kernel(self, scope: Scope) -> TenantKernel:
        if self.kernel is not None:
            return self.kernel
        return scope["app"].state.kernel

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        kernel = self._kernel(scope)
        request = Request(scope)
        state: dict[str, Any] = scope.setdefault("state", {})
        request_id = state.get("request_id") or request.headers.get("x-request-id") or str(uuid.uuid4())
        state["request_id"] = request_id

        path = request.url.path
        headers = {k.lower(): v for k, v in request.headers.items()}
        origin = headers.get("origin")
        route_class = kernel.policy.classify(path)

        envelope = IdentityEnvelope(
            headers=headers,
            host=headers.get("host"),
            query=dict(parse_qsl(scope.get("query_string", b"").decode("latin-1"))),
            route_class=route_class,
            path=path,
        )

        if request.method == "OPTIONS" and "access-control-request-method" in headers:
            response = await self._preflight(kernel, envelope, origin)
            await response(scope, receive, send)
            return

        try:
            identity = None
            if route_class.requires_identity:
                identity = await kernel.authenticator.authenticate(headers.get("authorization"))
                if route_class is RouteClass.MASTER_ONLY and not identity.is_master:
                    raise InsufficientRole("Master access required")
            outcome = await kernel.resolver.resolve(
                replace(envelope, identity=identity)
            )
        except TenantKernelError as e:
            logger.info("Rejected %s %s: %s", request.method, path, e.code)
            cors = await self._rejection_cors_headers(kernel, envelope, origin)
            await _error_response(e, cors)(scope, receive, send)
            return

        dispose = context.enter(
            outcome.tenant_id,
            is_master=outcome.is_master,
            request_id=request_id,
            subject_id=identity.subject_id if identity else None,
            resolved_by=outcome.resolved_by.value if outcome.resolved_by else None,
        )
        try:
            decision = await kernel.origins.is_allowed(origin, outcome.tenant_id)
            if not decision.allowed and decision.reason != "no-tenant":
                logger.warning("Origin %s not allowed for tenant %s", origin, outcome.tenant_id)
                await _error_response(OriginNotAllowed(details={"origin": origin}))(scope, receive, send)
                return

            state["identity"] = identity
            state["outcome"] = outcome
            state["tenant"] = outcome.tenant
            state["tenant_id"] = outcome.tenant_id

            extra: dict[str, str] = {}
            if outcome.tenant is not None:
                extra["X-Tenant-Id"] = outcome.tenant.id
                extra["X-Tenant-Key"] = outcome.tenant.key
            if outcome.limited:
                extra["X-Tenant-Limited"] = "true"
            if origin and decision.allowed:
                extra.update(_cors_headers(origin))

            async def send_with_headers(message: Message) -> None:
                if message["type"] == "http.response.start":
                    response_headers = MutableHeaders(scope=message)
                    for name, value in extra.items():
                        if name == "Vary":
                            response_headers.add_vary_header("Origin")
                        else:
                            response_headers[name] = value
                await send(message)

            await self.app(scope, receive, send_with_headers)
        finally:
            dispose()

    async def _anonymous_tenant_id(self, kernel: TenantKernel, envelope: IdentityEnvelope) -> str | None:
        """Tenant named by the request headers, host, or query alone."""
        try:
            outcome = await kernel.resolver.resolve(
                replace(envelope, identity=None, route_class=RouteClass.PUBLIC)
            )
        except TenantKernelError as e:
            logger.info("No usable tenant for %s without credentials: %s", envelope.path, e.code)
            return None
        return outcome.tenant_id

    async def _rejection_cors_headers(
        self,
        kernel: TenantKernel,
        envelope: IdentityEnvelope,
        origin: str | None,
    ) -> dict[str, str]:
        """CORS headers for an auth or resolution failure, so allowed browsers can read it."""
        if not origin:
            return {}
        tenant_id = await self._anonymous_tenant_id(kernel, envelope)
        decision = await kernel.origins.is_allowed(origin, tenant_id)
        return _cors_headers(origin) if decision.allowed else {"Vary": "Origin"}

    async def _preflight(
        self,
        kernel: TenantKernel,
        envelope: IdentityEnvelope,
        origin: str | None,
    ) -> Response:
        """Answer a CORS preflight from the resolved tenant's allow-list.

        Preflights carry no credentials, so the tenant comes from the
        request headers, host, or query alone.
        """
        tenant_id = await self._anonymous_tenant_id(kernel, envelope)
        decision = await kernel.origins.is_allowed(origin, tenant_id)
        if not origin or not decision.allowed:
            return _error_response(OriginNotAllowed(details={"origin": origin}), {"Vary": "Origin"})

        response_headers = _cors_headers(origin)
        response_headers["Access-Control-Allow-Methods"] = ALLOWED_METHODS
        response_headers["Access-Control-Allow-Headers"] = (
            envelope.headers.get("access-control-request-headers") or ALLOWED_HEADERS
        )
        response_headers["Access-Control-Max-Age"] = PREFLIGHT_MAX_AGE
        return Response(status_code=204, headers=response_headers)
