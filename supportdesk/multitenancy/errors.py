"""
Typed failures raised by the multi-tenant isolation kernel.

Every error carries a stable ``code`` that the transport layer uses
verbatim, an HTTP ``status_code``, a short human ``message`` and optional
``details``. The kernel never swallows these; the API layer renders them
as ``{"success": false, "code", "error", "details"}``.

Example:
    try:
        outcome = await resolver.resolve(envelope)
    except TenantKernelError as e:
        return JSONResponse(e.to_dict(), status_code=e.status_code)
"""

from typing import Any


class TenantKernelError(Exception):
    """Base class for kernel failures.

    Attributes:
        code: Stable symbolic code (e.g. ``"CrossTenantDenied"``).
        status_code: HTTP status used by the transport mapping.
        message: Short human-readable message.
        details: Optional structured details (limit/current, module, ...).
    """

    code: str = "TenantKernelError"
    status_code: int = 500
    default_message: str = "Tenant kernel error"

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses.

        Returns:
            Dictionary with ``success``, ``code``, ``error`` and, when
            present, ``details``.
        """
        body: dict[str, Any] = {
            "success": False,
            "code": self.code,
            "error": self.message,
        }
        if self.details:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} code={self.code} status={self.status_code}>"


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class NoToken(TenantKernelError):
    code = "NoToken"
    status_code = 401
    default_message = "Authentication token not provided"


class InvalidToken(TenantKernelError):
    code = "InvalidToken"
    status_code = 401
    default_message = "Invalid token"


class TokenExpired(TenantKernelError):
    code = "TokenExpired"
    status_code = 401
    default_message = "Token expired"


class UserNotFound(TenantKernelError):
    code = "UserNotFound"
    status_code = 401
    default_message = "User not found"


class AccountDisabled(TenantKernelError):
    code = "AccountDisabled"
    status_code = 401
    default_message = "Account disabled"


# ---------------------------------------------------------------------------
# Tenant resolution
# ---------------------------------------------------------------------------


class TenantRequired(TenantKernelError):
    code = "TenantRequired"
    status_code = 400
    default_message = "Tenant not identified"


class TenantNotFound(TenantKernelError):
    code = "TenantNotFound"
    status_code = 404
    default_message = "Tenant not found"


class TenantSuspended(TenantKernelError):
    code = "TenantSuspended"
    status_code = 403
    default_message = "Account suspended. Please contact support."


class SubscriptionSuspended(TenantKernelError):
    code = "SubscriptionSuspended"
    status_code = 403
    default_message = "Subscription suspended"


class SubscriptionExpired(TenantKernelError):
    code = "SubscriptionExpired"
    status_code = 403
    default_message = "Subscription expired"


class CrossTenantDenied(TenantKernelError):
    code = "CrossTenantDenied"
    status_code = 403
    default_message = "Cross-tenant access denied"


# ---------------------------------------------------------------------------
# Authorization / admission
# ---------------------------------------------------------------------------


class InsufficientRole(TenantKernelError):
    code = "InsufficientRole"
    status_code = 403
    default_message = "Access denied. Insufficient role."


class PlanLimitReached(TenantKernelError):
    """Raised when admitting an operation would exceed a plan limit.

    Attributes:
        resource: The limited resource (e.g. ``"agents"``).
        limit: The plan cap.
        current: Usage before the request.
    """

    code = "PlanLimitReached"
    status_code = 403
    default_message = "Plan limit reached"

    def __init__(self, resource: str, limit: int, current: int, requested: int = 1):
        self.resource = resource
        self.limit = limit
        self.current = current
        self.requested = requested
        super().__init__(
            f"Limit for {resource} reached",
            details={
                "resource": resource,
                "limit": limit,
                "current": current,
                "requested": requested,
                "suggestion": "Upgrade your plan to continue",
            },
        )


class ModuleDisabled(TenantKernelError):
    code = "ModuleDisabled"
    status_code = 403
    default_message = "Module not enabled for this account"

    def __init__(self, module: str):
        self.module = module
        super().__init__(
            f"Module {module} is not enabled for this account",
            details={"module": module},
        )


class OriginNotAllowed(TenantKernelError):
    code = "OriginNotAllowed"
    status_code = 403
    default_message = "Origin not allowed"


# ---------------------------------------------------------------------------
# Internal integrity
# ---------------------------------------------------------------------------


class ScopeIntegrityError(TenantKernelError):
    """A bypass-mode or administrative path violated a scope invariant.

    These indicate a bug in an administrative code path, never bad user
    input, and are always fatal to the enclosing operation.
    """

    code = "ScopeIntegrityError"
    status_code = 500
    default_message = "Tenant scope integrity violation"


class TransientStoreError(Exception):
    """Retryable storage failure (connection reset, timeout).

    Registry and cache reads retry once on this error before surfacing it.
    """


# Handshake rejection reasons returned verbatim to realtime clients.
HANDSHAKE_REASONS: dict[str, str] = {
    NoToken.code: "authentication-required",
    InvalidToken.code: "invalid-token",
    TokenExpired.code: "invalid-token",
    UserNotFound.code: "user-not-found",
    AccountDisabled.code: "user-not-found",
    TenantRequired.code: "tenant-not-identified",
    TenantNotFound.code: "tenant-not-identified",
    TenantSuspended.code: "tenant-suspended",
    SubscriptionSuspended.code: "tenant-suspended",
    SubscriptionExpired.code: "tenant-suspended",
    CrossTenantDenied.code: "access-denied-cross-tenant",
}


def handshake_reason(error: TenantKernelError) -> str:
    """Map a kernel error to its realtime handshake rejection reason."""
    return HANDSHAKE_REASONS.get(error.code, "authentication-required")
