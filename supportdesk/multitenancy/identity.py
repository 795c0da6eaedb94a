"""
Identities, signed tokens and authentication.

Tokens are HS256 JWTs (PyJWT) carrying the claims ``sub``, ``role``,
``tid`` (tenant id), ``ver`` (token version), ``iat`` and ``exp``, with
optional ``tenant_key`` / ``tenant_name`` enrichment.

Version 2 tokens must carry ``tid`` for every non-master subject. Version
1 (legacy) tokens are accepted only while ``allow_legacy_tokens`` is set,
and then the tenant comes from the user record. Every legacy acceptance
is counted and logged so the cutover can be tracked.

Example:
    tokens = TokenService(secret="s3cret")
    token = tokens.mint(Identity("u1", Role.AGENT, tenant_id="t1"))

    auth = Authenticator(tokens, MemoryUserDirectory([...]), policy)
    identity = await auth.authenticate(f"Bearer {token}")
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Protocol
import logging

import jwt
from passlib.context import CryptContext

from .errors import (
    AccountDisabled,
    CrossTenantDenied,
    InvalidToken,
    NoToken,
    TokenExpired,
    UserNotFound,
)
from .metrics import KernelMetrics
from .policy import KernelPolicy
from .tenant import Tenant

logger = logging.getLogger(__name__)

CURRENT_TOKEN_VERSION = 2


class Role(str, Enum):
    """Subject roles."""

    MASTER = "master"
    ADMIN = "admin"
    AGENT = "agent"
    CLIENT = "client"

    @property
    def bucket(self) -> str | None:
        """Realtime role bucket: ``agents`` for staff, ``clients`` for end users."""
        if self in (Role.ADMIN, Role.AGENT):
            return "agents"
        if self is Role.CLIENT:
            return "clients"
        return None


@dataclass(frozen=True)
class Identity:
    """An authenticated subject.

    A master never carries a tenant. Non-master identities normally do;
    the only exception is a legacy token accepted for a user that has no
    tenant on record, which then fails on tenant-scoped routes.
    """

    subject_id: str
    role: Role
    tenant_id: str | None = None
    is_active: bool = True
    email: str | None = None
    legacy: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", Role(self.role))
        if self.role is Role.MASTER and self.tenant_id is not None:
            raise ValueError("A master identity cannot be bound to a tenant")

    @property
    def is_master(self) -> bool:
        return self.role is Role.MASTER


@dataclass
class UserRecord:
    """A stored user, as seen by the authenticator."""

    id: str
    role: Role
    tenant_id: str | None = None
    email: str = ""
    name: str = ""
    is_active: bool = True
    password_hash: str = ""

    def __post_init__(self) -> None:
        self.role = Role(self.role)

    def identity(self, legacy: bool = False) -> Identity:
        return Identity(
            subject_id=self.id,
            role=self.role,
            tenant_id=None if self.role is Role.MASTER else self.tenant_id,
            is_active=self.is_active,
            email=self.email or None,
            legacy=legacy,
        )


class UserDirectory(Protocol):
    """Lookup of users by subject id and by login email."""

    async def get_user(self, subject_id: str) -> UserRecord | None:
        ...

    async def find_by_email(
        self, email: str, tenant_id: str | None = None
    ) -> UserRecord | None:
        ...


class MemoryUserDirectory:
    """In-process user directory for development and tests."""

    def __init__(self, users: list[UserRecord] | None = None):
        self._users: dict[str, UserRecord] = {u.id: u for u in users or []}

    def add(self, user: UserRecord) -> UserRecord:
        self._users[user.id] = user
        return user

    async def get_user(self, subject_id: str) -> UserRecord | None:
        return self._users.get(subject_id)

    async def find_by_email(
        self, email: str, tenant_id: str | None = None
    ) -> UserRecord | None:
        email = email.strip().lower()
        for user in self._users.values():
            if user.email.lower() != email:
                continue
            if tenant_id is None or user.tenant_id in (tenant_id, None):
                return user
        return None


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, encoded: str) -> bool:
    """Check ``password`` against a stored hash; unrecognised hashes never match."""
    if not encoded:
        return False
    try:
        return pwd_context.verify(password, encoded)
    except ValueError:
        return False


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenClaims:
    """Decoded token claims."""

    sub: str
    role: Role
    ver: int = 1
    tid: str | None = None
    iat: datetime | None = None
    exp: datetime | None = None
    tenant_key: str | None = None
    tenant_name: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_legacy(self) -> bool:
        return self.ver < CURRENT_TOKEN_VERSION

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        """Validate the shape of a decoded payload.

        Raises:
            InvalidToken: If required claims are missing or malformed.
        """
        sub = payload.get("sub") or payload.get("id")
        role = payload.get("role")
        if not sub or not role:
            raise InvalidToken("Token is missing subject or role")
        try:
            role = Role(role)
            ver = int(payload.get("ver", 1))
        except (TypeError, ValueError):
            raise InvalidToken("Token has malformed claims")
        known = {"sub", "id", "role", "ver", "tid", "iat", "exp", "tenant_key", "tenant_name"}
        return cls(
            sub=str(sub),
            role=role,
            ver=ver,
            tid=str(payload["tid"]) if payload.get("tid") else None,
            iat=_from_epoch(payload.get("iat")),
            exp=_from_epoch(payload.get("exp")),
            tenant_key=payload.get("tenant_key"),
            tenant_name=payload.get("tenant_name"),
            extra={k: v for k, v in payload.items() if k not in known},
        )


def _from_epoch(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class TokenService:
    """Mints and verifies signed tokens."""

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        ttl_minutes: int = 60 * 24,
    ):
        if not secret:
            raise ValueError("Token secret cannot be empty")
        self._secret = secret
        self.algorithm = algorithm
        self.ttl = timedelta(minutes=ttl_minutes)

    @classmethod
    def from_policy(cls, policy: KernelPolicy) -> "TokenService":
        return cls(policy.jwt_secret, policy.jwt_algorithm, policy.token_ttl_minutes)

    def mint(
        self,
        identity: Identity,
        tenant: Tenant | None = None,
        version: int = CURRENT_TOKEN_VERSION,
        now: datetime | None = None,
        ttl: timedelta | None = None,
    ) -> str:
        """Sign a token for an identity.

        Version 2 tokens for non-master subjects must name a tenant.

        Raises:
            ValueError: If a version 2 non-master token has no tenant.
        """
        now = now or datetime.now(timezone.utc)
        tenant_id = tenant.id if tenant is not None else identity.tenant_id
        if identity.is_master:
            tenant_id = None
        elif version >= CURRENT_TOKEN_VERSION and not tenant_id:
            raise ValueError(f"Cannot mint a v{version} token for {identity.subject_id} without a tenant")
        payload: dict[str, Any] = {
            "sub": identity.subject_id,
            "role": identity.role.value,
            "ver": version,
            "iat": int(now.timestamp()),
            "exp": int((now + (ttl or self.ttl)).timestamp()),
        }
        if tenant_id and version >= CURRENT_TOKEN_VERSION:
            payload["tid"] = tenant_id
        if tenant is not None and not identity.is_master:
            payload["tenant_key"] = tenant.key
            payload["tenant_name"] = tenant.name
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def decode(self, token: str) -> TokenClaims:
        """Verify signature and expiry and return the claims.

        Raises:
            TokenExpired: If ``exp`` has passed.
            InvalidToken: For any other verification failure.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", "iat"]},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpired()
        except jwt.InvalidTokenError as e:
            raise InvalidToken(details={"reason": str(e)})
        return TokenClaims.from_payload(payload)


def bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer`` header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class Authenticator:
    """Turns a bearer token into an ``Identity``.

    Attributes:
        tokens: Token verifier.
        users: User directory, the source of truth for role and status.
        policy: Kernel policy (legacy token grace flag).
        metrics: Counters for legacy acceptances and denials.
    """

    def __init__(
        self,
        tokens: TokenService,
        users: UserDirectory,
        policy: KernelPolicy,
        metrics: KernelMetrics | None = None,
    ):
        self.tokens = tokens
        self.users = users
        self.policy = policy
        self.metrics = metrics or KernelMetrics()

    async def authenticate(self, token: str | None) -> Identity:
        """Authenticate a raw token (or a ``Bearer ...`` header value).

        Raises:
            NoToken: No token supplied.
            InvalidToken / TokenExpired: Verification failed, or a
                legacy token was presented without the grace flag, or a
                v2 non-master token lacks ``tid``.
            UserNotFound: Subject does not exist.
            AccountDisabled: Subject is deactivated.
            CrossTenantDenied: ``tid`` differs from the user's tenant.
        """
        if token and token.lower().startswith("bearer "):
            token = bearer_token(token)
        if not token:
            raise NoToken()

        claims = self.tokens.decode(token)
        user = await self.users.get_user(claims.sub)
        if user is None:
            raise UserNotFound()
        if not user.is_active:
            raise AccountDisabled()

        if user.role is Role.MASTER:
            return user.identity()

        if not claims.is_legacy:
            if not claims.tid:
                raise InvalidToken("Token is missing its tenant claim")
            if user.tenant_id and claims.tid != user.tenant_id:
                self.metrics.cross_tenant_denials += 1
                logger.warning(
                    f"Token tenant {claims.tid} does not match tenant "
                    f"{user.tenant_id} of user {user.id}"
                )
                raise CrossTenantDenied("Token is not valid for this tenant")
            return Identity(
                subject_id=user.id,
                role=user.role,
                tenant_id=claims.tid,
                is_active=user.is_active,
                email=user.email or None,
            )

        if not self.policy.allow_legacy_tokens:
            raise InvalidToken("Legacy token rejected. Please log in again.")
        self.metrics.legacy_token_acceptances += 1
        logger.warning(
            f"Accepted legacy v{claims.ver} token for user {user.id} "
            f"(tenant from record: {user.tenant_id or 'none'})"
        )
        return user.identity(legacy=True)
