"""Tenant and audit SQLAlchemy models.

- **TenantRecord**: persisted form of :class:`supportdesk.multitenancy.Tenant`.
- **AuditLog**: append-only, tenant-scoped log of administrative actions.
- **TenantScopedMixin**: column mixin adding the indexed ``tenant_id``.

Every tenant-scoped model must also declare its compound indexes with
``tenant_id`` as the leading column; ``@tenant_scoped`` refuses models
that do not.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from supportdesk.db import Base
from supportdesk.multitenancy.gateway import tenant_scoped
from supportdesk.multitenancy.tenant import Plan, SubscriptionStatus, Tenant

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Mixin
# ---------------------------------------------------------------------------


class TenantScopedMixin:
    """Column mixin that adds a non-null ``tenant_id`` foreign key::

        @tenant_scoped
        class Ticket(Base, TenantScopedMixin):
            __tablename__ = "tickets"
            __table_args__ = (Index("ix_tickets_tenant_status", "tenant_id", "status"),)
    """

    tenant_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )


# ---------------------------------------------------------------------------
# Tenant
# ---------------------------------------------------------------------------


class TenantRecord(Base):
    """Top-level tenant record.

    Attributes
    ----------
    id:                   Opaque primary key.
    key:                  URL-safe lowercase key (unique).
    slug:                 Historical alias of ``key`` (unique).
    custom_domain:        Optional custom host (unique).
    subscription_status:  active | trialing | suspended | expired | cancelled.
    enabled_modules:      List of module names.
    limits / usage:       Resource -> integer mappings.
    allowed_origins:      Ordered CORS allow-list patterns.
    """

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid)
    key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    slug: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    custom_domain: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    subscription_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=SubscriptionStatus.TRIALING.value
    )
    plan: Mapped[str] = mapped_column(String(32), nullable=False, default=Plan.TRIAL.value)
    enabled_modules: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    limits: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    usage: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    allowed_origins: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    settings_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    def to_domain(self) -> Tenant:
        return Tenant(
            id=self.id,
            key=self.key,
            name=self.name,
            slug=self.slug or "",
            custom_domain=self.custom_domain,
            is_active=self.is_active,
            subscription_status=SubscriptionStatus(self.subscription_status),
            plan=Plan(self.plan),
            enabled_modules=set(self.enabled_modules or []),
            limits=dict(self.limits or {}),
            usage=dict(self.usage or {}),
            allowed_origins=list(self.allowed_origins or []),
            created_at=_aware(self.created_at),
            updated_at=_aware(self.updated_at),
            metadata=dict(self.settings_json or {}),
        )

    @staticmethod
    def columns_from(tenant: Tenant) -> dict[str, Any]:
        return {
            "id": tenant.id,
            "key": tenant.key,
            "slug": tenant.slug or None,
            "name": tenant.name,
            "custom_domain": tenant.custom_domain,
            "is_active": tenant.is_active,
            "subscription_status": tenant.subscription_status.value,
            "plan": tenant.plan.value,
            "enabled_modules": sorted(tenant.enabled_modules),
            "limits": dict(tenant.limits),
            "usage": dict(tenant.usage),
            "allowed_origins": list(tenant.allowed_origins),
            "settings_json": dict(tenant.metadata),
            "created_at": tenant.created_at,
            "updated_at": tenant.updated_at,
        }


def _aware(value: datetime | None) -> datetime:
    if value is None:
        return _utcnow()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# AuditLog
# ---------------------------------------------------------------------------


@tenant_scoped
class AuditLog(Base, TenantScopedMixin):
    """Append-only audit log for tenant-scoped administrative actions.

    Attributes
    ----------
    action:   Short verb describing the operation.
    actor:    Subject id of whoever performed it.
    details:  Operation-specific JSON payload.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    actor: Mapped[str | None] = mapped_column(String(256), nullable=True)
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
