"""Initial schema: tenants, users and the tenant-scoped support tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _tenant_fk(nullable: bool = False) -> sa.Column:
    return sa.Column(
        "tenant_id",
        sa.String(64),
        sa.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=nullable,
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("key", sa.String(64), nullable=False, unique=True),
        sa.Column("slug", sa.String(64), nullable=True, unique=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("custom_domain", sa.String(255), nullable=True, unique=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("subscription_status", sa.String(32), nullable=False, server_default="trialing"),
        sa.Column("plan", sa.String(32), nullable=False, server_default="trial"),
        sa.Column("enabled_modules", JSONB, nullable=True),
        sa.Column("limits", JSONB, nullable=True),
        sa.Column("usage", JSONB, nullable=True),
        sa.Column("allowed_origins", JSONB, nullable=True),
        sa.Column("settings_json", JSONB, nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        # NULL only for role=master
        _tenant_fk(nullable=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("name", sa.String(256), nullable=False, server_default=""),
        sa.Column("role", sa.String(16), nullable=False, server_default="agent"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("password_hash", sa.String(256), nullable=False, server_default=""),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
    )
    op.create_index("ix_users_tenant_role", "users", ["tenant_id", "role"])

    op.create_table(
        "contacts",
        sa.Column("id", sa.String(64), primary_key=True),
        _tenant_fk(),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("name", sa.String(256), nullable=False, server_default=""),
        sa.Column("phone", sa.String(64), nullable=True),
        sa.Column("attributes", JSONB, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "email", name="uq_contacts_tenant_email"),
    )
    op.create_index("ix_contacts_tenant_name", "contacts", ["tenant_id", "name"])

    op.create_table(
        "conversations",
        sa.Column("id", sa.String(64), primary_key=True),
        _tenant_fk(),
        sa.Column("subject", sa.String(512), nullable=False, server_default=""),
        sa.Column("status", sa.String(32), nullable=False, server_default="open"),
        sa.Column("channel", sa.String(32), nullable=False, server_default="chat"),
        sa.Column("contact_id", sa.String(64), nullable=True),
        sa.Column("assigned_to", sa.String(64), nullable=True),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("message_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tags", JSONB, nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_conversations_tenant_status_updated",
        "conversations",
        ["tenant_id", "status", "updated_at"],
    )
    op.create_index("ix_conversations_tenant_assignee", "conversations", ["tenant_id", "assigned_to"])

    op.create_table(
        "messages",
        sa.Column("id", sa.String(64), primary_key=True),
        _tenant_fk(),
        sa.Column("conversation_id", sa.String(64), nullable=False),
        sa.Column("sender_id", sa.String(64), nullable=True),
        sa.Column("sender_type", sa.String(16), nullable=False, server_default="agent"),
        sa.Column("body", sa.Text, nullable=False, server_default=""),
        *_timestamps(),
    )
    op.create_index(
        "ix_messages_tenant_conversation_created",
        "messages",
        ["tenant_id", "conversation_id", "created_at"],
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(64), primary_key=True),
        _tenant_fk(),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("actor", sa.String(256), nullable=True),
        sa.Column("details", JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_tenant_created", "audit_logs", ["tenant_id", "created_at"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("messages")
    op.drop_table("conversations")
    op.drop_table("contacts")
    op.drop_table("users")
    op.drop_table("tenants")
