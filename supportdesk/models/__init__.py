"""SQLAlchemy models. Importing this package registers every tenant-scoped model."""

from supportdesk.models.support import Contact, Conversation, Message, User
from supportdesk.models.tenant import AuditLog, TenantRecord, TenantScopedMixin

__all__ = [
    "AuditLog",
    "Contact",
    "Conversation",
    "Message",
    "TenantRecord",
    "TenantScopedMixin",
    "User",
]
