"""SupportDesk: multi-tenant customer-support chat backend."""

__version__ = "0.1.0"
