"""Campaign workflow engine for a multi-tenant messaging CRM."""

__version__ = "1.0.0"
