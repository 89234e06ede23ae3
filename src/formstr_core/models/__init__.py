# src/formstr_core/models/__init__.py
"""SQLAlchemy models for the Formstr local store."""

from .local_storage import StorageRecord

__all__ = ["StorageRecord"]
