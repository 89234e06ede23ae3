# src/formstr_core/models/local_storage.py
"""Key/value table backing the local form store."""

from __future__ import annotations

from sqlalchemy import Text
from sqlalchemy.orm import Mapped, mapped_column

from formstr_core.db.session import Base


class StorageRecord(Base):
    """One named record, stored as a text value (usually JSON)."""

    __tablename__ = "local_storage"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
