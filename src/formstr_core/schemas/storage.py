"""Pydantic schemas for the local forms store."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator


class StorageMetadata(BaseModel):
    """Encryption state of the local forms collection."""

    model_config = ConfigDict(populate_by_name=True)

    encrypted: bool = False
    encrypted_by: str | None = Field(default=None, alias="encryptedBy")
    encrypted_at: datetime | None = Field(default=None, alias="encryptedAt")

    @model_validator(mode="after")
    def _require_owner(self) -> StorageMetadata:
        if self.encrypted and not self.encrypted_by:
            raise ValueError("encryptedBy is required when encrypted is true")
        return self

    def to_record(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)
