"""Pydantic schemas for blob host responses and uploaded-file metadata."""
from __future__ import annotations

import json
import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class BlobDescriptor(BaseModel):
    """Descriptor returned by a blob host after upload."""

    model_config = ConfigDict(extra="allow")

    sha256: str = Field(..., min_length=64, max_length=64)
    url: str | None = None
    size: int | None = None
    type: str | None = None
    uploaded: int | None = None


class FileTransferMetadata(BaseModel):
    """Where an encrypted upload lives and who encrypted it.

    Embedded as JSON in the form response so the form owner can locate and
    decrypt the blob without contacting the uploader. Immutable once created.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    sha256: str = Field(..., description="Host-assigned hash of the stored ciphertext.")
    filename: str
    size: int = Field(..., ge=0, description="Plaintext size in bytes.")
    mime_type: str = Field(default="application/octet-stream", alias="mimeType")
    server: str
    uploaded_at: int = Field(..., alias="uploadedAt")
    uploader_pubkey: str | None = Field(default=None, alias="uploaderPubkey")

    def to_response_value(self) -> str:
        """Serialize for embedding in a response payload."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_response_value(cls, value: str | None) -> FileTransferMetadata | None:
        """Parse a response value, returning None if it is not file metadata."""
        if not value:
            return None
        try:
            parsed = json.loads(value)
        except ValueError:
            return None
        if not isinstance(parsed, dict) or not parsed.get("sha256"):
            return None
        try:
            return cls.model_validate(parsed)
        except ValidationError as err:
            logger.debug("Ignoring malformed file metadata: %s", err)
            return None
