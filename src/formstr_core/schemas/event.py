"""Pydantic schemas for signed relay events."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# A relay filter is an open JSON object ({"kinds": [...], "#d": [...], ...}).
Filter = dict[str, Any]

KIND_CLIENT_AUTH = 22242
KIND_BLOB_AUTH = 24242


class EventTemplate(BaseModel):
    """Unsigned event content handed to a signer."""

    kind: int = Field(..., ge=0)
    created_at: int = Field(..., ge=0, description="Unix timestamp in seconds.")
    tags: list[list[str]] = Field(default_factory=list)
    content: str = ""


class NostrEvent(EventTemplate):
    """Signed event as carried over the relay wire protocol."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=64, max_length=64)
    pubkey: str = Field(..., min_length=64, max_length=64)
    sig: str = Field(..., min_length=128, max_length=128)

    def tag_values(self, name: str) -> list[str]:
        """Return the first value of every tag called ``name``."""
        return [tag[1] for tag in self.tags if len(tag) > 1 and tag[0] == name]

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": self.tags,
            "content": self.content,
            "sig": self.sig,
        }
