"""Pydantic schemas shared across formstr_core."""

from .blob import BlobDescriptor, FileTransferMetadata
from .event import KIND_BLOB_AUTH, KIND_CLIENT_AUTH, EventTemplate, Filter, NostrEvent
from .storage import StorageMetadata

__all__ = [
    "BlobDescriptor",
    "FileTransferMetadata",
    "EventTemplate",
    "Filter",
    "NostrEvent",
    "KIND_BLOB_AUTH",
    "KIND_CLIENT_AUTH",
    "StorageMetadata",
]
