# src/formstr_core/services/__init__.py
"""Relay, blob, crypto and storage services for Formstr clients."""

from .blob import BlobClient
from .crypto import CryptoService
from .local_store import EncryptedLocalStore
from .relay_pool import PublishOutcome, RelayPool, get_relay_pool
from .signer import LocalKeySigner, SignerManager, get_signer_manager

__all__ = [
    "BlobClient",
    "CryptoService",
    "EncryptedLocalStore",
    "PublishOutcome", "RelayPool", "get_relay_pool",
    "LocalKeySigner", "SignerManager", "get_signer_manager",
]
