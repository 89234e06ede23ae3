# src/formstr_core/utils/hash.py
"""SHA-256 helpers used for event ids and blob addressing."""

from __future__ import annotations

import hashlib


def sha256_digest(data: bytes) -> bytes:
    """Return the byte digest of the supplied data."""
    return hashlib.sha256(data).digest()


def sha256_hexdigest(data: bytes) -> str:
    """Return the hexadecimal digest of the supplied data.

    Blob hosts address content by this value.
    """
    return hashlib.sha256(data).hexdigest()
