"""Versioned envelope encryption for payloads larger than NIP-44 allows.

NIP-44 caps plaintexts at 64 KiB, which file uploads routinely exceed. The
envelope keeps the NIP-44 conversation key and HKDF labelling but encrypts the
whole payload in one AES-256-GCM pass:

    version (1 byte, 0x02) | salt (32 bytes) | ciphertext + GCM tag

The result is base64-encoded so it can be embedded in text protocols.
"""

from __future__ import annotations

import base64
import binascii
import logging
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from formstr_core.core.errors import (
    DecryptionFailedError,
    EnvelopeFormatError,
    UnsupportedVersionError,
)
from formstr_core.services.crypto import CONVERSATION_KEY_BYTES

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = 2
SALT_BYTES = 32
_HKDF_INFO = b"nip44-v2"
_KEY_BYTES = 32
_NONCE_BYTES = 12
_TAG_BYTES = 16
_HEADER_BYTES = 1 + SALT_BYTES


def _derive_cipher_params(conversation_key: bytes, salt: bytes) -> tuple[bytes, bytes]:
    if len(conversation_key) != CONVERSATION_KEY_BYTES:
        raise ValueError("Conversation key must be 32 bytes")
    derived = HKDF(
        algorithm=hashes.SHA256(),
        length=_KEY_BYTES + _NONCE_BYTES,
        salt=salt,
        info=_HKDF_INFO,
    ).derive(conversation_key)
    return derived[:_KEY_BYTES], derived[_KEY_BYTES:]


def encrypt_large(plaintext: bytes | str, conversation_key: bytes) -> str:
    """Encrypt a payload of any size into a base64 envelope.

    Args:
        plaintext: Raw bytes, or text which is encoded as UTF-8
        conversation_key: 32-byte key shared by sender and recipient

    Returns:
        Base64-encoded envelope
    """
    data = plaintext.encode("utf-8") if isinstance(plaintext, str) else bytes(plaintext)
    salt = secrets.token_bytes(SALT_BYTES)
    key, nonce = _derive_cipher_params(conversation_key, salt)
    ciphertext = AESGCM(key).encrypt(nonce, data, None)
    envelope = bytes([ENVELOPE_VERSION]) + salt + ciphertext
    return base64.b64encode(envelope).decode("ascii")


def decrypt_large(envelope: str | bytes, conversation_key: bytes) -> bytes:
    """Decrypt an envelope produced by :func:`encrypt_large`.

    Raises:
        EnvelopeFormatError: If the envelope is not valid base64 or is truncated
        UnsupportedVersionError: If the version byte is not 2
        DecryptionFailedError: If the GCM tag does not verify (wrong key or tampering)
    """
    try:
        payload = base64.b64decode(envelope, validate=True)
    except (binascii.Error, ValueError) as err:
        raise EnvelopeFormatError(f"Envelope is not valid base64: {err}") from err

    if not payload:
        raise EnvelopeFormatError("Envelope is empty")
    version = payload[0]
    if version != ENVELOPE_VERSION:
        raise UnsupportedVersionError(version)
    if len(payload) < _HEADER_BYTES + _TAG_BYTES:
        raise EnvelopeFormatError("Envelope is truncated")

    salt = payload[1:_HEADER_BYTES]
    ciphertext = payload[_HEADER_BYTES:]
    key, nonce = _derive_cipher_params(conversation_key, salt)
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as err:
        logger.debug("Envelope authentication failed (%d bytes)", len(payload))
        raise DecryptionFailedError("Envelope authentication failed") from err


def decrypt_large_text(envelope: str | bytes, conversation_key: bytes) -> str:
    """Decrypt an envelope whose plaintext is UTF-8 text."""
    return decrypt_large(envelope, conversation_key).decode("utf-8")
