"""Encrypted file attachments for form responses.

A respondent's file is base64-encoded, encrypted to the form author's public
key and uploaded to a blob host. The returned :class:`FileTransferMetadata`
is embedded in the response so it can be fetched and decrypted later by:

1. the form author, with the form's edit key and the uploader's public key;
2. an anonymous uploader, with the ephemeral key used for the upload;
3. an identified uploader, with their signer.

Uploads with an ephemeral key use the large-payload envelope, since files
routinely exceed what NIP-44 can carry.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from formstr_core.core.errors import (
    EncryptionNotSupportedError,
    EnvelopeFormatError,
    PayloadTooLargeError,
)
from formstr_core.core.security import get_public_key, now_seconds, secret_key_from_hex
from formstr_core.core.settings import settings
from formstr_core.schemas.blob import FileTransferMetadata
from formstr_core.services.blob import BlobClient
from formstr_core.services.blob_auth import create_auth_header
from formstr_core.services.crypto import NIP44_MAX_PLAINTEXT, CryptoService
from formstr_core.services.envelope import decrypt_large_text, encrypt_large
from formstr_core.services.signer import (
    EncryptionCapable,
    NostrSigner,
    WriteAuthenticator,
    resolve_signer,
)
from formstr_core.utils.hash import sha256_hexdigest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncryptedFile:
    ciphertext: str
    uploader_pubkey: str


def _decode_file(plaintext_b64: str) -> bytes:
    if not plaintext_b64:
        raise EnvelopeFormatError("Decrypted file is empty")
    try:
        return base64.b64decode(plaintext_b64, validate=True)
    except (binascii.Error, ValueError) as err:
        raise EnvelopeFormatError(f"Decrypted file is not valid base64: {err}") from err


async def encrypt_file_to_author(
    file_bytes: bytes,
    form_author_pubkey: str,
    responder_secret_key: bytes | None = None,
    *,
    signer: NostrSigner | WriteAuthenticator | None = None,
) -> EncryptedFile:
    """Encrypt ``file_bytes`` so only the form author (and the uploader) can read it.

    Args:
        file_bytes: Raw file content.
        form_author_pubkey: Hex public key the file is encrypted to.
        responder_secret_key: Ephemeral key for anonymous submissions. When
            omitted the signer encrypts instead.
        signer: Signer or authenticator for identified submissions.

    Returns:
        The ciphertext and the public key it was encrypted from.
    """
    plaintext_b64 = base64.b64encode(file_bytes).decode("ascii")

    if responder_secret_key is not None:
        uploader_pubkey = get_public_key(responder_secret_key)
        conversation_key = CryptoService.get_conversation_key(responder_secret_key, form_author_pubkey)
        return EncryptedFile(encrypt_large(plaintext_b64, conversation_key), uploader_pubkey)

    resolved = await resolve_signer(signer)
    if not isinstance(resolved, EncryptionCapable):
        raise EncryptionNotSupportedError("Signer does not support NIP-44 encryption")
    if len(plaintext_b64) > NIP44_MAX_PLAINTEXT:
        raise PayloadTooLargeError(
            f"File of {len(file_bytes)} bytes is too large for signer encryption; "
            "upload it with an ephemeral key instead",
            size=len(plaintext_b64),
            limit=NIP44_MAX_PLAINTEXT,
        )
    uploader_pubkey = await resolved.get_public_key()
    ciphertext = await resolved.nip44_encrypt(form_author_pubkey, plaintext_b64)
    return EncryptedFile(ciphertext, uploader_pubkey)


def decrypt_file_from_uploader(ciphertext: str, form_edit_key_hex: str, uploader_pubkey: str) -> bytes:
    """Decrypt as the form author, using the form's edit key."""
    conversation_key = CryptoService.get_conversation_key(
        secret_key_from_hex(form_edit_key_hex), uploader_pubkey
    )
    return _decode_file(decrypt_large_text(ciphertext, conversation_key))


def decrypt_file_as_uploader(ciphertext: str, uploader_secret_key: bytes, form_author_pubkey: str) -> bytes:
    """Decrypt as an anonymous uploader holding the ephemeral key."""
    conversation_key = CryptoService.get_conversation_key(uploader_secret_key, form_author_pubkey)
    return _decode_file(decrypt_large_text(ciphertext, conversation_key))


async def decrypt_file_with_signer(
    ciphertext: str,
    form_author_pubkey: str,
    signer: NostrSigner | WriteAuthenticator | None = None,
) -> bytes:
    """Decrypt as an identified uploader through their signer."""
    resolved = await resolve_signer(signer)
    if not isinstance(resolved, EncryptionCapable):
        raise EncryptionNotSupportedError("Signer does not support NIP-44 decryption")
    return _decode_file(await resolved.nip44_decrypt(form_author_pubkey, ciphertext))


@asynccontextmanager
async def _client_for(server: str, client: BlobClient | None) -> AsyncIterator[BlobClient]:
    if client is not None:
        yield client
        return
    async with BlobClient(server) as owned:
        yield owned


async def upload_encrypted_file(
    file_bytes: bytes,
    filename: str,
    form_author_pubkey: str,
    *,
    mime_type: str = "application/octet-stream",
    server: str | None = None,
    responder_secret_key: bytes | None = None,
    signer: NostrSigner | WriteAuthenticator | None = None,
    client: BlobClient | None = None,
) -> FileTransferMetadata:
    """Encrypt, authorize and upload a file; return metadata for the response.

    The host's hash in the returned descriptor is recorded, not the locally
    computed one.
    """
    server = server or settings.default_blob_server
    encrypted = await encrypt_file_to_author(
        file_bytes, form_author_pubkey, responder_secret_key, signer=signer
    )
    payload = encrypted.ciphertext.encode("utf-8")
    local_hash = sha256_hexdigest(payload)
    auth_header = await create_auth_header(
        "upload", local_hash, secret_key=responder_secret_key, signer=signer
    )

    async with _client_for(server, client) as blob_client:
        descriptor = await blob_client.upload(payload, auth_header)

    if descriptor.sha256 != local_hash:
        logger.info("Host %s stored %s under %s", server, local_hash[:12], descriptor.sha256[:12])
    return FileTransferMetadata(
        sha256=descriptor.sha256,
        filename=filename,
        size=len(file_bytes),
        mime_type=mime_type,
        server=server,
        uploaded_at=now_seconds(),
        uploader_pubkey=encrypted.uploader_pubkey,
    )


async def download_encrypted_file(
    metadata: FileTransferMetadata,
    *,
    form_edit_key: str | None = None,
    uploader_pubkey: str | None = None,
    uploader_secret_key: bytes | None = None,
    form_author_pubkey: str | None = None,
    use_signer: bool = False,
    signer: NostrSigner | WriteAuthenticator | None = None,
    client: BlobClient | None = None,
) -> bytes:
    """Download and decrypt a file described by ``metadata``.

    Exactly one key combination must be supplied:

    - ``form_edit_key`` (hex) with the uploader's pubkey (taken from
      ``metadata`` when not given), for the form author;
    - ``uploader_secret_key`` with ``form_author_pubkey``, for an anonymous
      uploader;
    - ``use_signer=True`` with ``form_author_pubkey``, for an identified uploader.

    Raises:
        ValueError: If no usable key combination was provided.
    """
    uploader_pubkey = uploader_pubkey or metadata.uploader_pubkey

    if form_edit_key:
        auth_header = await create_auth_header(
            "get", metadata.sha256, secret_key=secret_key_from_hex(form_edit_key)
        )
    elif uploader_secret_key is not None:
        auth_header = await create_auth_header("get", metadata.sha256, secret_key=uploader_secret_key)
    elif use_signer:
        auth_header = await create_auth_header("get", metadata.sha256, signer=signer)
    else:
        raise ValueError("Either form_edit_key, uploader_secret_key, or use_signer must be provided")

    async with _client_for(metadata.server, client) as blob_client:
        downloaded = await blob_client.download(metadata.sha256, auth_header)
    try:
        ciphertext = downloaded.decode("utf-8")
    except UnicodeDecodeError as err:
        raise EnvelopeFormatError(f"Downloaded blob is not an encrypted file: {err}") from err

    if form_edit_key and uploader_pubkey:
        plaintext = decrypt_file_from_uploader(ciphertext, form_edit_key, uploader_pubkey)
    elif uploader_secret_key is not None and form_author_pubkey:
        plaintext = decrypt_file_as_uploader(ciphertext, uploader_secret_key, form_author_pubkey)
    elif use_signer and form_author_pubkey:
        plaintext = await decrypt_file_with_signer(ciphertext, form_author_pubkey, signer)
    else:
        raise ValueError("Invalid key combination for decryption")

    logger.debug("Downloaded %s (%d bytes)", metadata.filename, len(plaintext))
    return plaintext
