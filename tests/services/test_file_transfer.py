# mypy: ignore-errors
"""Tests for encrypted file upload and the three download paths."""

from __future__ import annotations

import base64
import json

import httpx
import pytest

from formstr_core.core.errors import (
    DecryptionFailedError,
    EnvelopeFormatError,
    PayloadTooLargeError,
    TransportFailureError,
)
from formstr_core.core.security import generate_secret_key, get_public_key
from formstr_core.schemas.blob import FileTransferMetadata
from formstr_core.schemas.event import NostrEvent
from formstr_core.services.blob import BlobClient, BlobClientConfig
from formstr_core.services.file_transfer import (
    decrypt_file_as_uploader,
    download_encrypted_file,
    encrypt_file_to_author,
    upload_encrypted_file,
)
from formstr_core.utils.hash import sha256_hexdigest
from tests.fakes import AUTHOR_SECRET_HEX

SERVER = "https://blobs.example"
FILE_BYTES = b"%PDF-1.7 " + bytes(range(256)) * 300


class FakeBlobHost:
    """Content-addressed store that records the verbs it was authorized for."""

    def __init__(self, *, rename: bool = False) -> None:
        self.blobs: dict[str, bytes] = {}
        self.verbs: list[str] = []
        self.rename = rename

    def _verb(self, request: httpx.Request) -> str:
        scheme, encoded = request.headers["Authorization"].split(" ", 1)
        assert scheme == "Nostr"
        event = NostrEvent.model_validate(json.loads(base64.b64decode(encoded)))
        return event.tag_values("t")[0]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.verbs.append(self._verb(request))
        if request.method == "PUT":
            digest = sha256_hexdigest(request.content)
            if self.rename:
                digest = sha256_hexdigest(digest.encode())
            self.blobs[digest] = request.content
            return httpx.Response(200, json={"sha256": digest, "size": len(request.content)})
        blob = self.blobs.get(request.url.path.lstrip("/"))
        if blob is None:
            return httpx.Response(404)
        return httpx.Response(200, content=blob)

    def client(self) -> BlobClient:
        return BlobClient(SERVER, BlobClientConfig(timeout_seconds=5.0, origin=None), transport=httpx.MockTransport(self))


@pytest.mark.asyncio
async def test_anonymous_upload_and_author_download(author_signer) -> None:
    host = FakeBlobHost()
    ephemeral = generate_secret_key()

    async with host.client() as client:
        metadata = await upload_encrypted_file(
            FILE_BYTES,
            "report.pdf",
            author_signer.pubkey,
            mime_type="application/pdf",
            server=SERVER,
            responder_secret_key=ephemeral,
            client=client,
        )
        downloaded = await download_encrypted_file(metadata, form_edit_key=AUTHOR_SECRET_HEX, client=client)

    assert downloaded == FILE_BYTES
    assert metadata.uploader_pubkey == get_public_key(ephemeral)
    assert metadata.size == len(FILE_BYTES)
    assert metadata.mime_type == "application/pdf"
    assert metadata.server == SERVER
    assert FILE_BYTES not in next(iter(host.blobs.values()))
    assert host.verbs == ["upload", "get"]


@pytest.mark.asyncio
async def test_anonymous_uploader_downloads_own_file(author_signer) -> None:
    host = FakeBlobHost()
    ephemeral = generate_secret_key()

    async with host.client() as client:
        metadata = await upload_encrypted_file(
            FILE_BYTES, "a.bin", author_signer.pubkey, responder_secret_key=ephemeral, client=client, server=SERVER
        )
        downloaded = await download_encrypted_file(
            metadata, uploader_secret_key=ephemeral, form_author_pubkey=author_signer.pubkey, client=client
        )

    assert downloaded == FILE_BYTES


@pytest.mark.asyncio
async def test_identified_uploader_downloads_with_signer(author_signer, other_signer) -> None:
    host = FakeBlobHost()
    small_file = b"small attachment"

    async with host.client() as client:
        metadata = await upload_encrypted_file(
            small_file, "note.txt", author_signer.pubkey, signer=other_signer, client=client, server=SERVER
        )
        downloaded = await download_encrypted_file(
            metadata,
            use_signer=True,
            signer=other_signer,
            form_author_pubkey=author_signer.pubkey,
            client=client,
        )

    assert metadata.uploader_pubkey == other_signer.pubkey
    assert downloaded == small_file


@pytest.mark.asyncio
async def test_server_hash_is_authoritative(author_signer) -> None:
    host = FakeBlobHost(rename=True)
    ephemeral = generate_secret_key()

    async with host.client() as client:
        metadata = await upload_encrypted_file(
            b"data", "d.bin", author_signer.pubkey, responder_secret_key=ephemeral, client=client, server=SERVER
        )

    stored_hash, stored = next(iter(host.blobs.items()))
    assert metadata.sha256 == stored_hash
    assert metadata.sha256 != sha256_hexdigest(stored)


@pytest.mark.asyncio
async def test_download_requires_a_key_combination(author_signer) -> None:
    metadata = FileTransferMetadata(
        sha256="ab" * 32, filename="x", size=1, server=SERVER, uploaded_at=1, uploader_pubkey=author_signer.pubkey
    )
    with pytest.raises(ValueError):
        await download_encrypted_file(metadata)


@pytest.mark.asyncio
async def test_wrong_ephemeral_key_fails_decryption(author_signer) -> None:
    encrypted = await encrypt_file_to_author(b"secret", author_signer.pubkey, generate_secret_key())
    with pytest.raises(DecryptionFailedError):
        decrypt_file_as_uploader(encrypted.ciphertext, generate_secret_key(), author_signer.pubkey)


@pytest.mark.asyncio
async def test_blocked_origin_surfaces_as_transport_failure(author_signer) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"sha256": "ab" * 32})

    client = BlobClient(
        SERVER,
        BlobClientConfig(timeout_seconds=5.0, origin="https://formstr.app"),
        transport=httpx.MockTransport(handler),
    )
    async with client:
        with pytest.raises(TransportFailureError) as excinfo:
            await upload_encrypted_file(
                b"data", "d.bin", author_signer.pubkey, responder_secret_key=generate_secret_key(), client=client
            )

    assert excinfo.value.origin_blocked


def test_metadata_round_trips_through_response_value(author_signer) -> None:
    metadata = FileTransferMetadata(
        sha256="ab" * 32,
        filename="report.pdf",
        size=10,
        mime_type="application/pdf",
        server=SERVER,
        uploaded_at=1_700_000_000,
        uploader_pubkey=author_signer.pubkey,
    )
    value = metadata.to_response_value()

    assert '"mimeType":"application/pdf"' in value
    assert FileTransferMetadata.from_response_value(value) == metadata
    assert FileTransferMetadata.from_response_value("plain answer") is None
    assert FileTransferMetadata.from_response_value("") is None


@pytest.mark.asyncio
async def test_signer_upload_beyond_nip44_limit_is_typed(author_signer, other_signer) -> None:
    host = FakeBlobHost()

    async with host.client() as client:
        with pytest.raises(PayloadTooLargeError) as excinfo:
            await upload_encrypted_file(
                b"x" * 100_000, "big.bin", author_signer.pubkey, signer=other_signer, client=client, server=SERVER
            )

    assert excinfo.value.limit == 65535
    assert excinfo.value.size > excinfo.value.limit
    assert host.verbs == []


@pytest.mark.asyncio
async def test_undecodable_blob_is_a_format_error(author_signer) -> None:
    host = FakeBlobHost()
    digest = "cd" * 32
    host.blobs[digest] = b"\xff\xfe not text"
    metadata = FileTransferMetadata(
        sha256=digest, filename="x", size=1, server=SERVER, uploaded_at=1, uploader_pubkey=author_signer.pubkey
    )

    async with host.client() as client:
        with pytest.raises(EnvelopeFormatError):
            await download_encrypted_file(metadata, form_edit_key=AUTHOR_SECRET_HEX, client=client)
