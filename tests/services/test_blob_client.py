# mypy: ignore-errors
"""Tests for the blob host HTTP client."""

from __future__ import annotations

import json

import httpx
import pytest

from formstr_core.core.errors import ProtocolFailureError, TransportFailureError
from formstr_core.services.blob import BlobClient, BlobClientConfig

SERVER = "https://blobs.example"
APP_ORIGIN = "https://formstr.app"
SERVER_HASH = "ab" * 32
AUTH = "Nostr dG9rZW4="


def _client(handler, origin: str | None = None) -> BlobClient:
    return BlobClient(
        SERVER + "/",
        BlobClientConfig(timeout_seconds=5.0, origin=origin),
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_upload_returns_server_descriptor() -> None:
    """The host's hash is returned even when it differs from the local one."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"sha256": SERVER_HASH, "size": 3, "url": f"{SERVER}/{SERVER_HASH}"})

    async with _client(handler) as client:
        descriptor = await client.upload(b"abc", AUTH)

    assert descriptor.sha256 == SERVER_HASH
    assert descriptor.size == 3
    request = seen[0]
    assert request.method == "PUT"
    assert str(request.url) == f"{SERVER}/upload"
    assert request.headers["Authorization"] == AUTH
    assert request.headers["Content-Type"] == "application/octet-stream"
    assert request.content == b"abc"


@pytest.mark.asyncio
async def test_download_and_delete_address_blob_by_hash() -> None:
    calls: list[tuple[str, str, str | None]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path, request.headers.get("Authorization")))
        if request.method == "GET":
            return httpx.Response(200, content=b"ciphertext")
        return httpx.Response(204)

    async with _client(handler) as client:
        body = await client.download(SERVER_HASH)
        await client.delete(SERVER_HASH, AUTH)

    assert body == b"ciphertext"
    assert calls == [("GET", f"/{SERVER_HASH}", None), ("DELETE", f"/{SERVER_HASH}", AUTH)]


@pytest.mark.asyncio
async def test_error_status_surfaces_server_reason() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, headers={"X-Reason": "Auth event expired"})

    async with _client(handler) as client:
        with pytest.raises(ProtocolFailureError) as excinfo:
            await client.download(SERVER_HASH, AUTH)

    assert excinfo.value.status_code == 401
    assert excinfo.value.reason == "Auth event expired"


@pytest.mark.asyncio
async def test_error_status_falls_back_to_reason_phrase() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    async with _client(handler) as client:
        with pytest.raises(ProtocolFailureError) as excinfo:
            await client.download(SERVER_HASH)

    assert excinfo.value.reason == "Not Found"


@pytest.mark.asyncio
async def test_network_error_is_transport_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(TransportFailureError) as excinfo:
            await client.upload(b"abc", AUTH)

    assert not excinfo.value.origin_blocked


@pytest.mark.asyncio
async def test_missing_allow_origin_is_flagged_as_origin_blocked() -> None:
    """An upload the host would not expose to this origin is a transport failure."""
    origins: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        origins.append(request.headers.get("Origin"))
        return httpx.Response(200, json={"sha256": SERVER_HASH})

    async with _client(handler, origin=APP_ORIGIN) as client:
        with pytest.raises(TransportFailureError) as excinfo:
            await client.upload(b"abc", AUTH)

    assert excinfo.value.origin_blocked
    assert origins == [APP_ORIGIN]


@pytest.mark.asyncio
async def test_matching_allow_origin_is_accepted() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"sha256": SERVER_HASH},
            headers={"Access-Control-Allow-Origin": APP_ORIGIN},
        )

    async with _client(handler, origin=APP_ORIGIN) as client:
        descriptor = await client.upload(b"abc", AUTH)

    assert descriptor.sha256 == SERVER_HASH


@pytest.mark.asyncio
async def test_invalid_descriptor_is_protocol_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=json.dumps({"url": "missing hash"}).encode())

    async with _client(handler) as client:
        with pytest.raises(ProtocolFailureError):
            await client.upload(b"abc", AUTH)
