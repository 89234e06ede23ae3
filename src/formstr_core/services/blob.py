"""HTTP client for content-addressed blob hosts.

Failures fall into two classes callers must be able to tell apart:

- :class:`TransportFailureError`: the request never completed (DNS, TLS,
  connection refused, timeout, or a cross-origin refusal). ``origin_blocked``
  marks the cross-origin case.
- :class:`ProtocolFailureError`: the host answered with a non-success status.
  The host's ``X-Reason`` header is surfaced when present.

The hash returned by ``upload`` is the host's own and is authoritative.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import httpx
from pydantic import ValidationError

from formstr_core.core.errors import ProtocolFailureError, TransportFailureError
from formstr_core.core.settings import settings
from formstr_core.schemas.blob import BlobDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlobClientConfig:
    """Immutable configuration for blob host requests."""

    timeout_seconds: float
    origin: str | None


def load_blob_client_config() -> BlobClientConfig:
    """Build configuration object from global settings."""

    return BlobClientConfig(
        timeout_seconds=float(settings.blob_http_timeout_seconds),
        origin=settings.blob_client_origin,
    )


class BlobClient:
    """Upload, download and delete blobs on a single host."""

    def __init__(
        self,
        base_url: str,
        config: BlobClientConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.config = config or load_blob_client_config()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    async def __aenter__(self) -> BlobClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    def _origin_allowed(self, response: httpx.Response) -> bool:
        if self.config.origin is None:
            return True
        allowed = response.headers.get("access-control-allow-origin")
        return allowed in ("*", self.config.origin)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        auth_header: str | None = None,
        content: bytes | None = None,
        content_type: str | None = None,
    ) -> httpx.Response:
        client = await self._ensure_client()
        url = f"{self.base_url}{path}"
        headers: dict[str, str] = {}
        if auth_header:
            headers["Authorization"] = auth_header
        if content_type:
            headers["Content-Type"] = content_type
        if self.config.origin:
            headers["Origin"] = self.config.origin

        try:
            response = await client.request(method, url, content=content, headers=headers)
        except httpx.TransportError as exc:
            logger.warning("Blob host %s unreachable: %s", self.base_url, exc)
            raise TransportFailureError(
                f"Network error: unable to reach {self.base_url}: {exc}",
                url=url,
            ) from exc

        if not self._origin_allowed(response):
            logger.warning(
                "Blob host %s refused cross-origin request from %s", self.base_url, self.config.origin
            )
            raise TransportFailureError(
                f"Network error: {self.base_url} does not allow requests from origin "
                f"{self.config.origin}. Try a different server.",
                url=url,
                origin_blocked=True,
            )

        if not response.is_success:
            reason = response.headers.get("X-Reason") or response.reason_phrase or "request failed"
            logger.debug("%s %s -> %d (%s)", method, url, response.status_code, reason)
            raise ProtocolFailureError(
                f"Blob host rejected {method} {path}: {reason}",
                status_code=response.status_code,
                reason=reason,
            )
        return response

    async def upload(self, blob: bytes, auth_header: str) -> BlobDescriptor:
        """Store ``blob`` and return the host's descriptor."""
        response = await self._request(
            "PUT",
            "/upload",
            auth_header=auth_header,
            content=blob,
            content_type="application/octet-stream",
        )
        try:
            descriptor = BlobDescriptor.model_validate_json(response.content)
        except ValidationError as exc:
            raise ProtocolFailureError(
                "Blob host returned an invalid upload descriptor",
                status_code=response.status_code,
            ) from exc
        logger.info("Uploaded %d bytes to %s as %s", len(blob), self.base_url, descriptor.sha256)
        return descriptor

    async def download(self, sha256: str, auth_header: str | None = None) -> bytes:
        """Fetch the blob addressed by ``sha256``."""
        response = await self._request("GET", f"/{sha256}", auth_header=auth_header)
        return response.content

    async def delete(self, sha256: str, auth_header: str) -> None:
        """Remove the blob addressed by ``sha256``."""
        await self._request("DELETE", f"/{sha256}", auth_header=auth_header)

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""

        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
