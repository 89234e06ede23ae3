"""Short-lived, verb-scoped authorization tokens for blob hosts.

A token is a signed kind-24242 event carrying the verb (``t`` tag), an
``expiration`` timestamp and, for content-bound verbs, the blob hash
(``x`` tag). It travels base64-encoded as ``Authorization: Nostr <token>``.
Tokens are minted per operation and never cached.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from typing import Literal

from formstr_core.core.security import finalize_event, now_seconds
from formstr_core.core.settings import settings
from formstr_core.schemas.event import KIND_BLOB_AUTH, EventTemplate, NostrEvent
from formstr_core.services.signer import NostrSigner, WriteAuthenticator, resolve_signer

logger = logging.getLogger(__name__)

BlobVerb = Literal["upload", "get", "delete"]
_VERBS: tuple[str, ...] = ("upload", "get", "delete")
_DEFAULT_CONTENT = {"upload": "Upload blob", "delete": "Delete blob"}


@dataclass(frozen=True)
class BlobAuthToken:
    """Signed authorization for one blob operation."""

    verb: str
    resource_hash: str | None
    expiration: int
    event: NostrEvent

    @property
    def signature(self) -> str:
        return self.event.sig

    @property
    def authorization_header(self) -> str:
        raw = json.dumps(self.event.to_wire(), separators=(",", ":"), ensure_ascii=False)
        return f"Nostr {base64.b64encode(raw.encode('utf-8')).decode('ascii')}"


def build_auth_template(
    verb: str,
    sha256_or_content: str,
    ttl_seconds: int,
    *,
    content: str | None = None,
    now: int | None = None,
) -> tuple[EventTemplate, str | None]:
    """Return the unsigned token event and the hash it is bound to (if any)."""
    if verb not in _VERBS:
        raise ValueError(f"Unsupported blob verb: {verb}")
    if ttl_seconds <= 0:
        raise ValueError("Token TTL must be positive")

    created_at = now if now is not None else now_seconds()
    tags = [["t", verb], ["expiration", str(created_at + ttl_seconds)]]
    bound_hash: str | None = None

    if content is not None:
        tags.append(["x", sha256_or_content])
        bound_hash = sha256_or_content
    elif verb in _DEFAULT_CONTENT:
        content = _DEFAULT_CONTENT[verb]
        tags.append(["x", sha256_or_content])
        bound_hash = sha256_or_content
    else:
        # "get" without explicit content keeps the hash as content only.
        content = sha256_or_content

    return EventTemplate(kind=KIND_BLOB_AUTH, created_at=created_at, tags=tags, content=content), bound_hash


async def create_auth_token(
    verb: BlobVerb,
    sha256_or_content: str,
    ttl_seconds: int | None = None,
    *,
    secret_key: bytes | None = None,
    signer: NostrSigner | WriteAuthenticator | None = None,
    content: str | None = None,
) -> BlobAuthToken:
    """Mint a blob authorization token.

    Args:
        verb: Operation the token authorizes.
        sha256_or_content: Blob hash, or free-form content for ``get``.
        ttl_seconds: Lifetime; defaults to ``settings.blob_token_ttl_seconds``.
        secret_key: Raw key to sign with (ephemeral or form keys).
        signer: Signer or authenticator used when no raw key is given. When
            both are omitted the session signer manager is asked, which may
            wait for the user.
        content: Optional human-readable content; binds the hash as ``x``.

    Returns:
        The signed token.
    """
    ttl = settings.blob_token_ttl_seconds if ttl_seconds is None else ttl_seconds
    template, bound_hash = build_auth_template(verb, sha256_or_content, ttl, content=content)

    if secret_key is not None:
        event = finalize_event(template, secret_key)
    else:
        resolved = await resolve_signer(signer)
        event = await resolved.sign_event(template)

    expiration = template.created_at + ttl
    logger.debug("Minted %s token expiring at %d", verb, expiration)
    return BlobAuthToken(verb=verb, resource_hash=bound_hash, expiration=expiration, event=event)


async def create_auth_header(
    verb: BlobVerb,
    sha256_or_content: str,
    ttl_seconds: int | None = None,
    *,
    secret_key: bytes | None = None,
    signer: NostrSigner | WriteAuthenticator | None = None,
    content: str | None = None,
) -> str:
    """Mint a token and return it as an ``Authorization`` header value."""
    token = await create_auth_token(
        verb,
        sha256_or_content,
        ttl_seconds,
        secret_key=secret_key,
        signer=signer,
        content=content,
    )
    return token.authorization_header
