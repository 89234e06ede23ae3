"""Identity keys and event signatures built on secp256k1 Schnorr primitives."""
from __future__ import annotations

import json
import secrets
import time

from coincurve import PrivateKey, PublicKeyXOnly

from formstr_core.schemas.event import EventTemplate, NostrEvent
from formstr_core.utils.hash import sha256_digest

SECRET_KEY_BYTES = 32
_PUBKEY_HEX_LENGTH = 64
_SIGNATURE_HEX_LENGTH = 128


def generate_secret_key() -> bytes:
    """Return a fresh 32-byte secp256k1 secret key."""
    while True:
        candidate = secrets.token_bytes(SECRET_KEY_BYTES)
        try:
            PrivateKey(candidate)
        except ValueError:  # pragma: no cover - probability ~2^-128
            continue
        return candidate


def get_public_key(secret_key: bytes) -> str:
    """Return the hex-encoded x-only public key for ``secret_key``."""
    try:
        compressed = PrivateKey(secret_key).public_key.format(compressed=True)
    except (TypeError, ValueError) as err:
        raise ValueError(f"Invalid secret key: {err}") from err
    return compressed[1:].hex()


def secret_key_from_hex(secret_hex: str) -> bytes:
    try:
        secret = bytes.fromhex(secret_hex)
    except ValueError as err:
        raise ValueError(f"Invalid secret key hex: {err}") from err
    if len(secret) != SECRET_KEY_BYTES:
        raise ValueError("Secret keys must be 32 bytes")
    return secret


def now_seconds() -> int:
    return int(time.time())


def serialize_event(pubkey: str, template: EventTemplate) -> bytes:
    """Return the canonical byte serialization whose hash is the event id."""
    payload = [0, pubkey, template.created_at, template.kind, template.tags, template.content]
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_event_id(pubkey: str, template: EventTemplate) -> str:
    return sha256_digest(serialize_event(pubkey, template)).hex()


def finalize_event(template: EventTemplate, secret_key: bytes) -> NostrEvent:
    """Sign ``template`` with ``secret_key`` and return the complete event.

    Args:
        template: Unsigned event fields.
        secret_key: Raw 32-byte secret key.

    Returns:
        The signed event with id, pubkey and signature filled in.
    """
    pubkey = get_public_key(secret_key)
    event_id = compute_event_id(pubkey, template)
    signature = PrivateKey(secret_key).sign_schnorr(bytes.fromhex(event_id))
    return NostrEvent(
        id=event_id,
        pubkey=pubkey,
        created_at=template.created_at,
        kind=template.kind,
        tags=[list(tag) for tag in template.tags],
        content=template.content,
        sig=signature.hex(),
    )


def verify_event(event: NostrEvent) -> bool:
    """Verify an event's id and Schnorr signature.

    Returns:
        True if the id matches the content and the signature is valid for
        the event's pubkey; False otherwise.
    """
    if len(event.pubkey) != _PUBKEY_HEX_LENGTH or len(event.sig) != _SIGNATURE_HEX_LENGTH:
        return False
    try:
        if compute_event_id(event.pubkey, event) != event.id:
            return False
        pubkey = PublicKeyXOnly(bytes.fromhex(event.pubkey))
        return bool(pubkey.verify(bytes.fromhex(event.sig), bytes.fromhex(event.id)))
    except (ValueError, TypeError):
        return False
