"""Signing capabilities and the per-session signer manager.

Relay authentication has two contexts. The read path answers challenges
opportunistically and must never wait on the user, so it only sees a
:class:`ReadAuthenticator`. The write path may prompt the user's identity
provider, so it goes through a :class:`WriteAuthenticator`. Keeping the two
as separate protocols makes it explicit which call sites can block.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from formstr_core.core.errors import SignerUnavailableError
from formstr_core.core.security import finalize_event, get_public_key
from formstr_core.schemas.event import EventTemplate, NostrEvent
from formstr_core.services.crypto import CryptoService

logger = logging.getLogger(__name__)


@runtime_checkable
class NostrSigner(Protocol):
    """Anything that can sign events for one identity."""

    async def get_public_key(self) -> str: ...

    async def sign_event(self, template: EventTemplate) -> NostrEvent: ...


@runtime_checkable
class EncryptionCapable(Protocol):
    """Signer that also exposes NIP-44 encryption to a peer public key."""

    async def nip44_encrypt(self, pubkey: str, plaintext: str) -> str: ...

    async def nip44_decrypt(self, pubkey: str, ciphertext: str) -> str: ...


@runtime_checkable
class ReadAuthenticator(Protocol):
    """Passive signer lookup used for read-path relay authentication."""

    def signer_if_available(self) -> NostrSigner | None: ...


@runtime_checkable
class WriteAuthenticator(Protocol):
    """On-demand signer resolution; may wait for user interaction."""

    async def require_signer(self) -> NostrSigner: ...


class LocalKeySigner:
    """Signer holding a raw secret key in memory."""

    def __init__(self, secret_key: bytes) -> None:
        self._secret_key = bytes(secret_key)
        self._pubkey = get_public_key(self._secret_key)

    @property
    def pubkey(self) -> str:
        return self._pubkey

    async def get_public_key(self) -> str:
        return self._pubkey

    async def sign_event(self, template: EventTemplate) -> NostrEvent:
        return finalize_event(template, self._secret_key)

    async def nip44_encrypt(self, pubkey: str, plaintext: str) -> str:
        conversation_key = CryptoService.get_conversation_key(self._secret_key, pubkey)
        return CryptoService.nip44_encrypt(plaintext, conversation_key)

    async def nip44_decrypt(self, pubkey: str, ciphertext: str) -> str:
        conversation_key = CryptoService.get_conversation_key(self._secret_key, pubkey)
        return CryptoService.nip44_decrypt(ciphertext, conversation_key)

    def __repr__(self) -> str:
        return f"LocalKeySigner(pubkey={self._pubkey[:12]}...)"


LoginHandler = Callable[[], Awaitable[NostrSigner]]


class SignerManager:
    """Holds the session's single active signing capability.

    ``signer_if_available`` never blocks. ``require_signer`` returns the
    active signer or, when none is set, awaits the configured login handler
    (typically a prompt in the host application) and keeps its result.
    """

    def __init__(self, login_handler: LoginHandler | None = None) -> None:
        self._signer: NostrSigner | None = None
        self._login_handler = login_handler

    def set_signer(self, signer: NostrSigner) -> None:
        if self._signer is not None and self._signer is not signer:
            logger.info("Replacing active signer")
        self._signer = signer

    def clear(self) -> None:
        self._signer = None

    def set_login_handler(self, handler: LoginHandler | None) -> None:
        self._login_handler = handler

    def signer_if_available(self) -> NostrSigner | None:
        return self._signer

    async def require_signer(self) -> NostrSigner:
        if self._signer is not None:
            return self._signer
        if self._login_handler is None:
            raise SignerUnavailableError("No signer available and no login handler configured")
        logger.debug("No active signer; invoking login handler")
        signer = await self._login_handler()
        self._signer = signer
        return signer


class _SignerManagerSingleton:
    """Singleton wrapper for SignerManager."""

    _instance: SignerManager | None = None

    @classmethod
    def get_instance(cls) -> SignerManager:
        if cls._instance is None:
            cls._instance = SignerManager()
        return cls._instance


def get_signer_manager() -> SignerManager:
    """Return the process-wide signer manager."""
    return _SignerManagerSingleton.get_instance()


async def resolve_signer(signer: NostrSigner | WriteAuthenticator | None = None) -> NostrSigner:
    """Turn an explicit signer, an authenticator or nothing into a signer.

    With nothing supplied the process-wide manager is asked, which may wait
    for the user to log in.
    """
    if signer is None:
        return await get_signer_manager().require_signer()
    if isinstance(signer, WriteAuthenticator) and not isinstance(signer, NostrSigner):
        return await signer.require_signer()
    return signer
