"""Encryption-at-rest for the locally saved forms collection.

The collection lives in three records of the ``local_storage`` table:

- ``formstr:forms``: the plaintext JSON list
- ``formstr:forms-encrypted``: the NIP-44 ciphertext of that list
- ``formstr:forms-meta``: :class:`StorageMetadata` describing which of the two
  is authoritative and, when encrypted, which identity owns it

Every state change writes metadata and data in a single transaction, so a
failure leaves the previous state intact. Operations return result objects
rather than raising; ``raise_for_error()`` converts a failed result into the
matching exception.
"""

from __future__ import annotations

import enum
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from formstr_core.core.errors import (
    EncryptionNotSupportedError,
    FormstrError,
    IdentityMismatchError,
    LoginRequiredError,
)
from formstr_core.models import StorageRecord
from formstr_core.schemas.storage import StorageMetadata
from formstr_core.services.signer import EncryptionCapable, NostrSigner

logger = logging.getLogger(__name__)

FORMS_KEY = "formstr:forms"
FORMS_ENCRYPTED_KEY = "formstr:forms-encrypted"
FORMS_META_KEY = "formstr:forms-meta"

LocalForm = dict[str, Any]
SessionFactory = Callable[[], Session]


class StorageErrorKind(str, enum.Enum):
    LOGIN_REQUIRED = "login_required"
    WRONG_KEY = "wrong_key"
    ENCRYPTION_NOT_SUPPORTED = "encryption_not_supported"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class StorageError:
    kind: StorageErrorKind
    message: str
    encrypted_by: str | None = None

    def to_exception(self) -> FormstrError:
        if self.kind is StorageErrorKind.LOGIN_REQUIRED:
            return LoginRequiredError(self.message, encrypted_by=self.encrypted_by)
        if self.kind is StorageErrorKind.WRONG_KEY:
            return IdentityMismatchError(self.message, encrypted_by=self.encrypted_by)
        if self.kind is StorageErrorKind.ENCRYPTION_NOT_SUPPORTED:
            return EncryptionNotSupportedError(self.message)
        return FormstrError(self.message)


@dataclass(frozen=True)
class StoreResult:
    """Outcome of a store operation that returns no data."""

    error: StorageError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error.to_exception()


@dataclass(frozen=True)
class ReadResult(StoreResult):
    """Outcome of ``read``; ``forms`` is empty whenever ``error`` is set."""

    forms: list[LocalForm] = field(default_factory=list)


def _login_required(meta: StorageMetadata) -> StorageError:
    return StorageError(
        StorageErrorKind.LOGIN_REQUIRED,
        "Login required to access your encrypted forms.",
        encrypted_by=meta.encrypted_by,
    )


def _wrong_key(meta: StorageMetadata, action: str) -> StorageError:
    return StorageError(
        StorageErrorKind.WRONG_KEY,
        f"{action}: forms are encrypted with a different key.",
        encrypted_by=meta.encrypted_by,
    )


def _not_supported(operation: str) -> StorageError:
    return StorageError(
        StorageErrorKind.ENCRYPTION_NOT_SUPPORTED,
        f"Your signer doesn't support NIP-44 {operation}.",
    )


def _unknown(message: str) -> StorageError:
    return StorageError(StorageErrorKind.UNKNOWN, message)


def _parse_forms(raw: str) -> list[LocalForm]:
    forms = json.loads(raw)
    if not isinstance(forms, list):
        raise ValueError("Stored forms collection is not a list")
    return forms


class EncryptedLocalStore:
    """State machine over the local forms collection.

    States are Uninitialized (no metadata), Plaintext and Encrypted(identity).
    Guards on an encrypted store are checked in a fixed order: a missing
    signer or identity gives ``login_required``; a different identity gives
    ``wrong_key`` without attempting decryption; a signer without NIP-44
    support gives ``encryption_not_supported``; anything that fails after
    that is ``unknown``.
    """

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        if session_factory is None:
            from formstr_core.db.session import SessionLocal, create_tables

            create_tables()
            session_factory = SessionLocal
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Record access
    # ------------------------------------------------------------------
    def _get(self, session: Session, key: str) -> str | None:
        record = session.get(StorageRecord, key)
        return record.value if record is not None else None

    @staticmethod
    def _put(session: Session, key: str, value: str) -> None:
        session.merge(StorageRecord(key=key, value=value))

    @staticmethod
    def _remove(session: Session, key: str) -> None:
        session.execute(delete(StorageRecord).where(StorageRecord.key == key))

    def _load_metadata(self, session: Session) -> StorageMetadata | None:
        raw = self._get(session, FORMS_META_KEY)
        if raw is None:
            return None
        try:
            return StorageMetadata.model_validate_json(raw)
        except ValidationError:
            logger.warning("Ignoring unreadable %s record", FORMS_META_KEY)
            return None

    def _load_plaintext(self, session: Session) -> list[LocalForm]:
        raw = self._get(session, FORMS_KEY)
        if raw is None:
            return []
        try:
            return _parse_forms(raw)
        except ValueError:
            logger.warning("Ignoring unreadable %s record", FORMS_KEY)
            return []

    def _snapshot(self) -> tuple[StorageMetadata | None, str | None, str | None]:
        with self._session_factory() as session:
            return (
                self._load_metadata(session),
                self._get(session, FORMS_KEY),
                self._get(session, FORMS_ENCRYPTED_KEY),
            )

    def _commit(self, puts: dict[str, str], removals: tuple[str, ...] = ()) -> StorageError | None:
        try:
            with self._session_factory() as session, session.begin():
                for key, value in puts.items():
                    self._put(session, key, value)
                for key in removals:
                    self._remove(session, key)
        except SQLAlchemyError:
            logger.exception("Local store transaction failed")
            return _unknown("Failed to save forms to local storage.")
        return None

    # ------------------------------------------------------------------
    # Metadata queries
    # ------------------------------------------------------------------
    def metadata(self) -> StorageMetadata | None:
        with self._session_factory() as session:
            return self._load_metadata(session)

    def is_encrypted(self) -> bool:
        meta = self.metadata()
        return meta is not None and meta.encrypted

    def encrypted_by(self) -> str | None:
        meta = self.metadata()
        return meta.encrypted_by if meta is not None else None

    def is_encrypted_by(self, pubkey: str) -> bool:
        meta = self.metadata()
        return meta is not None and meta.encrypted and meta.encrypted_by == pubkey

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------
    def initialize(self) -> None:
        """Record the Plaintext state if no metadata exists yet."""
        with self._session_factory() as session, session.begin():
            if self._load_metadata(session) is None:
                self._put(session, FORMS_META_KEY, StorageMetadata(encrypted=False).to_record())
                logger.debug("Initialized local store metadata")

    async def enable(self, signer: NostrSigner, identity: str) -> StoreResult:
        """Encrypt the plaintext collection under ``identity``."""
        if not isinstance(signer, EncryptionCapable):
            return StoreResult(_not_supported("encryption"))

        meta, plaintext_raw, _ = self._snapshot()
        if meta is not None and meta.encrypted:
            if meta.encrypted_by == identity:
                return StoreResult()
            return StoreResult(_wrong_key(meta, "Cannot enable encryption"))

        # The raw record is encrypted as-is so disabling restores it exactly.
        plaintext = plaintext_raw if plaintext_raw is not None else "[]"
        try:
            _parse_forms(plaintext)
            ciphertext = await signer.nip44_encrypt(identity, plaintext)
        except (FormstrError, ValueError, TypeError):
            logger.exception("Failed to enable encryption")
            return StoreResult(_unknown("Failed to enable encryption."))

        new_meta = StorageMetadata(
            encrypted=True,
            encrypted_by=identity,
            encrypted_at=datetime.now(timezone.utc),
        )
        error = self._commit(
            {FORMS_ENCRYPTED_KEY: ciphertext, FORMS_META_KEY: new_meta.to_record()},
            removals=(FORMS_KEY,),
        )
        if error is None:
            logger.info("Local forms encrypted for %s", identity[:12])
        return StoreResult(error)

    async def disable(self, signer: NostrSigner, identity: str) -> StoreResult:
        """Decrypt the collection and return to the Plaintext state."""
        meta, _, ciphertext = self._snapshot()
        if meta is None or not meta.encrypted:
            return StoreResult()
        if meta.encrypted_by != identity:
            return StoreResult(_wrong_key(meta, "Cannot disable encryption"))
        if not isinstance(signer, EncryptionCapable):
            return StoreResult(_not_supported("decryption"))

        try:
            plaintext = "[]"
            if ciphertext:
                plaintext = await signer.nip44_decrypt(identity, ciphertext)
                _parse_forms(plaintext)
        except (FormstrError, ValueError, TypeError):
            logger.exception("Failed to disable encryption")
            return StoreResult(_unknown("Failed to disable encryption."))

        error = self._commit(
            {FORMS_KEY: plaintext, FORMS_META_KEY: StorageMetadata(encrypted=False).to_record()},
            removals=(FORMS_ENCRYPTED_KEY,),
        )
        if error is None:
            logger.info("Local forms decrypted for %s", identity[:12])
        return StoreResult(error)

    # ------------------------------------------------------------------
    # Collection access
    # ------------------------------------------------------------------
    def _guard(
        self,
        meta: StorageMetadata,
        signer: NostrSigner | None,
        identity: str | None,
        action: str,
        operation: str,
    ) -> tuple[EncryptionCapable, str] | StorageError:
        """Return the signer and identity to use, or the error that blocks access."""
        if signer is None or identity is None:
            return _login_required(meta)
        if meta.encrypted_by != identity:
            return _wrong_key(meta, action)
        if not isinstance(signer, EncryptionCapable):
            return _not_supported(operation)
        return signer, identity

    async def read(
        self,
        signer: NostrSigner | None = None,
        identity: str | None = None,
    ) -> ReadResult:
        with self._session_factory() as session:
            meta = self._load_metadata(session)
            if meta is None or not meta.encrypted:
                return ReadResult(forms=self._load_plaintext(session))
            ciphertext = self._get(session, FORMS_ENCRYPTED_KEY)

        guarded = self._guard(meta, signer, identity, "Cannot read", "decryption")
        if isinstance(guarded, StorageError):
            return ReadResult(error=guarded)
        if not ciphertext:
            return ReadResult()

        crypto, owner = guarded
        try:
            plaintext = await crypto.nip44_decrypt(owner, ciphertext)
            return ReadResult(forms=_parse_forms(plaintext))
        except (FormstrError, ValueError, TypeError):
            logger.exception("Failed to decrypt forms")
            return ReadResult(error=_unknown("Failed to decrypt forms. The data may be corrupted."))

    async def write(
        self,
        forms: list[LocalForm],
        signer: NostrSigner | None = None,
        identity: str | None = None,
    ) -> StoreResult:
        """Persist ``forms``, encrypting when the store is encrypted.

        An encrypted store is never downgraded to plaintext by a write: without
        a signer the write fails with ``login_required``.
        """
        meta = self.metadata()
        try:
            plaintext = json.dumps(forms)
        except (TypeError, ValueError):
            logger.exception("Forms collection is not JSON serializable")
            return StoreResult(_unknown("Failed to save forms."))

        if meta is None or not meta.encrypted:
            puts = {FORMS_KEY: plaintext}
            if meta is None:
                puts[FORMS_META_KEY] = StorageMetadata(encrypted=False).to_record()
            return StoreResult(self._commit(puts))

        guarded = self._guard(meta, signer, identity, "Cannot save", "encryption")
        if isinstance(guarded, StorageError):
            return StoreResult(guarded)

        crypto, owner = guarded
        try:
            ciphertext = await crypto.nip44_encrypt(owner, plaintext)
        except (FormstrError, ValueError, TypeError):
            logger.exception("Failed to encrypt forms")
            return StoreResult(_unknown("Failed to encrypt forms."))
        return StoreResult(self._commit({FORMS_ENCRYPTED_KEY: ciphertext}))

    async def save_form(
        self,
        form: LocalForm,
        signer: NostrSigner | None = None,
        identity: str | None = None,
    ) -> StoreResult:
        """Insert ``form``, replacing any saved form with the same ``key``."""
        current = await self.read(signer, identity)
        if current.error is not None:
            return StoreResult(current.error)
        forms = [existing for existing in current.forms if existing.get("key") != form.get("key")]
        forms.append(form)
        return await self.write(forms, signer, identity)

    async def delete_form(
        self,
        key: str,
        signer: NostrSigner | None = None,
        identity: str | None = None,
    ) -> StoreResult:
        current = await self.read(signer, identity)
        if current.error is not None:
            return StoreResult(current.error)
        forms = [existing for existing in current.forms if existing.get("key") != key]
        return await self.write(forms, signer, identity)
