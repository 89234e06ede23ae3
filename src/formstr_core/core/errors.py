"""Exception hierarchy shared by the relay, blob, crypto and storage layers.

Every class maps to one entry of the failure taxonomy so that callers can
pick a user-facing message with ``isinstance`` instead of inspecting strings.
"""

from __future__ import annotations


class FormstrError(RuntimeError):
    """Base class for all errors raised by formstr_core."""


class TransportFailureError(FormstrError):
    """The request never reached the remote host.

    ``origin_blocked`` is set when the host refused the request because of
    the client's origin (the cross-origin case), which usually means the
    user should pick a different server rather than retry.
    """

    def __init__(self, message: str, *, url: str | None = None, origin_blocked: bool = False) -> None:
        super().__init__(message)
        self.url = url
        self.origin_blocked = origin_blocked


class ProtocolFailureError(FormstrError):
    """The host was reachable but rejected the operation."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason if reason is not None else message


class RelayRejectedError(ProtocolFailureError):
    """A relay answered ``["OK", id, false, reason]``."""


class AuthenticationRequiredError(FormstrError):
    """A relay requires the connection to authenticate first."""


class IdentityMismatchError(FormstrError):
    """Data is bound to a different identity than the one supplied."""

    def __init__(self, message: str, *, encrypted_by: str | None = None) -> None:
        super().__init__(message)
        self.encrypted_by = encrypted_by


class CapabilityMissingError(FormstrError):
    """The caller lacks a capability required for the operation."""


class SignerUnavailableError(CapabilityMissingError):
    """No signing capability could be resolved."""


class LoginRequiredError(CapabilityMissingError):
    """Encrypted data exists but no identity was supplied."""

    def __init__(self, message: str, *, encrypted_by: str | None = None) -> None:
        super().__init__(message)
        self.encrypted_by = encrypted_by


class EncryptionNotSupportedError(CapabilityMissingError):
    """The signer cannot perform the encryption primitive."""


class PayloadTooLargeError(CapabilityMissingError, ValueError):
    """Plaintext exceeds what NIP-44 encryption can carry."""

    def __init__(self, message: str, *, size: int, limit: int) -> None:
        super().__init__(message)
        self.size = size
        self.limit = limit


class EnvelopeFormatError(FormstrError, ValueError):
    """Encrypted payload is structurally invalid."""


class UnsupportedVersionError(EnvelopeFormatError):
    """Encrypted payload declares a version this code cannot read."""

    def __init__(self, version: int) -> None:
        super().__init__(f"Unsupported encryption version: {version}")
        self.version = version


class DecryptionFailedError(FormstrError):
    """Authentication tag or MAC check failed (wrong key or tampered data)."""
