# src/formstr_core/services/crypto.py
"""Conversation keys and NIP-44 v2 payload encryption."""

from __future__ import annotations

import base64
import binascii
import math
import secrets

from cryptography.hazmat.primitives import constant_time, hashes, hmac
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from formstr_core.core.errors import (
    DecryptionFailedError,
    EnvelopeFormatError,
    PayloadTooLargeError,
    UnsupportedVersionError,
)

PUBKEY_LENGTH_BYTES = 32
CONVERSATION_KEY_BYTES = 32
NIP44_SALT = b"nip44-v2"
NIP44_VERSION = 2
NIP44_NONCE_BYTES = 32
NIP44_MAC_BYTES = 32
NIP44_MIN_PLAINTEXT = 1
NIP44_MAX_PLAINTEXT = 65535
# Base64 length bounds for version + nonce + padded ciphertext + mac.
_MIN_PAYLOAD_B64 = 132
_MAX_PAYLOAD_B64 = 87472
_MESSAGE_KEYS_LENGTH = 76


class CryptoService:
    """Service handling conversation keys and small-payload encryption."""

    @staticmethod
    def _decode_hex(data: str) -> bytes:
        try:
            return bytes.fromhex(data)
        except ValueError as err:
            raise ValueError(f"Invalid hex encoding: {err}") from err

    @staticmethod
    def validate_and_decode_pubkey(pubkey_hex: str) -> bytes:
        """Validate and decode a hex x-only public key."""
        result = CryptoService._decode_hex(pubkey_hex.strip())
        if len(result) != PUBKEY_LENGTH_BYTES:
            raise ValueError("Public keys must be 32 bytes")
        return result

    @staticmethod
    def get_conversation_key(secret_key: bytes, peer_pubkey_hex: str) -> bytes:
        """Derive the symmetric key shared by ``secret_key`` and ``peer_pubkey_hex``.

        Both parties compute the same value: the x coordinate of the ECDH
        point, run through HKDF-extract with the ``nip44-v2`` salt.

        Args:
            secret_key: Raw 32-byte secp256k1 secret key of one party.
            peer_pubkey_hex: Hex x-only public key of the other party.

        Returns:
            32-byte conversation key
        """
        peer_x = CryptoService.validate_and_decode_pubkey(peer_pubkey_hex)
        try:
            private_key = ec.derive_private_key(
                int.from_bytes(secret_key, "big"), ec.SECP256K1()
            )
            peer_key = ec.EllipticCurvePublicKey.from_encoded_point(
                ec.SECP256K1(), b"\x02" + peer_x
            )
        except ValueError as err:
            raise ValueError(f"Invalid key material: {err}") from err
        shared_x = private_key.exchange(ec.ECDH(), peer_key)

        extractor = hmac.HMAC(NIP44_SALT, hashes.SHA256())
        extractor.update(shared_x)
        return extractor.finalize()

    @staticmethod
    def calc_padded_len(unpadded_len: int) -> int:
        """Return the padded plaintext length used to hide message sizes."""
        if unpadded_len <= 32:
            return 32
        next_power = 1 << (math.floor(math.log2(unpadded_len - 1)) + 1)
        chunk = 32 if next_power <= 256 else next_power // 8
        return chunk * (math.floor((unpadded_len - 1) / chunk) + 1)

    @staticmethod
    def _pad(plaintext: bytes) -> bytes:
        length = len(plaintext)
        if length > NIP44_MAX_PLAINTEXT:
            raise PayloadTooLargeError(
                f"Plaintext must be at most {NIP44_MAX_PLAINTEXT} bytes, got {length}",
                size=length,
                limit=NIP44_MAX_PLAINTEXT,
            )
        if length < NIP44_MIN_PLAINTEXT:
            raise ValueError("Plaintext must not be empty")
        suffix = b"\x00" * (CryptoService.calc_padded_len(length) - length)
        return length.to_bytes(2, "big") + plaintext + suffix

    @staticmethod
    def _unpad(padded: bytes) -> bytes:
        length = int.from_bytes(padded[:2], "big")
        plaintext = padded[2 : 2 + length]
        if (
            length < NIP44_MIN_PLAINTEXT
            or len(plaintext) != length
            or len(padded) != 2 + CryptoService.calc_padded_len(length)
        ):
            raise EnvelopeFormatError("Invalid padding")
        return plaintext

    @staticmethod
    def _message_keys(conversation_key: bytes, nonce: bytes) -> tuple[bytes, bytes, bytes]:
        if len(conversation_key) != CONVERSATION_KEY_BYTES:
            raise ValueError("Conversation key must be 32 bytes")
        keys = HKDFExpand(
            algorithm=hashes.SHA256(), length=_MESSAGE_KEYS_LENGTH, info=nonce
        ).derive(conversation_key)
        return keys[0:32], keys[32:44], keys[44:76]

    @staticmethod
    def _chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
        # cryptography takes a 16-byte nonce: 4-byte little-endian counter + 12-byte nonce.
        cipher = Cipher(algorithms.ChaCha20(key, b"\x00\x00\x00\x00" + nonce), mode=None)
        return cipher.encryptor().update(data)

    @staticmethod
    def _hmac_aad(key: bytes, message: bytes, aad: bytes) -> bytes:
        mac = hmac.HMAC(key, hashes.SHA256())
        mac.update(aad + message)
        return mac.finalize()

    @staticmethod
    def nip44_encrypt(plaintext: str, conversation_key: bytes, nonce: bytes | None = None) -> str:
        """Encrypt ``plaintext`` into a base64 NIP-44 v2 payload.

        Args:
            plaintext: Text of 1 to 65535 UTF-8 bytes
            conversation_key: Output of :meth:`get_conversation_key`
            nonce: Optional 32-byte nonce; random when omitted

        Returns:
            Base64-encoded payload
        """
        nonce = nonce if nonce is not None else secrets.token_bytes(NIP44_NONCE_BYTES)
        if len(nonce) != NIP44_NONCE_BYTES:
            raise ValueError("Nonce must be 32 bytes")
        chacha_key, chacha_nonce, hmac_key = CryptoService._message_keys(conversation_key, nonce)
        padded = CryptoService._pad(plaintext.encode("utf-8"))
        ciphertext = CryptoService._chacha20(chacha_key, chacha_nonce, padded)
        mac = CryptoService._hmac_aad(hmac_key, ciphertext, nonce)
        payload = bytes([NIP44_VERSION]) + nonce + ciphertext + mac
        return base64.b64encode(payload).decode("ascii")

    @staticmethod
    def nip44_decrypt(payload: str, conversation_key: bytes) -> str:
        """Decrypt a base64 NIP-44 v2 payload.

        Raises:
            UnsupportedVersionError: If the payload is not version 2
            EnvelopeFormatError: If the payload is malformed
            DecryptionFailedError: If the MAC does not verify
        """
        if not payload or payload[0] == "#":
            raise UnsupportedVersionError(-1)
        if not _MIN_PAYLOAD_B64 <= len(payload) <= _MAX_PAYLOAD_B64:
            raise EnvelopeFormatError("Invalid payload length")
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as err:
            raise EnvelopeFormatError(f"Invalid base64: {err}") from err
        if data[0] != NIP44_VERSION:
            raise UnsupportedVersionError(data[0])

        nonce = data[1 : 1 + NIP44_NONCE_BYTES]
        ciphertext = data[1 + NIP44_NONCE_BYTES : -NIP44_MAC_BYTES]
        mac = data[-NIP44_MAC_BYTES:]
        chacha_key, chacha_nonce, hmac_key = CryptoService._message_keys(conversation_key, nonce)
        expected = CryptoService._hmac_aad(hmac_key, ciphertext, nonce)
        if not constant_time.bytes_eq(expected, mac):
            raise DecryptionFailedError("Invalid MAC")

        padded = CryptoService._chacha20(chacha_key, chacha_nonce, ciphertext)
        return CryptoService._unpad(padded).decode("utf-8")
