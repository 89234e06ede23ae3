# mypy: ignore-errors
"""Tests for key handling and event signatures."""

from __future__ import annotations

import pytest

from formstr_core.core.security import (
    compute_event_id,
    finalize_event,
    generate_secret_key,
    get_public_key,
    secret_key_from_hex,
    serialize_event,
    verify_event,
)
from formstr_core.schemas.event import EventTemplate

GENERATOR_X = "79be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
HEX_DIGEST_LENGTH = 64


def _template(**overrides) -> EventTemplate:
    fields = {"kind": 1, "created_at": 1_700_000_000, "tags": [["d", "form-1"]], "content": "héllo"}
    fields.update(overrides)
    return EventTemplate(**fields)


def test_public_key_of_one_is_generator() -> None:
    assert get_public_key(secret_key_from_hex("00" * 31 + "01")) == GENERATOR_X


def test_invalid_secret_keys_are_rejected() -> None:
    with pytest.raises(ValueError):
        get_public_key(b"\x00" * 32)
    with pytest.raises(ValueError):
        secret_key_from_hex("abcd")
    with pytest.raises(ValueError):
        secret_key_from_hex("zz" * 32)


def test_serialization_is_compact_and_unescaped() -> None:
    serialized = serialize_event(GENERATOR_X, _template())
    assert serialized == (
        f'[0,"{GENERATOR_X}",1700000000,1,[["d","form-1"]],"héllo"]'.encode("utf-8")
    )


def test_finalize_and_verify() -> None:
    secret = generate_secret_key()
    event = finalize_event(_template(), secret)

    assert event.pubkey == get_public_key(secret)
    assert event.id == compute_event_id(event.pubkey, _template())
    assert len(event.id) == HEX_DIGEST_LENGTH
    assert verify_event(event)


def test_tampered_event_fails_verification() -> None:
    event = finalize_event(_template(), generate_secret_key())
    forged = event.model_copy(update={"content": "forged"})
    assert not verify_event(forged)


def test_signature_from_other_key_fails_verification() -> None:
    event = finalize_event(_template(), generate_secret_key())
    other = finalize_event(_template(), generate_secret_key())
    assert not verify_event(event.model_copy(update={"sig": other.sig}))


def test_undecodable_signature_fails_verification() -> None:
    event = finalize_event(_template(), generate_secret_key())
    assert not verify_event(event.model_copy(update={"sig": "zz" * 64}))


def test_pubkey_off_the_curve_fails_verification() -> None:
    event = finalize_event(_template(), generate_secret_key())
    bad_pubkey = "ff" * 32
    forged = event.model_copy(update={"pubkey": bad_pubkey, "id": compute_event_id(bad_pubkey, event)})
    assert not verify_event(forged)
