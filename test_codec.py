"""
Tests for envelopes, the message codec and safety numbers.
"""

import base64
import json

import pytest

from e2ee.codec import associated_data, open_envelope, parse_envelope, parse_fallback, seal
from e2ee.envelope import Envelope, FallbackEnvelope, SecurityLevel
from e2ee.errors import (
    AuthenticityError,
    IntegrityError,
    MalformedEnvelopeError,
    UnsupportedVersionError,
)
from e2ee.primitives import b64decode, b64encode
from e2ee.ratchet import derive_message_keys
from e2ee.safety_number import compute_safety_number

LEGACY = "dGVzdCBhZ2Fpbl9lbmNfMTc1ODU0Mzg3NzM1MF8ydjBuZm5ybTh2ZQ=="
SESSION = "session_1700000000_00112233aabbccdd"


def keys_for(number=0):
    return derive_message_keys(bytearray(b"k" * 32), number)


def sealed(plaintext=b"hello world", metadata=""):
    return seal(keys_for(), "alice", "bob", SESSION, 0, plaintext, metadata)


def test_seal_produces_military_grade_envelope():
    envelope = sealed()
    data = envelope.to_dict()

    assert data['version'] == "1.0"
    assert data['securityLevel'] == "MILITARY_GRADE"
    assert len(b64decode(data['iv'])) == 12
    assert len(b64decode(data['authTag'])) == 16
    assert len(b64decode(data['ciphertext'])) >= len(b"hello world") + 16
    assert len(data['integrityHash']) == 64
    assert data['integrityHash'] == data['integrityHash'].lower()
    assert set(data) == {'version', 'senderId', 'recipientId', 'sessionId', 'messageNumber', 'iv',
                         'ciphertext', 'authTag', 'integrityHash', 'securityLevel', 'metadata'}


def test_open_round_trip_with_metadata():
    envelope = sealed(b"meet at noon", metadata="thread-42")
    assert open_envelope(envelope, keys_for()) == b"meet at noon"


def test_ciphertext_hides_plaintext_words():
    plaintext = b"attack at dawn near the river"
    raw = b64decode(sealed(plaintext).ciphertext)
    for word in plaintext.split():
        assert word not in raw
    for suffix in (b"_enc_", b"_encrypted_", b"_secure_"):
        assert sealed(plaintext).ciphertext != b64encode(plaintext + suffix)


def test_wrong_keys_fail_integrity():
    with pytest.raises(IntegrityError):
        open_envelope(sealed(), keys_for(1))


@pytest.mark.parametrize("field", ["ciphertext", "authTag"])
def test_single_byte_flip_is_rejected(field):
    data = sealed().to_dict()
    raw = bytearray(b64decode(data[field]))
    for index in (0, len(raw) - 1):
        flipped = bytearray(raw)
        flipped[index] ^= 0x01
        tampered = dict(data, **{field: b64encode(flipped)})
        with pytest.raises((IntegrityError, AuthenticityError)):
            open_envelope(Envelope.from_dict(tampered), keys_for())


def test_appended_character_and_replaced_tag_are_rejected():
    data = sealed().to_dict()

    appended = dict(data, ciphertext=data['ciphertext'] + "A")
    with pytest.raises((IntegrityError, AuthenticityError)):
        open_envelope(Envelope.from_dict(appended), keys_for())

    replaced = dict(data, authTag=data['authTag'][:-1] + "X")
    with pytest.raises((IntegrityError, AuthenticityError)):
        open_envelope(Envelope.from_dict(replaced), keys_for())


def test_tampered_metadata_fails_authentication():
    data = sealed(metadata="a").to_dict()
    data['metadata'] = "b"
    with pytest.raises(AuthenticityError):
        open_envelope(Envelope.from_dict(data), keys_for())


def test_associated_data_layout():
    assert associated_data("s", 1, "m") == b"s\x00\x00\x00\x01m"


def test_parse_envelope_accepts_all_forms():
    envelope = sealed()
    assert parse_envelope(envelope) is envelope
    assert parse_envelope(envelope.to_dict()) == envelope
    assert parse_envelope(envelope.to_json()) == envelope
    assert parse_envelope(envelope.to_json().encode()) == envelope
    assert Envelope.from_json(envelope.to_json()) == envelope


def test_parse_envelope_rejects_unknown_version_first():
    with pytest.raises(UnsupportedVersionError):
        parse_envelope({'version': "2.0"})
    with pytest.raises(UnsupportedVersionError):
        parse_envelope(json.dumps(dict(sealed().to_dict(), version="0.9")))


@pytest.mark.parametrize("raw", [
    "{not json",
    "plain text message",
    12345,
    {'version': "1.0", 'senderId': "alice"},
])
def test_parse_envelope_rejects_garbage(raw):
    with pytest.raises(MalformedEnvelopeError):
        parse_envelope(raw)


def test_parse_envelope_rejects_bad_field_types():
    data = sealed().to_dict()
    with pytest.raises(MalformedEnvelopeError):
        Envelope.from_dict(dict(data, messageNumber=-1))
    with pytest.raises(MalformedEnvelopeError):
        Envelope.from_dict(dict(data, messageNumber=True))
    with pytest.raises(MalformedEnvelopeError):
        Envelope.from_dict(dict(data, securityLevel="TOP_SECRET"))
    with pytest.raises(MalformedEnvelopeError):
        Envelope.from_dict(dict(data, iv=None))


def test_legacy_fallback_is_tagged():
    fallback = parse_envelope(LEGACY)

    assert isinstance(fallback, FallbackEnvelope)
    assert fallback.security_level == SecurityLevel.FALLBACK
    assert fallback.needs_decryption is True
    assert fallback.plaintext == "test again"
    assert fallback.timestamp == "1758543877350"
    assert fallback.random_tag == "2v0nfnrm8ve"
    assert fallback.to_dict()['securityLevel'] == "FALLBACK"
    assert fallback.to_dict()['needsDecryption'] is True


def test_fallback_requires_the_marker_pattern():
    assert parse_fallback(base64.b64encode(b"just some text").decode()) is None
    assert parse_fallback(base64.b64encode(b"x_enc_notdigits_abc").decode()) is None
    assert parse_fallback(base64.b64encode(b"x_enc_123_a-b").decode()) is None
    assert parse_fallback("not base64 at all!") is None
    assert parse_fallback(base64.b64encode(b"\xff\xfe_enc_1_a").decode()) is None

    empty = parse_fallback(base64.b64encode(b"_enc_1_a").decode())
    assert empty is not None and empty.plaintext == ""


def test_safety_number_properties():
    a, b, c = b"\x01" * 32, b"\x02" * 32, b"\x03" * 32
    number = compute_safety_number(a, b)

    assert len(number) == 32
    assert all(ch in "0123456789abcdef" for ch in number)
    assert number == compute_safety_number(b, a)
    assert number == compute_safety_number(a, b)
    assert number != compute_safety_number(a, c)
