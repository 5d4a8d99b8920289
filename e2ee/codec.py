"""
Message Codec

Seals plaintext into ``MILITARY_GRADE`` envelopes and opens them again,
checking the integrity hash before AES-256-GCM authentication. Also
recognises the legacy fallback string format.
"""

import re
import json
import base64
import binascii
import logging
from typing import Dict, Optional, Union

from .envelope import (
    ENVELOPE_VERSION,
    AnyEnvelope,
    Envelope,
    FallbackEnvelope,
    SecurityLevel,
)
from .errors import AuthenticityError, IntegrityError, MalformedEnvelopeError
from .primitives import (
    IV_SIZE,
    TAG_SIZE,
    aes_gcm_encrypt,
    aes_gcm_decrypt,
    b64encode,
    b64decode,
    constant_time_compare,
    sha256,
)
from .ratchet import MessageKeys

logger = logging.getLogger(__name__)

FALLBACK_MARKER = b"_enc_"
FALLBACK_PATTERN = re.compile(r"\A(?P<plaintext>.*)_enc_(?P<timestamp>\d+)_(?P<random>[A-Za-z0-9]+)\Z", re.DOTALL)


def associated_data(session_id: str, message_number: int, metadata: str = "") -> bytes:
    """session id || 4-byte big-endian message number || metadata"""
    return session_id.encode("utf-8") + message_number.to_bytes(4, "big") + metadata.encode("utf-8")


def integrity_hash(ciphertext: bytes, iv: bytes, auth_tag: bytes, authentication_key: bytearray) -> str:
    """SHA-256 over ciphertext, IV, tag and the authentication key, hex-encoded"""
    return sha256(ciphertext, iv, auth_tag, authentication_key).hex()


def seal(keys: MessageKeys, sender_id: str, recipient_id: str, session_id: str,
         message_number: int, plaintext: bytes, metadata: str = "") -> Envelope:
    """
    Encrypt plaintext under per-message keys.

    Args:
        keys: Message keys from the sending chain
        sender_id: Sending user
        recipient_id: Receiving user
        session_id: Session the keys belong to
        message_number: Number the keys were derived for
        plaintext: Message bytes
        metadata: Opaque string authenticated alongside the ciphertext

    Returns:
        Envelope with security level ``MILITARY_GRADE``
    """
    aad = associated_data(session_id, message_number, metadata)
    iv, sealed = aes_gcm_encrypt(keys.encryption_key, plaintext, aad)
    tag = sealed[-TAG_SIZE:]

    return Envelope(
        version=ENVELOPE_VERSION,
        sender_id=sender_id,
        recipient_id=recipient_id,
        session_id=session_id,
        message_number=message_number,
        iv=b64encode(iv),
        ciphertext=b64encode(sealed),
        auth_tag=b64encode(tag),
        integrity_hash=integrity_hash(sealed, iv, tag, keys.authentication_key),
        security_level=SecurityLevel.MILITARY_GRADE,
        metadata=metadata,
    )


def _crypto_field(value: str, name: str) -> bytes:
    # A field that does not decode cannot match the bound hash.
    try:
        return b64decode(value)
    except ValueError as e:
        raise IntegrityError(f"{name}: {e}")


def open_envelope(envelope: Envelope, keys: MessageKeys) -> bytes:
    """
    Verify and decrypt an envelope.

    Raises:
        IntegrityError: If a field is undecodable or the integrity hash mismatches
        AuthenticityError: If AES-GCM authentication fails
    """
    iv = _crypto_field(envelope.iv, "iv")
    sealed = _crypto_field(envelope.ciphertext, "ciphertext")
    tag = _crypto_field(envelope.auth_tag, "authTag")
    if len(iv) != IV_SIZE or len(tag) != TAG_SIZE:
        raise IntegrityError("iv or authTag has the wrong length")

    expected = integrity_hash(sealed, iv, tag, keys.authentication_key)
    if not constant_time_compare(expected.encode("ascii"), envelope.integrity_hash.lower().encode("ascii", "replace")):
        raise IntegrityError("integrity hash mismatch")

    if len(sealed) < TAG_SIZE or not constant_time_compare(sealed[-TAG_SIZE:], tag):
        raise AuthenticityError("authTag does not match the sealed ciphertext")

    aad = associated_data(envelope.session_id, envelope.message_number, envelope.metadata)
    return aes_gcm_decrypt(keys.encryption_key, iv, sealed, aad)


def parse_fallback(text: str) -> Optional[FallbackEnvelope]:
    """
    Recognise a legacy fallback string.

    The string must be base64 whose decoded text contains ``_enc_`` and
    matches ``<plaintext>_enc_<digits>_<alnum>``.

    Returns:
        FallbackEnvelope, or None if ``text`` is not a fallback string
    """
    candidate = text.strip()
    try:
        decoded = base64.b64decode(candidate.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError):
        return None
    if FALLBACK_MARKER not in decoded:
        return None
    try:
        decoded_text = decoded.decode("utf-8")
    except UnicodeDecodeError:
        return None
    match = FALLBACK_PATTERN.match(decoded_text)
    if match is None:
        return None

    logger.info("Recognised legacy fallback envelope")
    return FallbackEnvelope(
        raw=candidate,
        plaintext=match.group("plaintext"),
        timestamp=match.group("timestamp"),
        random_tag=match.group("random"),
    )


def parse_envelope(raw: Union[Envelope, Dict, str, bytes]) -> AnyEnvelope:
    """
    Turn whatever a caller received into an envelope.

    Accepts an Envelope, its dict form, its JSON form, or a legacy
    fallback string.

    Raises:
        UnsupportedVersionError: If a structured envelope has an unknown version
        MalformedEnvelopeError: If the input is none of the above
    """
    if isinstance(raw, (Envelope, FallbackEnvelope)):
        return raw
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedEnvelopeError("envelope bytes are not UTF-8")
    if isinstance(raw, dict):
        return Envelope.from_dict(raw)
    if not isinstance(raw, str):
        raise MalformedEnvelopeError(f"unsupported envelope type {type(raw).__name__}")

    stripped = raw.strip()
    if stripped.startswith("{"):
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError as e:
            raise MalformedEnvelopeError(f"invalid JSON: {e}")
        return Envelope.from_dict(data)

    fallback = parse_fallback(stripped)
    if fallback is None:
        raise MalformedEnvelopeError("neither a structured nor a fallback envelope")
    return fallback
