"""
Envelope types.

``Envelope`` is the closed, versioned wire object for one encrypted
message. ``FallbackEnvelope`` describes a legacy ``_enc_`` string that
older clients produced; it is recognised but never produced.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Union

from .errors import MalformedEnvelopeError, UnsupportedVersionError

ENVELOPE_VERSION = "1.0"
SUPPORTED_VERSIONS = (ENVELOPE_VERSION,)


class SecurityLevel(str, Enum):
    MILITARY_GRADE = "MILITARY_GRADE"
    FALLBACK = "FALLBACK"
    NONE = "NONE"


_FIELDS = {
    'version': 'version',
    'senderId': 'sender_id',
    'recipientId': 'recipient_id',
    'sessionId': 'session_id',
    'messageNumber': 'message_number',
    'iv': 'iv',
    'ciphertext': 'ciphertext',
    'authTag': 'auth_tag',
    'integrityHash': 'integrity_hash',
    'securityLevel': 'security_level',
}


@dataclass
class Envelope:
    """
    Wire object carrying one encrypted message.

    Binary fields are kept base64-encoded exactly as they travel, so a
    tampered field reaches the integrity check unchanged.
    """
    version: str
    sender_id: str
    recipient_id: str
    session_id: str
    message_number: int
    iv: str
    ciphertext: str
    auth_tag: str
    integrity_hash: str
    security_level: SecurityLevel = SecurityLevel.MILITARY_GRADE
    metadata: str = ""

    def to_dict(self) -> Dict:
        data = {wire: getattr(self, attr) for wire, attr in _FIELDS.items()}
        data['securityLevel'] = SecurityLevel(self.security_level).value
        data['metadata'] = self.metadata
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict) -> "Envelope":
        """
        Parse the wire shape.

        Raises:
            UnsupportedVersionError: If ``version`` is not recognised
            MalformedEnvelopeError: If a field is missing or has the wrong type
        """
        if not isinstance(data, dict):
            raise MalformedEnvelopeError("envelope is not an object")
        version = data.get('version')
        if version not in SUPPORTED_VERSIONS:
            raise UnsupportedVersionError(f"version {version!r}")

        values = {}
        for wire, attr in _FIELDS.items():
            if wire not in data:
                raise MalformedEnvelopeError(f"missing field {wire}")
            values[attr] = data[wire]

        number = values['message_number']
        if isinstance(number, bool) or not isinstance(number, int) or number < 0:
            raise MalformedEnvelopeError("messageNumber must be a non-negative integer")
        for attr in ('sender_id', 'recipient_id', 'session_id', 'iv', 'ciphertext', 'auth_tag', 'integrity_hash'):
            if not isinstance(values[attr], str):
                raise MalformedEnvelopeError(f"{attr} must be a string")
        try:
            values['security_level'] = SecurityLevel(values['security_level'])
        except ValueError:
            raise MalformedEnvelopeError("unknown securityLevel")

        metadata = data.get('metadata') or ""
        if not isinstance(metadata, str):
            raise MalformedEnvelopeError("metadata must be a string")
        return cls(metadata=metadata, **values)

    @classmethod
    def from_json(cls, text: str) -> "Envelope":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedEnvelopeError(f"invalid JSON: {e}")
        return cls.from_dict(data)


@dataclass
class FallbackEnvelope:
    """A recognised legacy ``<plaintext>_enc_<ms>_<random>`` string"""
    raw: str
    plaintext: str
    timestamp: str
    random_tag: str
    security_level: SecurityLevel = SecurityLevel.FALLBACK
    needs_decryption: bool = True

    def to_dict(self) -> Dict:
        return {
            'securityLevel': self.security_level.value,
            'needsDecryption': self.needs_decryption,
            'plaintext': self.plaintext,
            'timestamp': self.timestamp,
            'randomTag': self.random_tag,
            'content': self.raw,
        }


@dataclass
class MessageMetadata:
    """What a successful decrypt tells the caller besides the plaintext"""
    security_level: SecurityLevel
    sender_id: str
    recipient_id: str
    session_id: str
    message_number: int
    metadata: str = ""

    def to_dict(self) -> Dict:
        return {
            'securityLevel': self.security_level.value,
            'senderId': self.sender_id,
            'recipientId': self.recipient_id,
            'sessionId': self.session_id,
            'messageNumber': self.message_number,
            'metadata': self.metadata,
        }


AnyEnvelope = Union[Envelope, FallbackEnvelope]
