"""
Error taxonomy for the end-to-end encryption core.

Every failure leaves the core as one of the kinds below. The text of an
error is deliberately coarse; the underlying cause is kept in ``detail``
and only ever reaches the local debug sink.
"""

import uuid
from typing import Optional


class E2EEError(Exception):
    """Base exception for all E2EE failures"""

    message = "end-to-end encryption failure"

    def __init__(self, detail: Optional[str] = None, correlation_id: Optional[str] = None):
        self.detail = detail
        self.correlation_id = correlation_id or uuid.uuid4().hex
        super().__init__(f"{self.message} (correlation id: {self.correlation_id})")

    @property
    def code(self) -> str:
        """Stable identifier of the error kind"""
        return type(self).__name__

    def to_dict(self) -> dict:
        return {"error": self.code, "correlationId": self.correlation_id}


class StorageError(E2EEError):
    message = "key store unavailable"


class InvalidKeyError(E2EEError):
    message = "invalid key material"


class PreKeyReuseError(InvalidKeyError):
    message = "one-time pre-key already consumed"


class KeyAuthenticityError(E2EEError):
    message = "signed pre-key signature did not verify"


class KeyIntegrityError(E2EEError):
    message = "stored key material is corrupted"


class UnknownUserError(E2EEError):
    message = "user has no key record"


class UnknownSessionError(E2EEError):
    message = "unknown session"


class UnsupportedVersionError(E2EEError):
    message = "unsupported envelope version"


class MalformedEnvelopeError(E2EEError):
    message = "malformed envelope"


class KeyDerivationError(E2EEError):
    message = "message keys could not be derived"


class IntegrityError(E2EEError):
    message = "message integrity check failed"


class AuthenticityError(E2EEError):
    message = "message authentication failed"


class ReplayError(E2EEError):
    message = "message already delivered"


class StaleMessageError(E2EEError):
    message = "message is older than the skip window"


class PreKeyExhaustedError(E2EEError):
    message = "no one-time pre-keys available"
