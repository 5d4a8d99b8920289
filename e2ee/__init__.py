"""
End-to-end encryption core for VaultKe messaging.

Implements:
- X3DH-style key agreement over X25519 with Ed25519-signed pre-keys
- A symmetric HKDF/HMAC chain ratchet for per-message keys
- AES-256-GCM envelopes with an integrity hash and replay protection
- Safety numbers for out-of-band identity verification
"""

from .config import E2EEConfig
from .envelope import Envelope, FallbackEnvelope, MessageMetadata, SecurityLevel
from .errors import (
    E2EEError,
    StorageError,
    InvalidKeyError,
    PreKeyReuseError,
    KeyAuthenticityError,
    KeyIntegrityError,
    UnknownUserError,
    UnknownSessionError,
    UnsupportedVersionError,
    MalformedEnvelopeError,
    KeyDerivationError,
    IntegrityError,
    AuthenticityError,
    ReplayError,
    StaleMessageError,
    PreKeyExhaustedError,
)
from .key_agreement import PublicBundle, SignedPreKeyPublic
from .safety_number import compute_safety_number
from .service import E2EEService

__all__ = [
    'E2EEConfig',
    'E2EEService',
    'Envelope',
    'FallbackEnvelope',
    'MessageMetadata',
    'SecurityLevel',
    'PublicBundle',
    'SignedPreKeyPublic',
    'compute_safety_number',
    'E2EEError',
    'StorageError',
    'InvalidKeyError',
    'PreKeyReuseError',
    'KeyAuthenticityError',
    'KeyIntegrityError',
    'UnknownUserError',
    'UnknownSessionError',
    'UnsupportedVersionError',
    'MalformedEnvelopeError',
    'KeyDerivationError',
    'IntegrityError',
    'AuthenticityError',
    'ReplayError',
    'StaleMessageError',
    'PreKeyExhaustedError',
]
