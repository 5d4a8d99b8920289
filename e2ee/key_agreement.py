"""
X3DH-style Key Agreement

Turns the initiator's identity key, the recipient's public bundle and a
fresh ephemeral key into a 32-byte root key and the initial 32-byte chain
key. The same secret is recomputed on the responder side from the
recipient's private halves and the initiator's ephemeral public key.
"""

from typing import Dict, Tuple, Optional
from dataclasses import dataclass
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from .errors import InvalidKeyError, KeyDerivationError
from .primitives import (
    KEY_SIZE,
    SIGNATURE_SIZE,
    generate_dh_keypair,
    dh_exchange,
    hkdf_sha256,
    hmac_sha256,
    constant_time_compare,
    verify_signature,
    serialize_public_key,
    deserialize_public_key,
    b64encode,
    b64decode,
    wipe,
)

ROOT_KEY_INFO = b"vaultke-e2ee-root-v1"
REVERSE_CHAIN_CONSTANT = b"\x01"


@dataclass
class PublicBundle:
    """
    Public key bundle handed to a peer initiating a session.

    Attributes:
        identity_public: Long-term X25519 identity public key
        identity_signing_public: Ed25519 key that signs the signed pre-key
        signed_pre_key_id: Identifier of the signed pre-key
        signed_pre_key_public: Medium-term X25519 public key
        signed_pre_key_signature: Signature over ``signed_pre_key_public``
        one_time_pre_key_id: Identifier of the one-time pre-key (if any)
        one_time_pre_key_public: Single-use X25519 public key (optional)
    """
    identity_public: bytes
    identity_signing_public: bytes
    signed_pre_key_id: int
    signed_pre_key_public: bytes
    signed_pre_key_signature: bytes
    one_time_pre_key_id: Optional[int] = None
    one_time_pre_key_public: Optional[bytes] = None

    def to_dict(self) -> Dict:
        """Convert to the wire shape"""
        return {
            'identityPublic': b64encode(self.identity_public),
            'identitySigningPublic': b64encode(self.identity_signing_public),
            'signedPreKeyId': self.signed_pre_key_id,
            'signedPreKeyPublic': b64encode(self.signed_pre_key_public),
            'signedPreKeySignature': b64encode(self.signed_pre_key_signature),
            'oneTimePreKeyId': self.one_time_pre_key_id,
            'oneTimePreKeyPublic': b64encode(self.one_time_pre_key_public) if self.one_time_pre_key_public else None,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'PublicBundle':
        """Create from the wire shape"""
        try:
            one_time = data.get('oneTimePreKeyPublic')
            return cls(
                identity_public=b64decode(data['identityPublic']),
                identity_signing_public=b64decode(data['identitySigningPublic']),
                signed_pre_key_id=int(data['signedPreKeyId']),
                signed_pre_key_public=b64decode(data['signedPreKeyPublic']),
                signed_pre_key_signature=b64decode(data['signedPreKeySignature']),
                one_time_pre_key_id=data.get('oneTimePreKeyId') if one_time else None,
                one_time_pre_key_public=b64decode(one_time) if one_time else None,
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise InvalidKeyError(f"malformed bundle: {e}")


@dataclass
class SignedPreKeyPublic:
    """Public half of a signed pre-key, as returned by rotation"""
    key_id: int
    public_key: bytes
    signature: bytes

    def to_dict(self) -> Dict:
        return {
            'signedPreKeyId': self.key_id,
            'signedPreKeyPublic': b64encode(self.public_key),
            'signedPreKeySignature': b64encode(self.signature),
        }


@dataclass
class AgreementResult:
    """
    Result of the initiator half of the key agreement.

    Attributes:
        root_key: 32-byte session root key
        chain_key: 32-byte initial sending chain key of the initiator
        ephemeral_public: Initiator's ephemeral public key
        signed_pre_key_id: Recipient signed pre-key that was used
        one_time_pre_key_id: Recipient one-time pre-key that was used (if any)
    """
    root_key: bytearray
    chain_key: bytearray
    ephemeral_public: bytes
    signed_pre_key_id: int
    one_time_pre_key_id: Optional[int] = None


def session_pair(user_a: str, user_b: str) -> Tuple[str, str]:
    """Order a pair of user ids so either direction names the same session"""
    return (user_a, user_b) if user_a <= user_b else (user_b, user_a)


def _check_length(name: str, value: bytes, expected: int):
    if value is None or len(value) != expected:
        raise InvalidKeyError(f"{name} has length {0 if value is None else len(value)}, expected {expected}")


def _derive_root(dh_outputs) -> Tuple[bytearray, bytearray]:
    material = bytearray(b"".join(dh_outputs))
    try:
        output = hkdf_sha256(material, 64, ROOT_KEY_INFO)
    finally:
        wipe(material)
    root_key, chain_key = output[:32], output[32:]
    wipe(output)
    return root_key, chain_key


class KeyAgreement:
    """
    Handles the multi-DH agreement for establishing initial shared secrets.
    """

    def verify_bundle(self, bundle: PublicBundle):
        """
        Check a bundle before using it.

        Raises:
            InvalidKeyError: If any public key is malformed
            KeyAuthenticityError: If the signed pre-key signature does not verify
        """
        _check_length("identity key", bundle.identity_public, KEY_SIZE)
        _check_length("identity signing key", bundle.identity_signing_public, KEY_SIZE)
        _check_length("signed pre-key", bundle.signed_pre_key_public, KEY_SIZE)
        _check_length("signed pre-key signature", bundle.signed_pre_key_signature, SIGNATURE_SIZE)
        if bundle.one_time_pre_key_public is not None:
            _check_length("one-time pre-key", bundle.one_time_pre_key_public, KEY_SIZE)
        verify_signature(
            bundle.identity_signing_public,
            bundle.signed_pre_key_signature,
            bundle.signed_pre_key_public,
        )

    def initiate_session(self, identity_private: X25519PrivateKey, recipient_bundle: PublicBundle) -> AgreementResult:
        """
        Initiate a session by performing the DH steps against a recipient bundle.

        Args:
            identity_private: Initiator's identity private key
            recipient_bundle: Recipient's public key bundle

        Returns:
            AgreementResult containing root key, chain key and ephemeral public key
        """
        self.verify_bundle(recipient_bundle)

        ephemeral_private, ephemeral_public = generate_dh_keypair()

        recipient_identity = deserialize_public_key(recipient_bundle.identity_public)
        recipient_signed_pre = deserialize_public_key(recipient_bundle.signed_pre_key_public)

        dh_outputs = [
            dh_exchange(identity_private, recipient_signed_pre),
            dh_exchange(ephemeral_private, recipient_identity),
            dh_exchange(ephemeral_private, recipient_signed_pre),
        ]
        if recipient_bundle.one_time_pre_key_public is not None:
            recipient_one_time = deserialize_public_key(recipient_bundle.one_time_pre_key_public)
            dh_outputs.append(dh_exchange(ephemeral_private, recipient_one_time))

        root_key, chain_key = _derive_root(dh_outputs)

        return AgreementResult(
            root_key=root_key,
            chain_key=chain_key,
            ephemeral_public=serialize_public_key(ephemeral_public),
            signed_pre_key_id=recipient_bundle.signed_pre_key_id,
            one_time_pre_key_id=recipient_bundle.one_time_pre_key_id if recipient_bundle.one_time_pre_key_public else None,
        )

    def complete_session(self, identity_private: X25519PrivateKey, signed_pre_key_private: X25519PrivateKey,
                         one_time_pre_key_private: Optional[X25519PrivateKey],
                         initiator_identity_public: bytes, ephemeral_public: bytes) -> Tuple[bytearray, bytearray]:
        """
        Complete a session on the responder side.

        Args:
            identity_private: Responder's identity private key
            signed_pre_key_private: Private half of the signed pre-key the initiator used
            one_time_pre_key_private: Private half of the one-time pre-key used (if any)
            initiator_identity_public: Initiator's identity public key
            ephemeral_public: Initiator's ephemeral public key

        Returns:
            Tuple of (root_key, chain_key)
        """
        initiator_identity = deserialize_public_key(initiator_identity_public)
        ephemeral = deserialize_public_key(ephemeral_public)

        dh_outputs = [
            dh_exchange(signed_pre_key_private, initiator_identity),
            dh_exchange(identity_private, ephemeral),
            dh_exchange(signed_pre_key_private, ephemeral),
        ]
        if one_time_pre_key_private is not None:
            dh_outputs.append(dh_exchange(one_time_pre_key_private, ephemeral))

        return _derive_root(dh_outputs)

    def confirm(self, initiator: AgreementResult, responder: Tuple[bytearray, bytearray]):
        """Both halves must agree on root and chain keys"""
        root_key, chain_key = responder
        if not (constant_time_compare(initiator.root_key, root_key)
                and constant_time_compare(initiator.chain_key, chain_key)):
            raise KeyDerivationError("initiator and responder derived different secrets")


def initial_chains(root_key: bytearray, chain_key: bytearray, initiator: bool) -> Tuple[bytearray, bytearray]:
    """
    Split the agreed secrets into a participant's (sending, receiving) chains.

    The initiator sends on the agreed chain key; the opposite direction uses
    a chain derived from the root key. The responder's view is the mirror.
    """
    reverse = bytearray(hmac_sha256(root_key, REVERSE_CHAIN_CONSTANT))
    if initiator:
        return bytearray(chain_key), reverse
    return reverse, bytearray(chain_key)
