"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational cryptographic operations used by the
key agreement, ratchet and message codec: Curve25519 key pairs, Ed25519
signatures, HKDF-SHA-256, HMAC-SHA-256 and AES-256-GCM.
"""

import os
import hmac
import base64
import binascii
import hashlib
from typing import Tuple, Union
from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticityError, InvalidKeyError, KeyAuthenticityError

KEY_SIZE = 32
SIGNATURE_SIZE = 64
IV_SIZE = 12
TAG_SIZE = 16

Buffer = Union[bytes, bytearray]


def generate_dh_keypair() -> Tuple[X25519PrivateKey, X25519PublicKey]:
    """
    Generate a Curve25519 Diffie-Hellman keypair for key exchange.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = X25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def generate_signing_keypair() -> Tuple[Ed25519PrivateKey, Ed25519PublicKey]:
    """
    Generate an Ed25519 keypair for signing signed pre-keys.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = Ed25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def dh_exchange(private_key: X25519PrivateKey, public_key: X25519PublicKey) -> bytes:
    """
    Perform Diffie-Hellman key exchange.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        32-byte shared secret

    Raises:
        InvalidKeyError: If the peer key is a low-order point
    """
    try:
        return private_key.exchange(public_key)
    except ValueError as e:
        raise InvalidKeyError(f"DH exchange rejected: {e}")


def hkdf_sha256(key_material: Buffer, length: int, info: bytes, salt: bytes = None) -> bytearray:
    """
    Derive ``length`` bytes with HKDF-SHA-256.

    Args:
        key_material: Input key material
        length: Number of output bytes
        info: Domain separation string
        salt: Optional salt (defaults to a zero-filled block)

    Returns:
        Derived bytes in a wipeable buffer
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info
    )
    return bytearray(hkdf.derive(bytes(key_material)))


def hmac_sha256(key: Buffer, data: bytes) -> bytes:
    """
    Compute HMAC-SHA256.

    Args:
        key: HMAC key
        data: Data to authenticate

    Returns:
        32-byte HMAC tag
    """
    return hmac.new(bytes(key), data, hashlib.sha256).digest()


def sha256(*parts: Buffer) -> bytes:
    """SHA-256 over the concatenation of ``parts``"""
    digest = hashlib.sha256()
    for part in parts:
        digest.update(part)
    return digest.digest()


def aes_gcm_encrypt(key: Buffer, plaintext: bytes, associated_data: bytes = b"") -> Tuple[bytes, bytes]:
    """
    Encrypt with AES-256-GCM under a fresh random IV.

    Args:
        key: 32-byte encryption key
        plaintext: Message to encrypt
        associated_data: Additional authenticated data

    Returns:
        Tuple of (iv, ciphertext with the 16-byte tag appended)
    """
    iv = os.urandom(IV_SIZE)
    aesgcm = AESGCM(bytes(key))
    return iv, aesgcm.encrypt(iv, plaintext, associated_data)


def aes_gcm_decrypt(key: Buffer, iv: bytes, ciphertext: bytes, associated_data: bytes = b"") -> bytes:
    """
    Decrypt AES-256-GCM output.

    Raises:
        AuthenticityError: If the tag does not verify
    """
    aesgcm = AESGCM(bytes(key))
    try:
        return aesgcm.decrypt(iv, ciphertext, associated_data)
    except InvalidTag:
        raise AuthenticityError("AES-GCM tag verification failed")


def sign(private_key: Ed25519PrivateKey, data: bytes) -> bytes:
    return private_key.sign(data)


def verify_signature(public_key: bytes, signature: bytes, data: bytes):
    """
    Verify an Ed25519 signature.

    Raises:
        InvalidKeyError: If the public key is malformed
        KeyAuthenticityError: If the signature does not verify
    """
    verifier = deserialize_signing_public_key(public_key)
    try:
        verifier.verify(signature, data)
    except InvalidSignature:
        raise KeyAuthenticityError("signed pre-key signature mismatch")


def serialize_public_key(public_key: Union[X25519PublicKey, Ed25519PublicKey]) -> bytes:
    """Serialize a Curve25519 or Ed25519 public key to raw bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def serialize_private_key(private_key: Union[X25519PrivateKey, Ed25519PrivateKey]) -> bytes:
    """Serialize a Curve25519 or Ed25519 private key to raw bytes"""
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )


def deserialize_public_key(key_bytes: bytes) -> X25519PublicKey:
    """Deserialize bytes to X25519 public key"""
    try:
        return X25519PublicKey.from_public_bytes(key_bytes)
    except ValueError as e:
        raise InvalidKeyError(f"bad X25519 public key: {e}")


def deserialize_private_key(key_bytes: bytes) -> X25519PrivateKey:
    """Deserialize bytes to X25519 private key"""
    try:
        return X25519PrivateKey.from_private_bytes(key_bytes)
    except ValueError as e:
        raise InvalidKeyError(f"bad X25519 private key: {e}")


def deserialize_signing_public_key(key_bytes: bytes) -> Ed25519PublicKey:
    """Deserialize bytes to Ed25519 public key"""
    try:
        return Ed25519PublicKey.from_public_bytes(key_bytes)
    except ValueError as e:
        raise InvalidKeyError(f"bad Ed25519 public key: {e}")


def deserialize_signing_private_key(key_bytes: bytes) -> Ed25519PrivateKey:
    """Deserialize bytes to Ed25519 private key"""
    try:
        return Ed25519PrivateKey.from_private_bytes(key_bytes)
    except ValueError as e:
        raise InvalidKeyError(f"bad Ed25519 private key: {e}")


def constant_time_compare(a: Buffer, b: Buffer) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(bytes(a), bytes(b))


def wipe(buffer: bytearray):
    """Overwrite a key buffer with zeros"""
    for i in range(len(buffer)):
        buffer[i] = 0


def b64encode(data: Buffer) -> str:
    return base64.b64encode(bytes(data)).decode("ascii")


def b64decode(text: str) -> bytes:
    """Strict base64 decoding; raises ``ValueError`` on bad input"""
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"invalid base64: {e}")
